"""Tests for the health, readiness and metrics endpoints."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from forwardarr.service import _settings_from_env, create_runtime
from forwardarr.webapp import create_app


@pytest.fixture
def runtime(port_file, stub_client):
    settings = _settings_from_env({"PORT_FILE": str(port_file)})
    return create_runtime(settings, client=stub_client)


@pytest.fixture
def http(runtime) -> TestClient:
    return TestClient(create_app(runtime))


def test_health_not_running(http) -> None:
    resp = http.get("/health")

    assert resp.status_code == 503
    assert resp.text == "Service not running"


def test_health_running(http, runtime) -> None:
    runtime.state.set_running(True)

    resp = http.get("/health")

    assert resp.status_code == 200
    assert resp.text == "OK"


def test_ready(http, stub_client) -> None:
    resp = http.get("/ready")

    assert resp.status_code == 200
    assert resp.text == "Ready"


def test_not_ready(http, stub_client) -> None:
    stub_client.reachable = False

    resp = http.get("/ready")

    assert resp.status_code == 503
    assert resp.text == "qBittorrent not reachable"


def test_metrics_after_sync(http, runtime, port_file) -> None:
    port_file.write_text("54321")
    runtime.engine.run_cycle("timer")

    resp = http.get("/metrics")

    assert resp.status_code == 200
    assert "forwardarr_current_port 54321.0" in resp.text
    assert "forwardarr_sync_total 1.0" in resp.text


def test_status_snapshot(http, runtime, port_file) -> None:
    port_file.write_text("54321")
    runtime.engine.run_cycle("timer")

    body = http.get("/api/status").json()

    assert body["last_applied_port"] == 54321
    assert body["last_outcome"]["status"] == "applied"
    assert body["port_file"] == str(port_file)
    assert body["watching"] is False
    assert body["pending_trigger"] is None


def test_manual_sync_is_queued_and_coalesced(http, runtime) -> None:
    first = http.post("/api/sync")
    second = http.post("/api/sync")

    assert first.status_code == 202
    assert first.json() == {"ok": True, "queued": True}
    assert second.json() == {"ok": True, "queued": False}
    assert runtime.queue.pending == "manual"
