"""Fakes shared by the test modules."""

from __future__ import annotations

import json
from typing import Any

import pytest

from forwardarr.errors import ClientError


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        text: str = "",
        cookies: dict[str, str] | None = None,
        json_body: Any = None,
    ) -> None:
        self.status_code = status_code
        self.text = json.dumps(json_body) if json_body is not None else text
        self.cookies = cookies or {}

    def json(self) -> Any:
        return json.loads(self.text)


class FakeCookieJar(dict):
    pass


class FakeSession:
    """Scripted stand-in for requests.Session.

    Each call pops the next scripted item: a FakeResponse is returned, an
    exception is raised.
    """

    def __init__(self, *script: Any) -> None:
        self.script = list(script)
        self.calls: list[dict[str, Any]] = []
        self.cookies = FakeCookieJar()
        self.closed = False

    def queue(self, *items: Any) -> None:
        self.script.extend(items)

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        if not self.script:
            raise AssertionError(f"unexpected request {method} {url}")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self.request("POST", url, **kwargs)

    def close(self) -> None:
        self.closed = True

    def paths(self) -> list[str]:
        return [call["url"].split("/api/v2/", 1)[-1] for call in self.calls]


class StubClient:
    """In-memory qBittorrent for engine tests."""

    def __init__(self, port: int = 12345) -> None:
        self.port = port
        self.get_error: ClientError | None = None
        self.set_error: ClientError | None = None
        self.reachable = True
        self.get_calls = 0
        self.set_calls: list[int] = []
        self.closed = False

    def get_port(self) -> int:
        self.get_calls += 1
        if self.get_error is not None:
            raise self.get_error
        return self.port

    def set_port(self, port: int) -> None:
        self.set_calls.append(port)
        if self.set_error is not None:
            raise self.set_error
        self.port = port

    def is_reachable(self) -> bool:
        return self.reachable

    def authenticate(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True


class RecordingMetrics:
    def __init__(self) -> None:
        self.outcomes: list[Any] = []

    def record(self, outcome: Any) -> None:
        self.outcomes.append(outcome)

    def errors(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status.value == "failed")


class RecordingNotifier:
    def __init__(self, error: Exception | None = None) -> None:
        self.changes: list[tuple[int, int]] = []
        self.error = error

    def send_port_change(self, old_port: int, new_port: int, timestamp: Any) -> None:
        self.changes.append((old_port, new_port))
        if self.error is not None:
            raise self.error


@pytest.fixture
def response():
    return FakeResponse


@pytest.fixture
def session_factory():
    return FakeSession


@pytest.fixture
def stub_client() -> StubClient:
    return StubClient()


@pytest.fixture
def recording_metrics() -> RecordingMetrics:
    return RecordingMetrics()


@pytest.fixture
def recording_notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def port_file(tmp_path):
    path = tmp_path / "forwarded_port"
    return path
