import logging
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from forwardarr.detector import TRIGGER_MANUAL, TRIGGER_STARTUP, ChangeDetector, TriggerQueue
from forwardarr.errors import ClientError, PortFileError, WebhookError
from forwardarr.portfile import read_port_file
from forwardarr.qbittorrent import QBittorrentClient

STAGE_READ_FILE = "read_file"
STAGE_FETCH_REMOTE = "fetch_remote"
STAGE_APPLY_REMOTE = "apply_remote"


class SyncStatus(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class SyncOutcome:
    status: SyncStatus
    trigger: str
    timestamp: datetime
    observed_port: int | None = None
    remote_port: int | None = None
    stage: str | None = None
    reason: str | None = None
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is not SyncStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["timestamp"] = self.timestamp.isoformat()
        return data


class MetricsSink(Protocol):
    def record(self, outcome: SyncOutcome) -> None: ...


class PortChangeNotifier(Protocol):
    def send_port_change(self, old_port: int, new_port: int, timestamp: datetime) -> None: ...


class NullMetrics:
    def record(self, outcome: SyncOutcome) -> None:
        pass


class EngineState:
    def __init__(self, max_history: int = 200) -> None:
        self._lock = threading.Lock()
        self._running = False
        self._last_outcome: SyncOutcome | None = None
        self._last_applied_port: int | None = None
        self._counts = {status.value: 0 for status in SyncStatus}
        self._history: deque[SyncOutcome] = deque(maxlen=max_history)

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    def set_running(self, value: bool) -> None:
        with self._lock:
            self._running = value

    @property
    def last_outcome(self) -> SyncOutcome | None:
        with self._lock:
            return self._last_outcome

    @property
    def last_applied_port(self) -> int | None:
        with self._lock:
            return self._last_applied_port

    def add_outcome(self, outcome: SyncOutcome) -> None:
        with self._lock:
            self._last_outcome = outcome
            self._counts[outcome.status.value] += 1
            if outcome.status is SyncStatus.APPLIED:
                self._last_applied_port = outcome.observed_port
            self._history.append(outcome)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "running": self._running,
                "last_applied_port": self._last_applied_port,
                "last_outcome": self._last_outcome.to_dict() if self._last_outcome else None,
                "counts": dict(self._counts),
                "history": [item.to_dict() for item in self._history],
            }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncEngine:
    """One read-compare-apply pass per trigger.

    Every cycle starts from scratch: the port file is re-read and the remote
    preference re-fetched, so a missed or repeated trigger only delays or
    re-confirms convergence.
    """

    def __init__(
        self,
        port_file: Path,
        client: QBittorrentClient,
        metrics: MetricsSink | None = None,
        notifier: PortChangeNotifier | None = None,
        state: EngineState | None = None,
    ) -> None:
        self.port_file = port_file
        self.client = client
        self.metrics = metrics or NullMetrics()
        self.notifier = notifier
        self.state = state or EngineState()
        self.last_observed_port: int | None = None
        self.last_remote_port: int | None = None

    def run_cycle(self, trigger: str = TRIGGER_MANUAL) -> SyncOutcome:
        started = time.monotonic()
        outcome = self._cycle(trigger)
        outcome.duration_seconds = time.monotonic() - started
        self.state.add_outcome(outcome)
        self.metrics.record(outcome)
        return outcome

    def _cycle(self, trigger: str) -> SyncOutcome:
        now = _utc_now()

        try:
            observed = read_port_file(self.port_file)
        except PortFileError as exc:
            logging.warning("[sync] Cannot read forwarded port (%s): %s", trigger, exc)
            return self._failed(trigger, now, STAGE_READ_FILE, exc)
        self.last_observed_port = observed

        try:
            remote = self.client.get_port()
        except ClientError as exc:
            logging.error("[sync] Cannot fetch qBittorrent listen port: %s", exc)
            return self._failed(trigger, now, STAGE_FETCH_REMOTE, exc, observed=observed)
        self.last_remote_port = remote

        if observed == remote:
            logging.debug("[sync] Port unchanged (%s), trigger=%s", remote, trigger)
            return SyncOutcome(
                SyncStatus.SKIPPED, trigger, now, observed_port=observed, remote_port=remote
            )

        logging.info("[sync] Port changed: %s -> %s, updating qBittorrent", remote, observed)
        try:
            self.client.set_port(observed)
        except ClientError as exc:
            logging.error("[sync] Failed to set listen port to %s: %s", observed, exc)
            return self._failed(
                trigger, now, STAGE_APPLY_REMOTE, exc, observed=observed, remote=remote
            )

        self.last_remote_port = observed
        logging.info("[sync] Listen port set to %s", observed)
        self._notify(remote, observed, now)
        return SyncOutcome(
            SyncStatus.APPLIED, trigger, now, observed_port=observed, remote_port=remote
        )

    def _notify(self, old_port: int, new_port: int, timestamp: datetime) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.send_port_change(old_port, new_port, timestamp)
        except WebhookError as exc:
            logging.warning("[sync] Webhook notification failed: %s", exc)

    @staticmethod
    def _failed(
        trigger: str,
        timestamp: datetime,
        stage: str,
        exc: Exception,
        observed: int | None = None,
        remote: int | None = None,
    ) -> SyncOutcome:
        return SyncOutcome(
            SyncStatus.FAILED,
            trigger,
            timestamp,
            observed_port=observed,
            remote_port=remote,
            stage=stage,
            reason=f"{type(exc).__name__}: {exc}",
        )


class SyncRunner:
    def __init__(
        self,
        engine: SyncEngine,
        queue: TriggerQueue,
        state: EngineState | None = None,
        detector: ChangeDetector | None = None,
    ) -> None:
        self.engine = engine
        self.queue = queue
        self.state = state or engine.state
        self.detector = detector
        self._thread: threading.Thread | None = None
        self._idle = threading.Event()
        self._idle.set()

    def request_sync(self, source: str = TRIGGER_MANUAL) -> bool:
        return self.queue.put(source)

    def run_forever(self) -> None:
        self.state.set_running(True)
        logging.info("[runner] START")
        try:
            while True:
                trigger = self.queue.get()
                if trigger is None:
                    break
                self._idle.clear()
                try:
                    self.engine.run_cycle(trigger)
                except Exception:
                    logging.exception("[runner] Unexpected error in sync cycle")
                finally:
                    self._idle.set()
        finally:
            self.state.set_running(False)
            logging.info("[runner] STOP")

    def start(self) -> None:
        self.queue.put(TRIGGER_STARTUP)
        if self.detector is not None:
            self.detector.start()
        thread = threading.Thread(target=self.run_forever, name="SyncRunner", daemon=True)
        thread.start()
        self._thread = thread

    def stop(self, grace: float = 30.0) -> bool:
        """Stop taking triggers and wait up to ``grace`` seconds for the cycle in flight."""
        if self.detector is not None:
            self.detector.stop()
        self.queue.close()
        finished = self._idle.wait(grace)
        if not finished:
            logging.warning("[runner] Sync cycle still running after %ss grace period", grace)
        if self._thread is not None:
            self._thread.join(timeout=grace if finished else 0.1)
            self._thread = None
        return finished

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)
