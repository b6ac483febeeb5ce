import logging
import threading
from pathlib import Path
from typing import Any, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

TRIGGER_STARTUP = "startup"
TRIGGER_FILESYSTEM = "filesystem"
TRIGGER_TIMER = "timer"
TRIGGER_MANUAL = "manual"


class TriggerQueue:
    """Depth-one queue of "check now" signals.

    A trigger put while another one is already pending is folded into it, so
    a burst of changes during a sync cycle results in exactly one follow-up
    cycle.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._pending: str | None = None
        self._closed = False
        self._coalesced = 0

    def put(self, source: str) -> bool:
        with self._cond:
            if self._closed:
                return False
            if self._pending is not None:
                self._coalesced += 1
                logging.debug(
                    "[detector] Trigger %s coalesced into pending %s",
                    source,
                    self._pending,
                )
                return False
            self._pending = source
            self._cond.notify()
            return True

    def get(self, timeout: float | None = None) -> str | None:
        with self._cond:
            self._cond.wait_for(
                lambda: self._pending is not None or self._closed, timeout=timeout
            )
            if self._closed:
                return None
            source = self._pending
            self._pending = None
            return source

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._pending = None
            self._cond.notify_all()

    @property
    def pending(self) -> str | None:
        with self._cond:
            return self._pending

    @property
    def coalesced(self) -> int:
        with self._cond:
            return self._coalesced

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed


class PortFileEventHandler(FileSystemEventHandler):
    """Turn directory events for the port file into triggers."""

    def __init__(
        self,
        port_file: Path,
        queue: TriggerQueue,
        on_watch_lost: Callable[[], None] | None = None,
    ) -> None:
        super().__init__()
        self.port_file = port_file.absolute()
        self.watch_dir = self.port_file.parent
        self.queue = queue
        self.on_watch_lost = on_watch_lost

    @staticmethod
    def _as_path(path: Any) -> Path | None:
        if not path:
            return None
        if isinstance(path, bytes):
            path = path.decode("utf-8", errors="replace")
        return Path(path).absolute()

    def _is_port_file(self, path: Any) -> bool:
        return self._as_path(path) == self.port_file

    def _check_watch_dir(self, path: Any) -> bool:
        # inotify reports the watched directory going away as a delete or
        # move of the watch path itself, and stops the emitter
        if self._as_path(path) != self.watch_dir:
            return False
        logging.warning("[detector] Watch directory %s removed", self.watch_dir)
        if self.on_watch_lost is not None:
            self.on_watch_lost()
        return True

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._is_port_file(event.src_path):
            logging.debug("[detector] Port file created")
            self.queue.put(TRIGGER_FILESYSTEM)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._is_port_file(event.src_path):
            logging.debug("[detector] Port file modified")
            self.queue.put(TRIGGER_FILESYSTEM)

    def on_moved(self, event: FileSystemEvent) -> None:
        if self._check_watch_dir(event.src_path) or event.is_directory:
            return
        dest_path = getattr(event, "dest_path", None)
        if self._is_port_file(dest_path):
            # atomic replace: temp file renamed onto the port file
            logging.debug("[detector] Port file replaced from %s", event.src_path)
            self.queue.put(TRIGGER_FILESYSTEM)
        elif self._is_port_file(event.src_path):
            logging.info("[detector] Port file moved away to %s", dest_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if self._check_watch_dir(event.src_path):
            return
        if not event.is_directory and self._is_port_file(event.src_path):
            logging.info("[detector] Port file deleted: %s", event.src_path)


class ChangeDetector:
    """Feed the trigger queue from directory events and a fallback timer.

    The parent directory is watched instead of the file so that the watch
    survives the file being created late or replaced. When the watch cannot
    be established, the observer thread dies, or the directory itself is
    deleted or recreated, it is re-armed on the next timer tick; the timer
    alone keeps the sync going meanwhile.
    """

    def __init__(
        self,
        port_file: Path,
        interval: float,
        queue: TriggerQueue,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be > 0 (got {interval})")
        self.port_file = port_file
        self.watch_dir = port_file.absolute().parent
        self.interval = interval
        self.queue = queue
        self.handler = PortFileEventHandler(port_file, queue, on_watch_lost=self._mark_stale)
        self._observer_factory = observer_factory
        self._observer: Any = None
        self._watch_identity: tuple[int, int] | None = None
        self._stale = False
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._timer_thread: threading.Thread | None = None

    @property
    def watching(self) -> bool:
        """True while the watch is live on the directory it was armed on.

        A dead observer thread, a deleted watch directory, or a directory
        replaced by a new one (different device/inode) all count as lost;
        the loss sticks until the next re-arm.
        """
        with self._lock:
            observer = self._observer
            identity = self._watch_identity
            stale = self._stale
        if observer is None or stale or not observer.is_alive():
            return False
        if self._dir_identity() != identity:
            self._mark_stale()
            return False
        return True

    def _mark_stale(self) -> None:
        with self._lock:
            self._stale = True

    def _dir_identity(self) -> tuple[int, int] | None:
        try:
            info = self.watch_dir.stat()
        except OSError:
            return None
        return info.st_dev, info.st_ino

    def start(self) -> None:
        self._stop_event.clear()
        self._arm_watch()
        thread = threading.Thread(target=self._run_timer, name="ChangeDetectorTimer", daemon=True)
        thread.start()
        self._timer_thread = thread
        logging.info(
            "[detector] Watching %s (fallback poll every %ss)", self.port_file, self.interval
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        self._disarm_watch(timeout)
        if self._timer_thread is not None:
            self._timer_thread.join(timeout=timeout)
            self._timer_thread = None

    def _run_timer(self) -> None:
        while not self._stop_event.wait(self.interval):
            if not self.watching:
                self._arm_watch()
            self.queue.put(TRIGGER_TIMER)

    def _arm_watch(self) -> bool:
        """Replace any previous observer with a fresh watch on ``watch_dir``.

        Observers are started and stopped outside the lock; only the
        reference swap is guarded.
        """
        if self._stop_event.is_set():
            return False
        with self._lock:
            previous, self._observer = self._observer, None
            self._watch_identity = None
            self._stale = False
        if previous is not None:
            logging.warning("[detector] Watch on %s lost, re-arming", self.watch_dir)
            self._shutdown_observer(previous, 1.0)

        identity = self._dir_identity()
        if identity is None or not self.watch_dir.is_dir():
            logging.error(
                "[detector] Watch directory %s not accessible; relying on poll",
                self.watch_dir,
            )
            return False

        observer = self._observer_factory()
        try:
            observer.schedule(self.handler, str(self.watch_dir), recursive=False)
            observer.start()
        except OSError as exc:
            logging.error("[detector] Cannot watch %s: %s; relying on poll", self.watch_dir, exc)
            self._shutdown_observer(observer, 1.0)
            return False

        with self._lock:
            # stop() may have run while the observer was starting
            stopped = self._stop_event.is_set()
            if not stopped:
                self._observer = observer
                self._watch_identity = identity
        if stopped:
            self._shutdown_observer(observer, 1.0)
            return False
        logging.debug("[detector] Watch armed on %s", self.watch_dir)
        return True

    def _disarm_watch(self, timeout: float) -> None:
        with self._lock:
            observer, self._observer = self._observer, None
            self._watch_identity = None
        if observer is not None:
            self._shutdown_observer(observer, timeout)

    @staticmethod
    def _shutdown_observer(observer: Any, timeout: float) -> None:
        try:
            observer.stop()
            if observer.is_alive():
                observer.join(timeout=timeout)
        except (OSError, RuntimeError) as exc:
            logging.warning("[detector] Error stopping watch: %s", exc)
