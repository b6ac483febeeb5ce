import argparse
import logging
import os
import re
import signal
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from forwardarr.detector import TRIGGER_MANUAL, ChangeDetector, TriggerQueue
from forwardarr.engine import EngineState, SyncEngine, SyncRunner
from forwardarr.errors import AuthError, ClientError, ConfigError
from forwardarr.metrics import PrometheusMetrics
from forwardarr.qbittorrent import QBittorrentClient
from forwardarr.webhook import TEMPLATES, WebhookClient

EXIT_CONFIG = 1
EXIT_AUTH = 2
EXIT_SYNC = 3

DEFAULT_PORT_FILE = "/tmp/gluetun/forwarded_port"
DEFAULT_QBIT_ADDR = "http://localhost:8080"
DEFAULT_SETTINGS = {
    "PORT_FILE": DEFAULT_PORT_FILE,
    "QBIT_ADDR": DEFAULT_QBIT_ADDR,
    "QBIT_USER": "admin",
    "QBIT_PASS": "adminadmin",
    "SYNC_INTERVAL": "5m",
    "REQUEST_TIMEOUT": "10s",
    "SHUTDOWN_GRACE": "30s",
    "LOG_LEVEL": "info",
    "LOG_FILE": "",
    "SERVER_ENABLED": "true",
    "SERVER_HOST": "0.0.0.0",
    "SERVER_PORT": "9090",
    "WEBHOOK_ENABLED": "false",
    "WEBHOOK_URL": "",
    "WEBHOOK_TEMPLATE": "json",
    "WEBHOOK_EVENTS": "port_changed",
    "WEBHOOK_TIMEOUT": "10s",
}
LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}
_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h)?$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


@dataclass
class WebhookSettings:
    enabled: bool
    url: str
    template: str
    events: list[str]
    timeout: float


@dataclass
class Settings:
    port_file: Path
    qbit_addr: str
    qbit_user: str
    qbit_pass: str
    sync_interval: float
    request_timeout: float
    shutdown_grace: float
    log_level: str
    log_path: Path | None
    server_enabled: bool
    server_host: str
    server_port: int
    webhook: WebhookSettings

    def describe(self) -> str:
        server = f"{self.server_host}:{self.server_port}" if self.server_enabled else "off"
        return (
            f"port_file={self.port_file} qbit_addr={self.qbit_addr} "
            f"qbit_user={self.qbit_user} sync_interval={self.sync_interval}s "
            f"request_timeout={self.request_timeout}s "
            f"server={server} "
            f"webhook={self.webhook.template if self.webhook.enabled else 'off'}"
        )


def parse_duration(value: str, name: str) -> float:
    match = _DURATION_RE.match(value.strip().lower())
    if not match:
        raise ConfigError(f"{name} must be a duration like 30s or 5m (got {value!r})")
    amount, unit = match.groups()
    seconds = float(amount) * _DURATION_UNITS[unit or "s"]
    if seconds <= 0:
        raise ConfigError(f"{name} must be > 0 (got {value!r})")
    return seconds


def parse_bool(value: str, name: str) -> bool:
    text = value.strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{name} must be a boolean (got {value!r})")


def _settings_from_env(env: Mapping[str, str]) -> Settings:
    def _get(key: str) -> str:
        value = env.get(key)
        if value is None:
            return DEFAULT_SETTINGS[key]
        return value.strip()

    def _port(key: str) -> int:
        raw = _get(key)
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{key} must be an integer (got {raw!r})") from exc
        if not 0 < value < 65536:
            raise ConfigError(f"{key} must be in 1-65535 (got {value})")
        return value

    port_file = _get("PORT_FILE")
    if not port_file:
        raise ConfigError("PORT_FILE is required")

    qbit_addr = _get("QBIT_ADDR").rstrip("/")
    if not qbit_addr.startswith(("http://", "https://")):
        raise ConfigError(f"QBIT_ADDR must start with http:// or https:// (got {qbit_addr!r})")

    log_level = _get("LOG_LEVEL").lower()
    if log_level not in LOG_LEVELS:
        raise ConfigError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)} (got {log_level!r})")

    webhook_enabled = parse_bool(_get("WEBHOOK_ENABLED"), "WEBHOOK_ENABLED")
    webhook_url = _get("WEBHOOK_URL")
    if webhook_enabled and not webhook_url:
        raise ConfigError("WEBHOOK_URL is required when WEBHOOK_ENABLED is true")
    webhook_template = _get("WEBHOOK_TEMPLATE").lower() or "json"
    if webhook_template not in TEMPLATES:
        raise ConfigError(
            f"WEBHOOK_TEMPLATE must be one of {', '.join(TEMPLATES)} (got {webhook_template!r})"
        )
    webhook_events = [event.strip() for event in _get("WEBHOOK_EVENTS").split(",") if event.strip()]

    log_file = _get("LOG_FILE")

    return Settings(
        port_file=Path(port_file),
        qbit_addr=qbit_addr,
        qbit_user=_get("QBIT_USER"),
        qbit_pass=_get("QBIT_PASS"),
        sync_interval=parse_duration(_get("SYNC_INTERVAL"), "SYNC_INTERVAL"),
        request_timeout=parse_duration(_get("REQUEST_TIMEOUT"), "REQUEST_TIMEOUT"),
        shutdown_grace=parse_duration(_get("SHUTDOWN_GRACE"), "SHUTDOWN_GRACE"),
        log_level=log_level,
        log_path=Path(log_file) if log_file else None,
        server_enabled=parse_bool(_get("SERVER_ENABLED"), "SERVER_ENABLED"),
        server_host=_get("SERVER_HOST"),
        server_port=_port("SERVER_PORT"),
        webhook=WebhookSettings(
            enabled=webhook_enabled,
            url=webhook_url,
            template=webhook_template,
            events=webhook_events,
            timeout=parse_duration(_get("WEBHOOK_TIMEOUT"), "WEBHOOK_TIMEOUT"),
        ),
    )


def _setup_logging(level: str, log_path: Path | None = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
    logging.basicConfig(
        level=LOG_LEVELS[level],
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=handlers,
        force=True,
    )
    # urllib3 logs every connection at debug
    logging.getLogger("urllib3").setLevel(logging.WARNING)


class Runtime:
    """All long-lived objects of one running service, wired together."""

    def __init__(self, settings: Settings, **overrides: Any) -> None:
        self.settings = settings
        self.client: QBittorrentClient = overrides.get("client") or QBittorrentClient(
            settings.qbit_addr,
            settings.qbit_user,
            settings.qbit_pass,
            timeout=settings.request_timeout,
        )
        self.metrics: PrometheusMetrics = overrides.get("metrics") or PrometheusMetrics()
        self.webhook: WebhookClient | None = overrides.get("webhook")
        if self.webhook is None and settings.webhook.enabled:
            self.webhook = WebhookClient(
                settings.webhook.url,
                timeout=settings.webhook.timeout,
                template=settings.webhook.template,
                events=settings.webhook.events,
            )
        self.state = EngineState()
        self.queue = TriggerQueue()
        self.detector: ChangeDetector = overrides.get("detector") or ChangeDetector(
            settings.port_file, settings.sync_interval, self.queue
        )
        self.engine = SyncEngine(
            settings.port_file,
            self.client,
            metrics=self.metrics,
            notifier=self.webhook,
            state=self.state,
        )
        self.runner = SyncRunner(self.engine, self.queue, self.state, detector=self.detector)
        self._stopped = False

    def start(self) -> None:
        self.runner.start()

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        logging.info("[service] Shutting down")
        self.runner.stop(self.settings.shutdown_grace)
        self.client.close()
        if self.webhook is not None:
            self.webhook.close()


def create_runtime(settings: Settings, **overrides: Any) -> Runtime:
    return Runtime(settings, **overrides)


def initial_authenticate(client: QBittorrentClient) -> bool:
    """Log in once at startup.

    Rejected credentials raise ``AuthError``; an unreachable qBittorrent only
    logs a warning since every sync cycle logs in again on its own.
    """
    try:
        client.authenticate()
    except AuthError:
        raise
    except ClientError as exc:
        logging.warning("[service] qBittorrent not reachable yet: %s", exc)
        return False
    logging.info("[service] Authenticated with qBittorrent at %s", client.base_url)
    return True


def run_once(runtime: Runtime) -> int:
    outcome = runtime.engine.run_cycle(TRIGGER_MANUAL)
    logging.info(
        "[service] Sync %s (observed=%s remote=%s)",
        outcome.status.value,
        outcome.observed_port,
        outcome.remote_port,
    )
    return 0 if outcome.ok else EXIT_SYNC


def run(runtime: Runtime) -> None:
    """Run until SIGINT/SIGTERM, with the HTTP server when enabled."""
    runtime.start()
    try:
        if runtime.settings.server_enabled:
            from forwardarr.webapp import run_web

            # uvicorn installs its own SIGINT/SIGTERM handlers and returns on shutdown
            run_web(runtime, runtime.settings.server_host, runtime.settings.server_port)
        else:
            shutdown = threading.Event()

            def _handle_signal(signum: int, frame: Any) -> None:
                logging.info("[service] Received signal %s", signum)
                shutdown.set()

            signal.signal(signal.SIGTERM, _handle_signal)
            signal.signal(signal.SIGINT, _handle_signal)
            while not shutdown.wait(1.0):
                pass
    finally:
        runtime.stop()


def _env_with_args(args: argparse.Namespace, env: Mapping[str, str]) -> dict[str, str]:
    merged = dict(env)
    overrides = {
        "PORT_FILE": args.port_file,
        "QBIT_ADDR": args.qbit_addr,
        "SYNC_INTERVAL": args.interval,
        "LOG_LEVEL": args.log_level,
        "LOG_FILE": args.log_file,
        "SERVER_PORT": str(args.server_port) if args.server_port is not None else None,
    }
    for key, value in overrides.items():
        if value is not None:
            merged[key] = value
    if args.no_server:
        merged["SERVER_ENABLED"] = "false"
    return merged


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Keep qBittorrent's listen port in sync with a VPN forwarded port file"
    )
    parser.add_argument("--port-file", help="Forwarded port file (env PORT_FILE)")
    parser.add_argument("--qbit-addr", help="qBittorrent Web UI URL (env QBIT_ADDR)")
    parser.add_argument("--interval", help="Fallback poll interval, e.g. 5m (env SYNC_INTERVAL)")
    parser.add_argument("--log-level", help="debug, info, warn or error (env LOG_LEVEL)")
    parser.add_argument("--log-file", help="Also log to this file (env LOG_FILE)")
    parser.add_argument("--server-port", type=int, help="HTTP server port (env SERVER_PORT)")
    parser.add_argument(
        "--no-server",
        action="store_true",
        help="Do not start the health/metrics HTTP server",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sync cycle and exit",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    try:
        settings = _settings_from_env(_env_with_args(args, os.environ))
    except ConfigError as exc:
        print(f"ERROR code={EXIT_CONFIG} config validation failed: {exc}")
        sys.exit(EXIT_CONFIG)

    _setup_logging(settings.log_level, settings.log_path)
    logging.info("[service] Starting forwardarr: %s", settings.describe())

    runtime = create_runtime(settings)
    try:
        initial_authenticate(runtime.client)
    except AuthError as exc:
        logging.error("[service] ERROR code=%s qBittorrent login rejected: %s", EXIT_AUTH, exc)
        runtime.client.close()
        sys.exit(EXIT_AUTH)

    if args.once:
        code = run_once(runtime)
        runtime.stop()
        sys.exit(code)

    run(runtime)


if __name__ == "__main__":
    main()
