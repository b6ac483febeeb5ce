from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, generate_latest

from forwardarr.engine import SyncOutcome, SyncStatus


class PrometheusMetrics:
    """``MetricsSink`` backed by a private Prometheus registry."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.current_port = Gauge(
            "forwardarr_current_port",
            "Listen port currently configured in qBittorrent",
            registry=self.registry,
        )
        self.syncs = Counter(
            "forwardarr_sync_total",
            "Port updates applied to qBittorrent",
            registry=self.registry,
        )
        self.errors = Counter(
            "forwardarr_sync_errors_total",
            "Failed sync cycles",
            ["stage"],
            registry=self.registry,
        )
        self.last_sync = Gauge(
            "forwardarr_last_sync_timestamp_seconds",
            "Unix time of the last successful sync check",
            registry=self.registry,
        )

    def record(self, outcome: SyncOutcome) -> None:
        if outcome.status is SyncStatus.FAILED:
            self.errors.labels(stage=outcome.stage or "unknown").inc()
            return
        if outcome.observed_port is not None:
            self.current_port.set(outcome.observed_port)
        if outcome.status is SyncStatus.APPLIED:
            self.syncs.inc()
        self.last_sync.set(outcome.timestamp.timestamp())

    def render(self) -> tuple[bytes, str]:
        return generate_latest(self.registry), CONTENT_TYPE_LATEST
