"""Prometheus metrics exporters."""

from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from cdc_relay.common.config import get_settings

# Source side
relay_entries_read_total = Counter(
    "relay_entries_read_total",
    "Total raw change log entries read",
    ["source"],
)

relay_events_published_total = Counter(
    "relay_events_published_total",
    "Total change events confirmed by the transport",
    ["source", "partition"],
)

relay_publish_retries_total = Counter(
    "relay_publish_retries_total",
    "Total publish attempts that failed and were retried",
    ["source"],
)

relay_source_position = Gauge(
    "relay_source_position",
    "Last source sequence confirmed as published",
    ["source"],
)

# Sink side
relay_events_applied_total = Counter(
    "relay_events_applied_total",
    "Total change events applied to the sink",
    ["source", "operation"],
)

relay_duplicates_skipped_total = Counter(
    "relay_duplicates_skipped_total",
    "Total redelivered change events skipped at apply time",
    ["source", "partition"],
)

relay_apply_duration_seconds = Histogram(
    "relay_apply_duration_seconds",
    "Time taken to apply one change event",
    ["source"],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0],
)

relay_checkpoint_sequence = Gauge(
    "relay_checkpoint_sequence",
    "Last sequence checkpointed per source and partition lane",
    ["source", "partition"],
)

# Errors and status
relay_errors_total = Counter(
    "relay_errors_total",
    "Total relay errors by type",
    ["source", "error_type"],
)

relay_status = Gauge(
    "relay_status",
    "Relay status (1=running, 0=stopped/paused, -1=failed)",
    ["source"],
)

relay_lane_status = Gauge(
    "relay_lane_status",
    "Partition lane status (1=running, 0=stopped, -1=failed)",
    ["source", "partition"],
)

STATUS_VALUES = {"RUNNING": 1, "PAUSED": 0, "STOPPED": 0, "FAILED": -1}


class MetricsExporter:
    """Prometheus metrics exporter."""

    def __init__(self, port: Optional[int] = None) -> None:
        """
        Initialize metrics exporter.

        Args:
            port: Port to expose metrics on (default from config)
        """
        self.settings = get_settings()
        self.port = port or self.settings.observability.metrics_port
        self._server_started = False

    def start(self) -> None:
        """Start metrics HTTP server."""
        if not self._server_started:
            start_http_server(self.port)
            self._server_started = True

    def record_entry_read(self, source: str) -> None:
        relay_entries_read_total.labels(source=source).inc()

    def record_published(self, source: str, partition: int, sequence: int) -> None:
        """
        Record an event confirmed by the transport.

        Args:
            source: Source identifier
            partition: Partition the event was appended to
            sequence: Source sequence of the event
        """
        relay_events_published_total.labels(source=source, partition=str(partition)).inc()
        relay_source_position.labels(source=source).set(sequence)

    def record_publish_retry(self, source: str) -> None:
        relay_publish_retries_total.labels(source=source).inc()

    def record_applied(self, source: str, operation: str, duration: float) -> None:
        """
        Record a change event applied to the sink.

        Args:
            source: Source identifier
            operation: CREATE/UPDATE/DELETE
            duration: Apply duration in seconds
        """
        relay_events_applied_total.labels(source=source, operation=operation).inc()
        relay_apply_duration_seconds.labels(source=source).observe(duration)

    def record_duplicate(self, source: str, partition: int) -> None:
        relay_duplicates_skipped_total.labels(source=source, partition=str(partition)).inc()

    def update_checkpoint(self, source: str, partition: int, sequence: int) -> None:
        relay_checkpoint_sequence.labels(source=source, partition=str(partition)).set(sequence)

    def record_error(self, source: str, error_type: str) -> None:
        """
        Record relay error.

        Args:
            source: Source identifier
            error_type: Error class name
        """
        relay_errors_total.labels(source=source, error_type=error_type).inc()

    def update_relay_status(self, source: str, status: str) -> None:
        relay_status.labels(source=source).set(STATUS_VALUES.get(status, 0))

    def update_lane_status(self, source: str, partition: int, status: str) -> None:
        relay_lane_status.labels(source=source, partition=str(partition)).set(
            STATUS_VALUES.get(status, 0)
        )
