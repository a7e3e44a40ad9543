"""Source relay: reads one source's change log and publishes it in order."""

import threading
from enum import Enum
from typing import Any, Dict, Optional

from cdc_relay.common.exceptions import (
    MalformedEntry,
    PublishRejected,
    SequenceGone,
    SourceUnavailable,
)
from cdc_relay.common.utils import backoff_delays
from cdc_relay.observability.health import HealthChecker, HealthStatus
from cdc_relay.observability.logging_config import get_logger
from cdc_relay.observability.metrics import MetricsExporter
from cdc_relay.relay.checkpoint import CheckpointStore
from cdc_relay.relay.events import ChangeEvent
from cdc_relay.relay.log_reader import LogReader, LogStream
from cdc_relay.relay.normalizer import ChangeNormalizer
from cdc_relay.relay.publisher import OrderedPublisher

logger = get_logger(__name__)


class RelayState(str, Enum):
    """Source relay state."""

    STARTING = "STARTING"
    SNAPSHOTTING = "SNAPSHOTTING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    STOPPED = "STOPPED"
    FAILED = "FAILED"


class _Stopped(Exception):
    """Stop requested while waiting on a retry."""


class SourceRelay:
    """Drives reader → normalizer → publisher for one source.

    The published position is saved to ``offsets`` only after the transport
    confirmed the event, and the reader is reopened from that saved position
    after any disconnect. A read that has not been handed off is never
    counted as done.
    """

    def __init__(
        self,
        source_id: str,
        reader: LogReader,
        normalizer: ChangeNormalizer,
        publisher: OrderedPublisher,
        offsets: CheckpointStore,
        on_malformed: str = "halt",
        snapshot_on_start: bool = False,
        initial_backoff: float = 0.1,
        backoff_factor: float = 2.0,
        max_backoff: float = 30.0,
        metrics: Optional[MetricsExporter] = None,
        health: Optional[HealthChecker] = None,
    ) -> None:
        """
        Initialize source relay.

        Args:
            source_id: Source identifier
            reader: Change log reader
            normalizer: Raw entry normalizer
            publisher: Ordered publisher
            offsets: Store for the published source position
            on_malformed: ``halt`` (default) or ``skip`` malformed entries
            snapshot_on_start: Emit a snapshot when no position is stored
            initial_backoff: First reconnect/republish delay in seconds
            backoff_factor: Delay multiplier
            max_backoff: Upper bound for one delay
            metrics: Metrics exporter
            health: Status surface
        """
        if on_malformed not in ("halt", "skip"):
            raise ValueError(f"on_malformed must be 'halt' or 'skip', not {on_malformed!r}")
        self.source_id = source_id
        self.reader = reader
        self.normalizer = normalizer
        self.publisher = publisher
        self.offsets = offsets
        self.on_malformed = on_malformed
        self.initial_backoff = initial_backoff
        self.backoff_factor = backoff_factor
        self.max_backoff = max_backoff
        self.metrics = metrics or MetricsExporter()
        self.health = health

        self.position: Optional[int] = offsets.load(source_id)
        self.needs_snapshot = snapshot_on_start and self.position is None
        self.state = RelayState.STOPPED
        self.error: Optional[str] = None
        self.published = 0
        self.skipped = 0

        self._stop = threading.Event()
        self._stream: Optional[LogStream] = None
        self._thread: Optional[threading.Thread] = None
        self._reconnect_delays = None

    # Lifecycle

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self.error = None
        self._thread = threading.Thread(target=self.run, name=f"relay-{self.source_id}", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        stream = self._stream
        if stream is not None:
            stream.stop()
        if self._thread is not None:
            self._thread.join(timeout)

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run(self) -> None:
        """Relay loop; returns when stopped or on a fatal error."""
        self._set_state(RelayState.STARTING)
        while not self._stop.is_set():
            try:
                if self.needs_snapshot:
                    self._snapshot()
                self._stream_entries()
            except _Stopped:
                break
            except SourceUnavailable as e:
                if self._reconnect_delays is None:
                    self._reconnect_delays = backoff_delays(
                        self.initial_backoff, self.backoff_factor, self.max_backoff
                    )
                delay = next(self._reconnect_delays)
                self.metrics.record_error(self.source_id, "SourceUnavailable")
                self._set_state(RelayState.PAUSED, f"Source unavailable: {e}; reconnecting in {delay:.2f}s")
                logger.warning(
                    f"Source {self.source_id} unavailable: {e}; reconnecting in {delay:.2f}s",
                    extra={"source_id": self.source_id, "sequence": self.position},
                )
                if self._stop.wait(delay):
                    break
            except SequenceGone as e:
                self._fail(e, "resume position purged at source; resnapshot required")
                return
            except Exception as e:
                # MalformedEntry under the halt policy, DuplicateReader, anything unexpected
                self._fail(e)
                return
        self._set_state(RelayState.STOPPED)

    # Work

    def _stream_entries(self) -> None:
        with self.reader.open(self.source_id, self.position) as stream:
            self._stream = stream
            try:
                if self._stop.is_set():
                    stream.stop()
                self._set_state(RelayState.RUNNING)
                for raw in stream:
                    self._reconnect_delays = None
                    self.metrics.record_entry_read(self.source_id)
                    try:
                        event = self.normalizer.normalize(raw)
                    except MalformedEntry as e:
                        if self.on_malformed == "halt":
                            raise
                        self.skipped += 1
                        self.metrics.record_error(self.source_id, "MalformedEntry")
                        logger.error(
                            f"Skipping malformed entry: {e}",
                            extra={"source_id": self.source_id, "sequence": raw.sequence},
                        )
                        self._commit(raw.sequence, stream)
                        continue
                    self._publish_until_confirmed(event)
                    self._commit(event.sequence, stream)
            finally:
                self._stream = None

    def _snapshot(self) -> None:
        self._set_state(RelayState.SNAPSHOTTING)
        position, entries = self.reader.snapshot(self.source_id)
        logger.info(
            f"Snapshot of {self.source_id}: {len(entries)} rows at sequence {position}",
            extra={"source_id": self.source_id, "sequence": position},
        )
        for raw in entries:
            self._publish_until_confirmed(self.normalizer.normalize(raw))
        self.offsets.save(self.source_id, position)
        self.position = position
        self.needs_snapshot = False

    def _publish_until_confirmed(self, event: ChangeEvent) -> None:
        delays = None
        while True:
            try:
                self.publisher.publish(event)
            except PublishRejected as e:
                if delays is None:
                    delays = backoff_delays(self.initial_backoff, self.backoff_factor, self.max_backoff)
                delay = next(delays)
                self._set_state(
                    RelayState.PAUSED,
                    f"Publish rejected at sequence {event.sequence}: {e}",
                )
                logger.warning(
                    f"Holding position {self.position}: {e}; retrying in {delay:.2f}s",
                    extra={"source_id": self.source_id, "sequence": event.sequence},
                )
                if self._stop.wait(delay):
                    raise _Stopped()
                continue
            self.published += 1
            if self.state == RelayState.PAUSED:
                self._set_state(RelayState.RUNNING)
            return

    def _commit(self, sequence: int, stream: LogStream) -> None:
        self.offsets.save(self.source_id, sequence)
        self.position = sequence
        stream.acknowledge(sequence)

    # Status

    def _set_state(self, state: RelayState, message: str = "") -> None:
        self.state = state
        self.metrics.update_relay_status(self.source_id, state.value)
        if self.health is not None:
            if state == RelayState.FAILED:
                health = HealthStatus.UNHEALTHY
            elif state == RelayState.PAUSED:
                health = HealthStatus.DEGRADED
            else:
                health = HealthStatus.HEALTHY
            self.health.update_component_health(
                f"relay:{self.source_id}", health, message or state.value, details=self.status()
            )

    def _fail(self, error: Exception, hint: str = "") -> None:
        self.error = f"{type(error).__name__}: {error}"
        if hint:
            self.error = f"{self.error} ({hint})"
        self.metrics.record_error(self.source_id, type(error).__name__)
        logger.error(
            f"Relay for {self.source_id} halted at sequence {self.position}: {self.error}",
            exc_info=True,
            extra={"source_id": self.source_id, "sequence": self.position},
        )
        self._set_state(RelayState.FAILED, self.error)

    def status(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "state": self.state.value,
            "position": self.position,
            "published": self.published,
            "skipped": self.skipped,
            "needs_snapshot": self.needs_snapshot,
            "error": self.error,
        }
