"""Materializer: applies partitioned change events to the sink.

One :class:`PartitionLane` per transport partition, each strictly sequential
and independent of the others. A lane:

1. reads the next batch from its partition, starting after the offset in its
   checkpoint;
2. skips records already covered by the checkpoint offset and events whose
   sequence the sink has already applied for that key (redelivery);
3. applies the event, retrying transient sink failures indefinitely;
4. saves the lane checkpoint only after the sink write returned.

A permanent failure halts the lane and leaves its checkpoint on the last
confirmed record; it is never skipped.
"""

import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from cdc_relay.common.exceptions import SinkUnavailable, SinkWriteError
from cdc_relay.common.utils import backoff_delays
from cdc_relay.observability.health import HealthChecker, HealthStatus
from cdc_relay.observability.logging_config import get_logger
from cdc_relay.observability.metrics import MetricsExporter
from cdc_relay.relay.checkpoint import CheckpointStore
from cdc_relay.relay.events import ChangeEvent
from cdc_relay.relay.publisher import topic_for_source
from cdc_relay.relay.sinks import Sink
from cdc_relay.relay.transport import Record, Transport

logger = get_logger(__name__)


class LaneState(str, Enum):
    """Partition lane state."""

    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    FAILED = "FAILED"


class LaneAborted(Exception):
    """Raised inside a lane when a stop request interrupts a retry."""


class PartitionLane:
    """Sequential worker for one partition of one source topic."""

    def __init__(self, materializer: "Materializer", partition: int) -> None:
        self.materializer = materializer
        self.partition = partition
        self.state = LaneState.STARTING
        self.error: Optional[str] = None
        self.applied = 0
        self.duplicates = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

        checkpoint = materializer.checkpoints.get(materializer.source_id, partition)
        self.checkpoint_offset: Optional[int] = checkpoint.offset if checkpoint else None
        self.checkpoint_sequence: Optional[int] = checkpoint.sequence if checkpoint else None
        self.next_offset = self.checkpoint_offset + 1 if self.checkpoint_offset is not None else 0
        if checkpoint:
            logger.info(
                f"Lane {self.name} resuming after offset {self.checkpoint_offset} "
                f"(sequence {self.checkpoint_sequence})",
                extra=self._log_context(),
            )

    @property
    def name(self) -> str:
        return f"{self.materializer.source_id}#{self.partition}"

    def _log_context(self, **fields: Any) -> Dict[str, Any]:
        context = {"source_id": self.materializer.source_id, "partition": self.partition}
        context.update(fields)
        return context

    # Lifecycle

    def start(self) -> None:
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name=f"lane-{self.name}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run(self) -> None:
        """Lane loop: poll and apply until stopped or failed."""
        self._set_state(LaneState.RUNNING)
        try:
            while not self._stop.is_set():
                self.poll_once()
        except LaneAborted:
            logger.info(f"Lane {self.name} aborted in-flight write on stop", extra=self._log_context())
        except Exception as e:
            self._fail(e)
            return
        self._set_state(LaneState.STOPPED)

    def poll_once(self, timeout: Optional[float] = None) -> int:
        """
        Read and apply one batch.

        Args:
            timeout: Read timeout in seconds (default from the materializer)

        Returns:
            Number of records handled (applied or skipped)

        Raises:
            SinkWriteError: On a permanent failure; the lane must not continue
        """
        m = self.materializer
        records = m.transport.read(
            m.topic,
            self.partition,
            self.next_offset,
            max_records=m.batch_size,
            timeout=m.poll_timeout if timeout is None else timeout,
        )
        handled = 0
        for record in records:
            # A batch is never abandoned halfway through a write; stop lands between records
            if self._stop.is_set():
                break
            self._handle(record)
            handled += 1
        return handled

    # Apply path

    def _handle(self, record: Record) -> None:
        m = self.materializer

        if self.checkpoint_offset is not None and record.offset <= self.checkpoint_offset:
            self.next_offset = record.offset + 1
            return

        try:
            event = ChangeEvent.from_bytes(record.value)
        except ValueError as e:
            raise SinkWriteError(
                f"Undecodable record at {record.topic}[{record.partition}]@{record.offset}: {e}",
                source_id=m.source_id,
            ) from e

        if event.source_id != m.source_id:
            raise SinkWriteError(
                f"Record for source {event.source_id} found on topic {m.topic}",
                source_id=m.source_id,
            )

        if self._is_duplicate(event):
            self.duplicates += 1
            m.metrics.record_duplicate(m.source_id, self.partition)
            logger.debug(
                f"Skipping redelivered {event.operation.value} key={event.key_token}",
                extra=self._log_context(sequence=event.sequence, offset=record.offset),
            )
        else:
            started = time.monotonic()
            self._retry(lambda: m.sink.apply(event), "sink write")
            self.applied += 1
            m.metrics.record_applied(m.source_id, event.operation.value, time.monotonic() - started)

        sequence = max(event.sequence, self.checkpoint_sequence or 0)
        self._retry(
            lambda: m.checkpoints.save(m.source_id, sequence, self.partition, record.offset),
            "checkpoint save",
        )
        self.checkpoint_offset = record.offset
        self.checkpoint_sequence = sequence
        self.next_offset = record.offset + 1
        m.metrics.update_checkpoint(m.source_id, self.partition, sequence)

    def _is_duplicate(self, event: ChangeEvent) -> bool:
        m = self.materializer
        if m.sink.tracks_key_sequences:
            applied = m.sink.applied_sequence(event)
            return applied is not None and event.sequence <= applied
        # Coarse check: within a partition sequences never decrease, so a lower
        # sequence after the checkpoint offset is a republished copy
        return self.checkpoint_sequence is not None and event.sequence < self.checkpoint_sequence

    def _retry(self, operation: Callable[[], Any], what: str) -> Any:
        m = self.materializer
        delays = backoff_delays(m.retry_initial_backoff, m.backoff_factor, m.max_backoff)
        attempt = 0
        while True:
            try:
                result = operation()
            except (SinkUnavailable, OSError) as e:
                attempt += 1
                delay = next(delays)
                m.metrics.record_error(m.source_id, type(e).__name__)
                logger.warning(
                    f"Lane {self.name} {what} failed (attempt {attempt}): {e}; "
                    f"retrying in {delay:.2f}s",
                    extra=self._log_context(error_type=type(e).__name__),
                )
                m.report_lane(self, HealthStatus.DEGRADED, f"{what} retrying: {e}")
                if self._stop.wait(delay):
                    raise LaneAborted()
                continue
            if attempt:
                m.report_lane(self, HealthStatus.HEALTHY, f"{what} recovered after {attempt} retries")
            return result

    # Status

    def _set_state(self, state: LaneState) -> None:
        self.state = state
        health = HealthStatus.HEALTHY if state != LaneState.FAILED else HealthStatus.UNHEALTHY
        self.materializer.report_lane(self, health, state.value)

    def _fail(self, error: Exception) -> None:
        self.error = f"{type(error).__name__}: {error}"
        self.materializer.metrics.record_error(self.materializer.source_id, type(error).__name__)
        logger.error(
            f"Lane {self.name} halted at offset {self.next_offset}: {self.error}",
            exc_info=True,
            extra=self._log_context(offset=self.next_offset, error_type=type(error).__name__),
        )
        self._set_state(LaneState.FAILED)

    def status(self) -> Dict[str, Any]:
        return {
            "partition": self.partition,
            "state": self.state.value,
            "next_offset": self.next_offset,
            "checkpoint_offset": self.checkpoint_offset,
            "checkpoint_sequence": self.checkpoint_sequence,
            "applied": self.applied,
            "duplicates": self.duplicates,
            "error": self.error,
        }


class Materializer:
    """Runs one lane per partition of a source topic."""

    def __init__(
        self,
        source_id: str,
        transport: Transport,
        sink: Sink,
        checkpoints: CheckpointStore,
        partition_count: int,
        topic_prefix: str = "cdc",
        batch_size: int = 100,
        poll_timeout: float = 1.0,
        retry_initial_backoff: float = 0.1,
        backoff_factor: float = 2.0,
        max_backoff: float = 30.0,
        metrics: Optional[MetricsExporter] = None,
        health: Optional[HealthChecker] = None,
    ) -> None:
        """
        Initialize materializer.

        Args:
            source_id: Source whose topic is consumed
            transport: Partitioned transport
            sink: Destination sink
            checkpoints: Lane checkpoint store
            partition_count: Number of partitions (one lane each)
            topic_prefix: Prefix of per-source topics
            batch_size: Records per read
            poll_timeout: Read timeout in seconds
            retry_initial_backoff: First delay for sink retries
            backoff_factor: Retry delay multiplier
            max_backoff: Upper bound for one retry delay
            metrics: Metrics exporter
            health: Status surface
        """
        self.source_id = source_id
        self.transport = transport
        self.sink = sink
        self.checkpoints = checkpoints
        self.topic = topic_for_source(topic_prefix, source_id)
        self.batch_size = batch_size
        self.poll_timeout = poll_timeout
        self.retry_initial_backoff = retry_initial_backoff
        self.backoff_factor = backoff_factor
        self.max_backoff = max_backoff
        self.metrics = metrics or MetricsExporter()
        self.health = health
        self.lanes: List[PartitionLane] = [
            PartitionLane(self, partition) for partition in range(partition_count)
        ]

    def start(self) -> None:
        logger.info(
            f"Starting materializer for {self.source_id} with {len(self.lanes)} lanes",
            extra={"source_id": self.source_id},
        )
        for lane in self.lanes:
            lane.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop all lanes, letting each finish (or abort) its in-flight write."""
        for lane in self.lanes:
            lane.stop()
        wake = getattr(self.transport, "wake", None)
        if wake is not None:
            wake()
        for lane in self.lanes:
            lane.join(timeout)
        logger.info(f"Materializer for {self.source_id} stopped", extra={"source_id": self.source_id})

    def drain(self, max_rounds: int = 10000) -> int:
        """
        Synchronously apply everything currently in the transport.

        Lanes run one after another on the calling thread; a permanent failure
        halts that lane and the others continue.

        Returns:
            Total records handled
        """
        total = 0
        active = [lane for lane in self.lanes if lane.state != LaneState.FAILED]
        for _ in range(max_rounds):
            handled = 0
            for lane in list(active):
                try:
                    handled += lane.poll_once(timeout=0)
                except LaneAborted:
                    active.remove(lane)
                except Exception as e:
                    lane._fail(e)
                    active.remove(lane)
            total += handled
            if handled == 0:
                break
        return total

    def report_lane(self, lane: PartitionLane, status: HealthStatus, message: str) -> None:
        self.metrics.update_lane_status(self.source_id, lane.partition, lane.state.value)
        if self.health is not None:
            self.health.update_component_health(
                f"lane:{lane.name}", status, message, details=lane.status()
            )

    @property
    def failed_lanes(self) -> List[PartitionLane]:
        return [lane for lane in self.lanes if lane.state == LaneState.FAILED]

    def status(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "topic": self.topic,
            "lanes": [lane.status() for lane in self.lanes],
        }
