"""Ordered, key-partitioned publishing of change events."""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from cdc_relay.common.exceptions import PublishRejected, TransportUnavailable
from cdc_relay.common.utils import retry_with_backoff, stable_hash
from cdc_relay.observability.logging_config import get_logger
from cdc_relay.observability.metrics import MetricsExporter
from cdc_relay.relay.events import ChangeEvent
from cdc_relay.relay.transport import Transport

logger = get_logger(__name__)


def partition_for_key(key_token: str, partition_count: int) -> int:
    """
    Partition of a row key.

    Every event for a row lands in the same partition, which is what keeps
    per-key order through a multi-lane materializer.

    Args:
        key_token: Canonical key string (``ChangeEvent.key_token``)
        partition_count: Number of partitions

    Returns:
        Partition number in ``[0, partition_count)``
    """
    if partition_count < 1:
        raise ValueError("partition_count must be at least 1")
    return stable_hash(key_token) % partition_count


def topic_for_source(topic_prefix: str, source_id: str) -> str:
    """Transport topic carrying one source's events."""
    return f"{topic_prefix}.{source_id}" if topic_prefix else source_id


@dataclass(frozen=True)
class PublishResult:
    """Where a published event was stored."""

    topic: str
    partition: int
    offset: int
    sequence: int


class OrderedPublisher:
    """Appends change events to a partitioned transport.

    Within a partition, append order equals call order; publishes to
    different partitions may proceed concurrently.
    """

    def __init__(
        self,
        transport: Transport,
        partition_count: int,
        topic_prefix: str = "cdc",
        max_attempts: int = 5,
        initial_backoff: float = 0.1,
        backoff_factor: float = 2.0,
        max_backoff: float = 30.0,
        metrics: Optional[MetricsExporter] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Initialize ordered publisher.

        Args:
            transport: Durable partitioned transport
            partition_count: Number of partitions per topic
            topic_prefix: Prefix of per-source topics
            max_attempts: Attempts per event before PublishRejected
            initial_backoff: First retry delay in seconds
            backoff_factor: Delay multiplier between attempts
            max_backoff: Upper bound for one delay
            metrics: Metrics exporter
            sleep: Sleep function (injectable for tests)
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.transport = transport
        self.partition_count = partition_count
        self.topic_prefix = topic_prefix
        self.max_attempts = max_attempts
        self.initial_backoff = initial_backoff
        self.backoff_factor = backoff_factor
        self.max_backoff = max_backoff
        self.metrics = metrics or MetricsExporter()
        self._sleep = sleep
        self._partition_locks: Dict[int, threading.Lock] = {
            p: threading.Lock() for p in range(partition_count)
        }

    def partition_for(self, event: ChangeEvent) -> int:
        return partition_for_key(event.key_token, self.partition_count)

    def publish(self, event: ChangeEvent) -> PublishResult:
        """
        Publish one event and wait for the transport to confirm it.

        Args:
            event: Change event

        Returns:
            Stored position

        Raises:
            PublishRejected: If every attempt failed
        """
        topic = topic_for_source(self.topic_prefix, event.source_id)
        partition = self.partition_for(event)
        key = event.key_token.encode("utf-8")
        value = event.to_bytes()

        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            self.metrics.record_publish_retry(event.source_id)
            logger.warning(
                f"Publish attempt {attempt}/{self.max_attempts} to {topic}[{partition}] "
                f"failed: {error}; retrying in {delay:.2f}s",
                extra={"source_id": event.source_id, "sequence": event.sequence},
            )

        with self._partition_locks[partition]:
            try:
                offset = retry_with_backoff(
                    lambda: self.transport.append(topic, partition, key, value),
                    max_retries=self.max_attempts - 1,
                    initial_delay=self.initial_backoff,
                    backoff_factor=self.backoff_factor,
                    max_delay=self.max_backoff,
                    retry_on=(TransportUnavailable,),
                    on_retry=on_retry,
                    sleep=self._sleep,
                )
            except TransportUnavailable as e:
                self.metrics.record_error(event.source_id, "PublishRejected")
                raise PublishRejected(
                    f"Publish to {topic}[{partition}] rejected after "
                    f"{self.max_attempts} attempts: {e}",
                    source_id=event.source_id,
                    sequence=event.sequence,
                    attempts=self.max_attempts,
                ) from e

        self.metrics.record_published(event.source_id, partition, event.sequence)
        logger.debug(
            f"Published {event.operation.value} to {topic}[{partition}]@{offset}",
            extra={"source_id": event.source_id, "sequence": event.sequence, "offset": offset},
        )
        return PublishResult(topic=topic, partition=partition, offset=offset, sequence=event.sequence)
