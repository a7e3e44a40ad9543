"""Durable, partitioned, ordered transport.

A transport stores records per ``(topic, partition)`` in append order and lets
consumers read from any prior offset. Delivery is at-least-once: a consumer
that resumes from an older offset sees records again.
"""

import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from cdc_relay.common.exceptions import TransportUnavailable
from cdc_relay.observability.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Record:
    """One stored transport record."""

    topic: str
    partition: int
    offset: int
    key: bytes
    value: bytes


class Transport:
    """Interface implemented by transports."""

    def append(self, topic: str, partition: int, key: bytes, value: bytes) -> int:
        """
        Durably append a record.

        Returns:
            Offset assigned to the record

        Raises:
            TransportUnavailable: On any failure; the record may or may not
                have been stored
        """
        raise NotImplementedError

    def read(
        self,
        topic: str,
        partition: int,
        offset: int,
        max_records: int = 100,
        timeout: float = 1.0,
    ) -> List[Record]:
        """Read records starting at ``offset``, blocking up to ``timeout`` seconds."""
        raise NotImplementedError

    def end_offset(self, topic: str, partition: int) -> int:
        """Offset the next appended record will receive."""
        raise NotImplementedError

    def ensure_topic(self, topic: str, partitions: int) -> None:
        """Make sure ``topic`` exists with ``partitions`` partitions."""

    def close(self) -> None:
        pass


class InMemoryTransport(Transport):
    """In-process transport with optional capacity limit and fault injection."""

    def __init__(self, capacity: Optional[int] = None) -> None:
        """
        Initialize in-memory transport.

        Args:
            capacity: Maximum records per partition; appends beyond it fail
                with TransportUnavailable (transport full)
        """
        self.capacity = capacity
        self._partitions: Dict[Tuple[str, int], List[Record]] = defaultdict(list)
        self._cond = threading.Condition()
        self._failures_remaining = 0
        self._available = True

    def fail_next(self, count: int) -> None:
        """Make the next ``count`` appends fail."""
        with self._cond:
            self._failures_remaining = count

    def set_available(self, available: bool) -> None:
        with self._cond:
            self._available = available

    def append(self, topic: str, partition: int, key: bytes, value: bytes) -> int:
        with self._cond:
            if not self._available:
                raise TransportUnavailable("Transport is unavailable")
            if self._failures_remaining > 0:
                self._failures_remaining -= 1
                raise TransportUnavailable("Injected transport failure")
            records = self._partitions[(topic, partition)]
            if self.capacity is not None and len(records) >= self.capacity:
                raise TransportUnavailable(f"Partition {topic}[{partition}] is full")
            offset = len(records)
            records.append(Record(topic, partition, offset, key, value))
            self._cond.notify_all()
            return offset

    def read(
        self,
        topic: str,
        partition: int,
        offset: int,
        max_records: int = 100,
        timeout: float = 1.0,
    ) -> List[Record]:
        with self._cond:
            records = self._partitions[(topic, partition)]
            if offset >= len(records) and timeout > 0:
                self._cond.wait(timeout=timeout)
                records = self._partitions[(topic, partition)]
            return records[offset:offset + max_records]

    def end_offset(self, topic: str, partition: int) -> int:
        with self._cond:
            return len(self._partitions[(topic, partition)])

    def records(self, topic: str, partition: int) -> List[Record]:
        """Snapshot of a partition's records."""
        with self._cond:
            return list(self._partitions[(topic, partition)])

    def wake(self) -> None:
        with self._cond:
            self._cond.notify_all()
