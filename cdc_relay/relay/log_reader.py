"""Source change log readers.

A reader attaches to one source's ordered change log and yields raw entries
strictly after a resume position. Only one reader per source may be open at a
time; :class:`ReaderLeases` enforces that across every reader sharing it.
"""

import bisect
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from cdc_relay.common.exceptions import DuplicateReader, SequenceGone, SourceUnavailable
from cdc_relay.common.utils import key_token
from cdc_relay.observability.logging_config import get_logger
from cdc_relay.relay.events import RawEntry

logger = get_logger(__name__)


class ReaderLeases:
    """Exclusive per-source reader leases."""

    def __init__(self) -> None:
        self._holders: Dict[str, int] = {}
        self._lock = threading.Lock()

    def acquire(self, source_id: str, holder: int) -> None:
        """
        Take the lease for a source.

        Args:
            source_id: Source identifier
            holder: Opaque id of the stream taking the lease

        Raises:
            DuplicateReader: If another stream already holds the lease
        """
        with self._lock:
            current = self._holders.get(source_id)
            if current is not None and current != holder:
                raise DuplicateReader(
                    f"A reader is already open for source {source_id}", source_id=source_id
                )
            self._holders[source_id] = holder

    def release(self, source_id: str, holder: int) -> None:
        with self._lock:
            if self._holders.get(source_id) == holder:
                del self._holders[source_id]

    def is_held(self, source_id: str) -> bool:
        with self._lock:
            return source_id in self._holders


class LogStream:
    """Open, single-consumer stream of raw entries for one source.

    Iteration blocks between entries. ``stop()`` may be called from any
    thread and ends the iteration at the next wake-up; ``close()`` must be
    called by the consuming thread and releases the reader lease.
    """

    def __init__(
        self,
        reader: "LogReader",
        source_id: str,
        resume_sequence: Optional[int],
    ) -> None:
        self.reader = reader
        self.source_id = source_id
        self.resume_sequence = resume_sequence
        self.position = resume_sequence
        self._stop = threading.Event()
        self._entries: Optional[Iterator[RawEntry]] = None
        self._closed = False

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def __iter__(self) -> Iterator[RawEntry]:
        if self._entries is None:
            self._entries = self.reader._read(self.source_id, self.resume_sequence, self._stop)
        for entry in self._entries:
            if self._stop.is_set():
                break
            # Entries at or before the current position are replays after a reconnect
            if self.position is not None and entry.sequence <= self.position:
                continue
            self.position = entry.sequence
            yield entry

    def acknowledge(self, sequence: int) -> None:
        """Tell the source everything up to ``sequence`` is safely handed off."""
        self.reader.acknowledge(self.source_id, sequence)

    def stop(self) -> None:
        self._stop.set()
        self.reader.wake()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        if self._entries is not None and hasattr(self._entries, "close"):
            self._entries.close()
        self.reader._release(self)

    def __enter__(self) -> "LogStream":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()


class LogReader:
    """Base class for change log readers.

    Subclasses implement :meth:`_read`, a generator yielding entries with
    sequence strictly greater than the resume position in log order, raising
    :class:`SourceUnavailable` or :class:`SequenceGone` as appropriate and
    returning once ``stop`` is set.
    """

    def __init__(self, leases: Optional[ReaderLeases] = None) -> None:
        self.leases = leases or ReaderLeases()

    def open(self, source_id: str, resume_sequence: Optional[int] = None) -> LogStream:
        """
        Open a stream for a source.

        Args:
            source_id: Source identifier
            resume_sequence: Last sequence already handed off; None reads from
                the start of the retained log

        Returns:
            Log stream

        Raises:
            DuplicateReader: If a stream for this source is already open
        """
        stream = LogStream(self, source_id, resume_sequence)
        self.leases.acquire(source_id, id(stream))
        logger.info(
            f"Opened reader for {source_id} after sequence {resume_sequence}",
            extra={"source_id": source_id, "sequence": resume_sequence},
        )
        return stream

    def _release(self, stream: LogStream) -> None:
        self.leases.release(stream.source_id, id(stream))
        logger.info(
            f"Closed reader for {stream.source_id} at sequence {stream.position}",
            extra={"source_id": stream.source_id, "sequence": stream.position},
        )

    def _read(
        self, source_id: str, resume_sequence: Optional[int], stop: threading.Event
    ) -> Iterator[RawEntry]:
        raise NotImplementedError

    def acknowledge(self, source_id: str, sequence: int) -> None:
        """Confirm a position; readers backed by a server-side slot flush it."""

    def discard(self, source_id: str) -> None:
        """Release server-side state kept for a source, such as a replication slot."""

    def wake(self) -> None:
        """Wake blocked reads so they notice a stop request."""

    def snapshot(self, source_id: str) -> Tuple[int, List[RawEntry]]:
        """
        Read the full current state of a source at a consistent position.

        Returns:
            (position, entries) where every entry has op ``r`` and sequence
            ``position``; streaming resumes after ``position``
        """
        raise NotImplementedError(f"{type(self).__name__} does not support snapshots")


@dataclass
class _SourceLog:
    key_columns: List[str]
    entries: List[RawEntry] = field(default_factory=list)
    sequences: List[int] = field(default_factory=list)
    rows: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    purged_through: int = 0
    available: bool = True


class InMemoryChangeLog(LogReader):
    """Appendable, purgeable in-process change log.

    Plays the part of a source database: ``insert``/``update``/``delete``
    append entries with increasing sequence numbers and keep the current
    table state for snapshots.
    """

    def __init__(
        self, leases: Optional[ReaderLeases] = None, poll_interval: float = 0.1
    ) -> None:
        super().__init__(leases)
        self.poll_interval = poll_interval
        self._sources: Dict[str, _SourceLog] = {}
        self._cond = threading.Condition()
        self._last_sequence = 0

    def create_source(self, source_id: str, key_columns: Sequence[str]) -> None:
        with self._cond:
            self._sources.setdefault(source_id, _SourceLog(key_columns=list(key_columns)))

    def insert(self, source_id: str, row: Dict[str, Any], commit_timestamp: Any = None) -> RawEntry:
        return self._append(source_id, "c", after=row, commit_timestamp=commit_timestamp)

    def update(self, source_id: str, row: Dict[str, Any], commit_timestamp: Any = None) -> RawEntry:
        return self._append(source_id, "u", after=row, commit_timestamp=commit_timestamp)

    def delete(self, source_id: str, key: Dict[str, Any], commit_timestamp: Any = None) -> RawEntry:
        return self._append(source_id, "d", key=key, commit_timestamp=commit_timestamp)

    def append_raw(self, entry: RawEntry) -> RawEntry:
        """
        Append a pre-built entry (for malformed or foreign entries).

        Raises:
            ValueError: If the entry's sequence does not advance the log
        """
        with self._cond:
            log = self._source(entry.source_id)
            if entry.sequence <= self._last_sequence:
                raise ValueError(
                    f"Sequence {entry.sequence} does not advance log past {self._last_sequence}"
                )
            self._last_sequence = entry.sequence
            self._store(log, entry)
            return entry

    def _append(
        self,
        source_id: str,
        op: str,
        after: Optional[Dict[str, Any]] = None,
        key: Optional[Dict[str, Any]] = None,
        commit_timestamp: Any = None,
    ) -> RawEntry:
        with self._cond:
            log = self._source(source_id)
            image = after if after is not None else key
            row_key = {c: image[c] for c in log.key_columns}
            before = log.rows.get(key_token(row_key))
            self._last_sequence += 1
            entry = RawEntry(
                source_id=source_id,
                sequence=self._last_sequence,
                op=op,
                key=row_key,
                before=dict(before) if before else None,
                after=dict(after) if after is not None else None,
                commit_timestamp=commit_timestamp,
                metadata={"table": source_id},
            )
            self._store(log, entry)
            return entry

    def _store(self, log: _SourceLog, entry: RawEntry) -> None:
        log.entries.append(entry)
        log.sequences.append(entry.sequence)
        if entry.key:
            token = key_token(entry.key)
            if entry.op in ("d", "D") or entry.after is None:
                log.rows.pop(token, None)
            else:
                log.rows[token] = dict(entry.after)
        self._cond.notify_all()

    def purge(self, source_id: str, through_sequence: int) -> int:
        """
        Drop retained entries up to and including a sequence.

        Returns:
            Number of entries removed
        """
        with self._cond:
            log = self._source(source_id)
            cut = bisect.bisect_right(log.sequences, through_sequence)
            del log.entries[:cut]
            del log.sequences[:cut]
            log.purged_through = max(log.purged_through, through_sequence)
            self._cond.notify_all()
            return cut

    def set_available(self, source_id: str, available: bool) -> None:
        with self._cond:
            self._source(source_id).available = available
            self._cond.notify_all()

    def last_sequence(self) -> int:
        with self._cond:
            return self._last_sequence

    def wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def snapshot(self, source_id: str) -> Tuple[int, List[RawEntry]]:
        with self._cond:
            log = self._source(source_id)
            if not log.available:
                raise SourceUnavailable(f"Source {source_id} is unavailable", source_id=source_id)
            position = log.sequences[-1] if log.sequences else log.purged_through
            entries = [
                RawEntry(
                    source_id=source_id,
                    sequence=position,
                    op="r",
                    key={c: row[c] for c in log.key_columns},
                    after=dict(row),
                    metadata={"table": source_id, "snapshot": True},
                )
                for row in log.rows.values()
            ]
            return position, entries

    def _source(self, source_id: str) -> _SourceLog:
        log = self._sources.get(source_id)
        if log is None:
            raise SourceUnavailable(f"Unknown source {source_id}", source_id=source_id)
        return log

    def _read(
        self, source_id: str, resume_sequence: Optional[int], stop: threading.Event
    ) -> Iterator[RawEntry]:
        position = resume_sequence or 0
        while not stop.is_set():
            with self._cond:
                log = self._source(source_id)
                if not log.available:
                    raise SourceUnavailable(
                        f"Source {source_id} is unavailable", source_id=source_id
                    )
                if log.purged_through > position:
                    raise SequenceGone(
                        f"Entries after {position} were purged through {log.purged_through}",
                        source_id=source_id,
                        requested=position,
                        oldest_available=log.sequences[0] if log.sequences else None,
                    )
                start = bisect.bisect_right(log.sequences, position)
                batch = log.entries[start:]
                if not batch:
                    self._cond.wait(timeout=self.poll_interval)
                    continue

            for entry in batch:
                if stop.is_set():
                    return
                yield entry
                position = entry.sequence
