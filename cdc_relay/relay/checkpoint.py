"""Checkpoint stores.

A checkpoint record is keyed by ``(source_id, partition)``. Records are
independent: saving one source's checkpoint never reads, locks or rewrites
another's, so lanes and sources checkpoint concurrently.
"""

import json
import os
import tempfile
import threading
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Optional, Union

from cdc_relay.observability.logging_config import get_logger
from cdc_relay.relay.events import Checkpoint, checkpoint_id

logger = get_logger(__name__)


class CheckpointStore:
    """Interface implemented by checkpoint stores.

    ``save`` must be durable before it returns.
    """

    def get(self, source_id: str, partition: Optional[int] = None) -> Optional[Checkpoint]:
        raise NotImplementedError

    def put(self, checkpoint: Checkpoint) -> None:
        raise NotImplementedError

    def delete(self, source_id: str, partition: Optional[int] = None) -> bool:
        raise NotImplementedError

    def list(self, source_id: Optional[str] = None) -> List[Checkpoint]:
        raise NotImplementedError

    def load(self, source_id: str, partition: Optional[int] = None) -> Optional[int]:
        """
        Last applied sequence for a source (or one of its lanes).

        Args:
            source_id: Source identifier
            partition: Lane partition, or None for the source-level record

        Returns:
            Sequence, or None when nothing has been checkpointed
        """
        checkpoint = self.get(source_id, partition)
        return checkpoint.sequence if checkpoint else None

    def save(
        self,
        source_id: str,
        sequence: int,
        partition: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> Checkpoint:
        """
        Durably record a position.

        Args:
            source_id: Source identifier
            sequence: Last applied (or published) source sequence
            partition: Lane partition, or None for the source-level record
            offset: Transport offset of the last applied record

        Returns:
            Stored checkpoint
        """
        checkpoint = Checkpoint(
            source_id=source_id, sequence=sequence, partition=partition, offset=offset
        )
        self.put(checkpoint)
        return checkpoint

    def clear_source(self, source_id: str) -> int:
        """Delete every record of a source. Returns the number deleted."""
        removed = 0
        for checkpoint in self.list(source_id):
            if self.delete(checkpoint.source_id, checkpoint.partition):
                removed += 1
        return removed

    def close(self) -> None:
        pass


def _sort_key(checkpoint: Checkpoint) -> tuple:
    return (checkpoint.source_id, -1 if checkpoint.partition is None else checkpoint.partition)


class InMemoryCheckpointStore(CheckpointStore):
    """Process-local checkpoint store."""

    def __init__(self) -> None:
        self._records: Dict[str, Checkpoint] = {}
        self._lock = threading.Lock()

    def get(self, source_id: str, partition: Optional[int] = None) -> Optional[Checkpoint]:
        with self._lock:
            return self._records.get(checkpoint_id(source_id, partition))

    def put(self, checkpoint: Checkpoint) -> None:
        with self._lock:
            self._records[checkpoint.checkpoint_id] = checkpoint

    def delete(self, source_id: str, partition: Optional[int] = None) -> bool:
        with self._lock:
            return self._records.pop(checkpoint_id(source_id, partition), None) is not None

    def list(self, source_id: Optional[str] = None) -> List[Checkpoint]:
        with self._lock:
            records = list(self._records.values())
        if source_id is not None:
            records = [r for r in records if r.source_id == source_id]
        return sorted(records, key=_sort_key)


class JsonFileCheckpointStore(CheckpointStore):
    """Checkpoint store with one JSON file per record.

    Writes go to a temp file in the same directory, are fsynced, then
    ``os.replace``d over the record file, so a crash leaves either the old or
    the new checkpoint and never a torn one. A lock per record id serializes
    writers of the same record only.
    """

    def __init__(self, directory: Union[str, Path], namespace: str = "lanes") -> None:
        """
        Initialize the JSON checkpoint store.

        Args:
            directory: Base directory (created on first write)
            namespace: Subdirectory separating stores that share a base
                directory, e.g. ``lanes`` and ``offsets``
        """
        self.directory = Path(directory) / namespace
        self.namespace = namespace
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()
        logger.info(f"JsonFileCheckpointStore at {self.directory}")

    def _lock(self, record_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[record_id]

    def _path(self, record_id: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "._-#" else "_" for c in record_id)
        return self.directory / f"{safe}.json"

    def get(self, source_id: str, partition: Optional[int] = None) -> Optional[Checkpoint]:
        record_id = checkpoint_id(source_id, partition)
        with self._lock(record_id):
            return self._read(self._path(record_id))

    def put(self, checkpoint: Checkpoint) -> None:
        record_id = checkpoint.checkpoint_id
        path = self._path(record_id)
        with self._lock(record_id):
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(self.directory), suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(checkpoint.to_dict(), f)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
            self._fsync_directory()

    def delete(self, source_id: str, partition: Optional[int] = None) -> bool:
        record_id = checkpoint_id(source_id, partition)
        with self._lock(record_id):
            path = self._path(record_id)
            if not path.exists():
                return False
            path.unlink()
            self._fsync_directory()
            return True

    def list(self, source_id: Optional[str] = None) -> List[Checkpoint]:
        if not self.directory.exists():
            return []
        records = []
        for path in sorted(self.directory.glob("*.json")):
            checkpoint = self._read(path)
            if checkpoint is None:
                continue
            if source_id is None or checkpoint.source_id == source_id:
                records.append(checkpoint)
        return sorted(records, key=_sort_key)

    def _read(self, path: Path) -> Optional[Checkpoint]:
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return Checkpoint.from_dict(json.load(f))

    def _fsync_directory(self) -> None:
        if os.name != "posix":
            return
        dir_fd = os.open(str(self.directory), os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
