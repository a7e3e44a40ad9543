"""Change event model and wire codec."""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from cdc_relay.common.utils import key_token, parse_cdc_timestamp

WIRE_VERSION = 1


class Operation(str, Enum):
    """Kind of row mutation."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class RawEntry:
    """One decoded entry from a source change log.

    ``op`` is the source-specific operation code (Debezium ``c/u/d/r`` or
    wal2json ``I/U/D``); the normalizer maps it to an :class:`Operation`.
    ``key`` may be None when the source does not expose key columns directly.
    """

    source_id: str
    sequence: int
    op: str
    key: Optional[Dict[str, Any]] = None
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    commit_timestamp: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def _freeze(image: Optional[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
    if image is None:
        return None
    return MappingProxyType(dict(image))


@dataclass(frozen=True)
class ChangeEvent:
    """Canonical representation of one row mutation.

    Instances are immutable: key and image mappings are read-only views over
    private copies, so an event handed to the publisher cannot change under it.
    """

    source_id: str
    key: Mapping[str, Any]
    operation: Operation
    sequence: int
    commit_timestamp: Optional[datetime] = None
    after_image: Optional[Mapping[str, Any]] = None
    source_table: Optional[str] = None
    extra_columns: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.key:
            raise ValueError("ChangeEvent key must not be empty")
        if self.operation == Operation.DELETE and self.after_image is not None:
            raise ValueError("DELETE events carry no after image")
        if self.operation != Operation.DELETE and self.after_image is None:
            raise ValueError(f"{self.operation.value} events require an after image")
        object.__setattr__(self, "key", _freeze(self.key))
        object.__setattr__(self, "after_image", _freeze(self.after_image))
        object.__setattr__(self, "extra_columns", tuple(self.extra_columns))

    @property
    def key_token(self) -> str:
        """Stable string form of the key, used for partitioning and dedup."""
        return key_token(dict(self.key))

    @property
    def is_tombstone(self) -> bool:
        return self.operation == Operation.DELETE

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize to a JSON-compatible dictionary.

        Returns:
            Wire dictionary
        """
        return {
            "v": WIRE_VERSION,
            "source_id": self.source_id,
            "key": dict(self.key),
            "operation": self.operation.value,
            "sequence": self.sequence,
            "commit_timestamp": (
                self.commit_timestamp.isoformat() if self.commit_timestamp else None
            ),
            "after": dict(self.after_image) if self.after_image is not None else None,
            "source_table": self.source_table,
            "extra_columns": list(self.extra_columns),
        }

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), default=str, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeEvent":
        """
        Deserialize from a wire dictionary.

        Args:
            data: Dictionary produced by :meth:`to_dict`

        Returns:
            Change event

        Raises:
            ValueError: If the dictionary is not a valid change event
        """
        try:
            return cls(
                source_id=data["source_id"],
                key=data["key"],
                operation=Operation(data["operation"]),
                sequence=int(data["sequence"]),
                commit_timestamp=parse_cdc_timestamp(data.get("commit_timestamp")),
                after_image=data.get("after"),
                source_table=data.get("source_table"),
                extra_columns=tuple(data.get("extra_columns") or ()),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Invalid change event payload: {e}") from e

    @classmethod
    def from_bytes(cls, payload: bytes) -> "ChangeEvent":
        try:
            data = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValueError(f"Undecodable change event payload: {e}") from e
        if not isinstance(data, dict):
            raise ValueError("Change event payload must be a JSON object")
        return cls.from_dict(data)


@dataclass(frozen=True)
class Checkpoint:
    """Durable position record.

    ``partition`` is None for source-level records (the reader's published
    position) and set for materializer lane records, which also carry the
    transport ``offset`` of the last applied record.
    """

    source_id: str
    sequence: int
    partition: Optional[int] = None
    offset: Optional[int] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def checkpoint_id(self) -> str:
        return checkpoint_id(self.source_id, self.partition)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "partition": self.partition,
            "sequence": self.sequence,
            "offset": self.offset,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        return cls(
            source_id=data["source_id"],
            sequence=int(data["sequence"]),
            partition=data.get("partition"),
            offset=data.get("offset"),
            updated_at=parse_cdc_timestamp(data.get("updated_at")) or datetime.now(timezone.utc),
        )


def checkpoint_id(source_id: str, partition: Optional[int] = None) -> str:
    """Record identifier for a source-level or lane-level checkpoint."""
    if partition is None:
        return source_id
    return f"{source_id}#{partition}"
