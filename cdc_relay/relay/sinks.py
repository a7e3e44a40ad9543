"""Analytical sink interface and in-memory sinks.

Sinks store rows keyed by the event key plus metadata columns
(``_operation``, ``_source_table``, ``_sequence``, ``_commit_timestamp``).
Every write is a full replace-by-key, so applying an event twice leaves the
same state as applying it once.
"""

import threading
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from cdc_relay.common.exceptions import SchemaConflict
from cdc_relay.common.utils import key_token
from cdc_relay.observability.logging_config import get_logger
from cdc_relay.relay.events import ChangeEvent, Operation

logger = get_logger(__name__)

METADATA_COLUMNS = ("_operation", "_source_table", "_sequence", "_commit_timestamp")
DELETED_COLUMN = "_deleted"

TYPE_MAP: Dict[str, Tuple[type, ...]] = {
    "int": (int,),
    "integer": (int,),
    "bigint": (int,),
    "smallint": (int,),
    "float": (int, float, Decimal),
    "double precision": (int, float, Decimal),
    "numeric": (int, float, Decimal, str),
    "str": (str,),
    "text": (str,),
    "varchar": (str,),
    "character varying": (str,),
    "bool": (bool,),
    "boolean": (bool,),
    "timestamp": (str, datetime, int),
    "timestamptz": (str, datetime, int),
    "date": (str, date, int),
    "json": (dict, list, str),
    "jsonb": (dict, list, str),
}


def infer_type(value: Any) -> str:
    """Column type name for a Python value."""
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "bigint"
    if isinstance(value, (float, Decimal)):
        return "double precision"
    if isinstance(value, (dict, list)):
        return "jsonb"
    return "text"


class SinkSchema:
    """Declared sink columns with append-friendly drift handling."""

    def __init__(
        self,
        columns: Optional[Mapping[str, str]] = None,
        accept_new_columns: bool = True,
    ) -> None:
        """
        Initialize sink schema.

        Args:
            columns: Column name -> type name (see TYPE_MAP); empty means the
                schema is learned from the first rows
            accept_new_columns: Add unknown columns instead of rejecting them
        """
        self.columns: Dict[str, str] = dict(columns or {})
        self.accept_new_columns = accept_new_columns
        self._lock = threading.Lock()

    def validate(self, row: Mapping[str, Any]) -> Dict[str, str]:
        """
        Validate a whole row without changing the schema.

        Args:
            row: After image

        Returns:
            Column name -> inferred type for columns the row would add

        Raises:
            SchemaConflict: On a type mismatch, or an unknown column when new
                columns are not accepted
        """
        with self._lock:
            return self._validate(row)

    def extend(self, columns: Mapping[str, str]) -> None:
        """Add validated columns."""
        with self._lock:
            for column, type_name in columns.items():
                self.columns.setdefault(column, type_name)

    def check(self, row: Mapping[str, Any]) -> List[str]:
        """
        Validate a row and add its new columns when the whole row passes.

        Args:
            row: After image

        Returns:
            Names of columns added by this call

        Raises:
            SchemaConflict: On a type mismatch, or an unknown column when new
                columns are not accepted
        """
        with self._lock:
            added = self._validate(row)
            self.columns.update(added)
        if added:
            logger.info(f"Sink schema extended with columns {list(added)}")
        return list(added)

    def _validate(self, row: Mapping[str, Any]) -> Dict[str, str]:
        added: Dict[str, str] = {}
        for column, value in row.items():
            declared = self.columns.get(column)
            if declared is None:
                if not self.accept_new_columns:
                    raise SchemaConflict(
                        f"Unknown column {column!r}", column, "absent", infer_type(value)
                    )
                if value is not None:
                    added[column] = infer_type(value)
                continue
            if value is None:
                continue
            allowed = TYPE_MAP.get(declared.lower())
            if allowed is None:
                continue
            # bool is an int subclass; keep them apart
            if isinstance(value, bool) and bool not in allowed:
                ok = False
            else:
                ok = isinstance(value, allowed)
            if not ok:
                raise SchemaConflict(
                    f"Column {column!r} expects {declared}, got {type(value).__name__}",
                    column,
                    declared,
                    type(value).__name__,
                )
        return added


def event_row(event: ChangeEvent, deleted: bool = False) -> Dict[str, Any]:
    """Full sink row for an event: image (or key for deletes) plus metadata."""
    row: Dict[str, Any] = dict(event.after_image) if event.after_image is not None else {}
    row.update(event.key)
    row["_operation"] = event.operation.value
    row["_source_table"] = event.source_table or event.source_id
    row["_sequence"] = event.sequence
    row["_commit_timestamp"] = (
        event.commit_timestamp.isoformat() if event.commit_timestamp else None
    )
    if deleted:
        row[DELETED_COLUMN] = True
    return row


class Sink:
    """Interface implemented by sinks.

    ``upsert`` and ``delete`` must be durable when they return. A sink that
    can report the applied sequence per key sets ``tracks_key_sequences``.
    """

    tracks_key_sequences = True

    def applied_sequence(self, event: ChangeEvent) -> Optional[int]:
        """Highest sequence already applied for the event's key, if known."""
        raise NotImplementedError

    def upsert(self, event: ChangeEvent) -> None:
        raise NotImplementedError

    def delete(self, event: ChangeEvent) -> None:
        raise NotImplementedError

    def apply(self, event: ChangeEvent) -> None:
        """
        Apply an event by operation.

        Raises:
            SinkUnavailable: Transient failure
            SinkWriteError: Permanent failure
        """
        if event.operation == Operation.DELETE:
            self.delete(event)
        else:
            self.upsert(event)

    def truncate(self) -> None:
        """Remove all rows (used by resnapshot)."""
        raise NotImplementedError

    def close(self) -> None:
        pass


class InMemorySink(Sink):
    """Replace-by-key sink with hard deletes.

    Deleted keys keep their delete sequence so a late redelivery of an older
    CREATE or UPDATE cannot resurrect the row.
    """

    def __init__(self, schema: Optional[SinkSchema] = None) -> None:
        self.schema = schema or SinkSchema()
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._sequences: Dict[str, int] = {}
        self._lock = threading.Lock()

    def applied_sequence(self, event: ChangeEvent) -> Optional[int]:
        with self._lock:
            return self._sequences.get(event.key_token)

    def upsert(self, event: ChangeEvent) -> None:
        self.schema.check(event.after_image or {})
        with self._lock:
            self._rows[event.key_token] = event_row(event)
            self._sequences[event.key_token] = event.sequence

    def delete(self, event: ChangeEvent) -> None:
        with self._lock:
            self._rows.pop(event.key_token, None)
            self._sequences[event.key_token] = event.sequence

    def truncate(self) -> None:
        with self._lock:
            self._rows.clear()
            self._sequences.clear()

    def get(self, key: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._rows.get(key_token(dict(key)))
            return dict(row) if row is not None else None

    def state(self, include_metadata: bool = False) -> Dict[str, Dict[str, Any]]:
        """Visible rows by key token."""
        with self._lock:
            return {
                token: _strip_metadata(row, include_metadata)
                for token, row in self._rows.items()
            }


class AppendOnlySink(Sink):
    """Insert-only sink for immutable analytical storage.

    Every event appends a row; a delete appends a marker row with
    ``_deleted=True``. Readers take the highest ``_sequence`` row per key and
    hide it when it is a marker (the ReplacingMergeTree pattern).
    """

    def __init__(self, schema: Optional[SinkSchema] = None) -> None:
        self.schema = schema or SinkSchema()
        self._rows: List[Dict[str, Any]] = []
        self._latest: Dict[str, Tuple[int, int]] = {}
        self._lock = threading.Lock()

    def applied_sequence(self, event: ChangeEvent) -> Optional[int]:
        with self._lock:
            latest = self._latest.get(event.key_token)
            return latest[0] if latest else None

    def upsert(self, event: ChangeEvent) -> None:
        self.schema.check(event.after_image or {})
        self._append(event, event_row(event, deleted=False))

    def delete(self, event: ChangeEvent) -> None:
        self._append(event, event_row(event, deleted=True))

    def _append(self, event: ChangeEvent, row: Dict[str, Any]) -> None:
        row.setdefault(DELETED_COLUMN, False)
        with self._lock:
            self._rows.append(row)
            latest = self._latest.get(event.key_token)
            if latest is None or event.sequence >= latest[0]:
                self._latest[event.key_token] = (event.sequence, len(self._rows) - 1)

    def truncate(self) -> None:
        with self._lock:
            self._rows.clear()
            self._latest.clear()

    @property
    def raw_rows(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._rows]

    def state(self, include_metadata: bool = False) -> Dict[str, Dict[str, Any]]:
        """Visible rows by key token: highest sequence wins, markers hide the key."""
        with self._lock:
            visible = {}
            for token, (_, index) in self._latest.items():
                row = self._rows[index]
                if row.get(DELETED_COLUMN):
                    continue
                visible[token] = _strip_metadata(row, include_metadata)
            return visible


def _strip_metadata(row: Dict[str, Any], include_metadata: bool) -> Dict[str, Any]:
    if include_metadata:
        return dict(row)
    return {
        k: v for k, v in row.items() if k not in METADATA_COLUMNS and k != DELETED_COLUMN
    }
