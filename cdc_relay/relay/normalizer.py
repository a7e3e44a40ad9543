"""Normalization of raw change log entries into change events."""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from cdc_relay.common.exceptions import MalformedEntry
from cdc_relay.common.utils import lsn_to_int, parse_cdc_timestamp
from cdc_relay.observability.logging_config import get_logger
from cdc_relay.relay.events import ChangeEvent, Operation, RawEntry

logger = get_logger(__name__)

# Debezium (c/u/d/r) and wal2json (I/U/D) operation codes
OPERATION_MAP: Dict[str, Operation] = {
    "c": Operation.CREATE,
    "r": Operation.CREATE,  # snapshot read
    "u": Operation.UPDATE,
    "d": Operation.DELETE,
    "I": Operation.CREATE,
    "U": Operation.UPDATE,
    "D": Operation.DELETE,
    "insert": Operation.CREATE,
    "update": Operation.UPDATE,
    "delete": Operation.DELETE,
}

# Fields added by Debezium's ExtractNewRecordState transform
UNWRAP_FIELDS = ("__deleted", "__op", "__lsn", "__source_ts_ms", "__table", "__db")


class ChangeNormalizer:
    """Turns source-specific raw entries into canonical change events.

    The normalizer never drops a delete: a DELETE with no known prior row
    state still yields a tombstone event carrying the key. Columns unknown to
    the declared schema are kept in the after image and listed in
    ``extra_columns``; accepting or rejecting them is the sink's decision.
    """

    def __init__(
        self,
        key_columns: Optional[Mapping[str, Sequence[str]]] = None,
        schemas: Optional[Mapping[str, Mapping[str, str]]] = None,
    ) -> None:
        """
        Initialize change normalizer.

        Args:
            key_columns: Primary-key column names per source id, used when a
                raw entry has no explicit key
            schemas: Declared column name -> type name per source id
        """
        self.key_columns = {k: list(v) for k, v in (key_columns or {}).items()}
        self.schemas = {k: dict(v) for k, v in (schemas or {}).items()}

    def normalize(self, raw: RawEntry) -> ChangeEvent:
        """
        Normalize one raw entry.

        Args:
            raw: Decoded source log entry

        Returns:
            Change event

        Raises:
            MalformedEntry: If the entry cannot be mapped to a change event
        """
        operation = OPERATION_MAP.get(raw.op)
        if operation is None:
            raise MalformedEntry(
                f"Unsupported operation code {raw.op!r}",
                source_id=raw.source_id,
                sequence=raw.sequence,
            )

        if not isinstance(raw.sequence, int) or isinstance(raw.sequence, bool) or raw.sequence < 0:
            raise MalformedEntry(
                f"Invalid sequence {raw.sequence!r}", source_id=raw.source_id
            )

        after = dict(raw.after) if raw.after is not None else None

        # Rewrite delete mode carries deletes as an update with __deleted=true
        if after is not None and _is_rewritten_delete(after):
            operation = Operation.DELETE

        if after is not None:
            for unwrap_field in UNWRAP_FIELDS:
                after.pop(unwrap_field, None)

        key = self._resolve_key(raw, after)

        if operation == Operation.DELETE:
            after_image = None
        else:
            if after is None:
                raise MalformedEntry(
                    f"{operation.value} entry has no row image",
                    source_id=raw.source_id,
                    sequence=raw.sequence,
                )
            after_image = after

        event = ChangeEvent(
            source_id=raw.source_id,
            key=key,
            operation=operation,
            sequence=raw.sequence,
            commit_timestamp=parse_cdc_timestamp(raw.commit_timestamp),
            after_image=after_image,
            source_table=raw.metadata.get("table") or raw.source_id,
            extra_columns=self._extra_columns(raw.source_id, after_image),
        )

        logger.debug(
            f"Normalized {operation.value} for {raw.source_id} key={event.key_token}",
            extra={"source_id": raw.source_id, "sequence": raw.sequence},
        )
        return event

    def normalize_batch(self, entries: Iterable[RawEntry]) -> List[ChangeEvent]:
        """
        Normalize a batch of raw entries, stopping at the first malformed one.

        Args:
            entries: Raw entries in log order

        Returns:
            List of change events
        """
        return [self.normalize(entry) for entry in entries]

    def _resolve_key(
        self, raw: RawEntry, after: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        if raw.key:
            key = dict(raw.key)
        else:
            columns = self.key_columns.get(raw.source_id)
            image = after if after is not None else raw.before
            if not columns or image is None:
                raise MalformedEntry(
                    "Entry has no key and none can be derived",
                    source_id=raw.source_id,
                    sequence=raw.sequence,
                )
            missing = [c for c in columns if c not in image]
            if missing:
                raise MalformedEntry(
                    f"Row image lacks key columns {missing}",
                    source_id=raw.source_id,
                    sequence=raw.sequence,
                )
            key = {c: image[c] for c in columns}

        if any(value is None for value in key.values()):
            raise MalformedEntry(
                f"Null primary-key value in {key}",
                source_id=raw.source_id,
                sequence=raw.sequence,
            )
        return key

    def _extra_columns(
        self, source_id: str, after_image: Optional[Mapping[str, Any]]
    ) -> tuple:
        schema = self.schemas.get(source_id)
        if not schema or not after_image:
            return ()
        extra = tuple(sorted(c for c in after_image if c not in schema))
        if extra:
            logger.info(
                f"Columns {list(extra)} not in declared schema of {source_id}; preserved",
                extra={"source_id": source_id},
            )
        return extra


def _is_rewritten_delete(row: Mapping[str, Any]) -> bool:
    flag = row.get("__deleted")
    return flag is True or (isinstance(flag, str) and flag.lower() == "true")


def raw_entry_from_debezium(
    message: Dict[str, Any],
    key: Optional[Dict[str, Any]] = None,
    source_id: Optional[str] = None,
) -> RawEntry:
    """
    Build a raw entry from a Debezium message.

    Accepts a full envelope (optionally wrapped in ``payload``) or a record
    flattened by the ExtractNewRecordState transform.

    Args:
        message: Debezium message value
        key: Debezium message key, when available
        source_id: Override for the source id (default ``db.schema.table``)

    Returns:
        Raw entry

    Raises:
        MalformedEntry: If the message has no usable operation or position
    """
    if not message:
        raise MalformedEntry("Empty Debezium message", source_id=source_id)

    payload = message.get("payload") or message
    if key is not None and "payload" in key:
        key = key["payload"]

    if "op" in payload and ("after" in payload or "before" in payload):
        source = payload.get("source") or {}
        op = payload["op"]
        before = payload.get("before")
        after = payload.get("after")
        lsn = source.get("lsn")
        ts = source.get("ts_ms", payload.get("ts_ms"))
        table = source.get("table")
        resolved_source = source_id or _source_id(source.get("db"), source.get("schema"), table)
        metadata = {
            "database": source.get("db"),
            "schema": source.get("schema"),
            "table": table,
            "connector": source.get("connector"),
            "txId": source.get("txId"),
        }
    else:
        # Unwrapped record: row columns plus __ metadata fields
        op = payload.get("__op") or "u"
        before = None
        after = dict(payload)
        lsn = payload.get("__lsn")
        ts = payload.get("__source_ts_ms")
        table = payload.get("__table")
        resolved_source = source_id or _source_id(payload.get("__db"), None, table)
        metadata = {"table": table}
        if _is_rewritten_delete(after):
            op = "d"

    if op == "t":
        raise MalformedEntry("Truncate events are not row changes", source_id=resolved_source)

    if lsn is None:
        raise MalformedEntry("Debezium message has no source LSN", source_id=resolved_source)

    try:
        sequence = lsn_to_int(lsn)
    except ValueError as e:
        raise MalformedEntry(str(e), source_id=resolved_source) from e

    return RawEntry(
        source_id=resolved_source,
        sequence=sequence,
        op=op,
        key=key,
        before=before,
        after=after,
        commit_timestamp=ts,
        metadata={k: v for k, v in metadata.items() if v is not None},
    )


def _source_id(db: Optional[str], schema: Optional[str], table: Optional[str]) -> str:
    parts = [p for p in (db, schema, table) if p]
    if not parts:
        return "unknown"
    return ".".join(parts)
