"""Postgres logical replication reader (wal2json, format version 2).

Logical decoding hands out whole transactions in commit order, but each
change carries the WAL position where it was written, so positions of
changes from interleaved transactions go backwards. Sequences are therefore
built from the commit position: ``(commit_lsn << TXN_BITS) | slot`` where the
last change of a transaction takes ``COMMIT_MARK`` and earlier changes count
down from it. A sequence ending in ``COMMIT_MARK`` means its whole
transaction is handed off, and only those positions are confirmed to the
server.
"""

import json
import re
import select
import threading
from dataclasses import replace
from typing import Any, Dict, Iterator, List, Optional, Tuple

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2 import sql

from cdc_relay.common.exceptions import RelayError, SequenceGone, SourceUnavailable
from cdc_relay.common.utils import int_to_lsn, lsn_to_int
from cdc_relay.observability.logging_config import get_logger
from cdc_relay.relay.events import RawEntry
from cdc_relay.relay.log_reader import LogReader, ReaderLeases
from cdc_relay.relay.postgres.connection import PostgresConnectionManager

logger = get_logger(__name__)

# Transaction boundaries, logical messages and truncates are not row changes
NON_ROW_ACTIONS = ("B", "C", "M", "T")

PURGED_MARKERS = ("has already been removed", "can no longer get changes")

TXN_BITS = 32
COMMIT_MARK = (1 << TXN_BITS) - 1


def slot_name_for(prefix: str, source_id: str) -> str:
    """Replication slot name for a source (lowercase, [a-z0-9_], max 63 chars)."""
    name = re.sub(r"[^a-z0-9_]", "_", f"{prefix}_{source_id}".lower())
    return name[:63]


def change_sequence(commit_lsn: int, index: int, count: int) -> int:
    """Sequence of the ``index``-th of ``count`` changes committed at ``commit_lsn``."""
    if count > COMMIT_MARK:
        raise ValueError(f"Transaction with {count} changes exceeds {COMMIT_MARK}")
    return (commit_lsn << TXN_BITS) | (COMMIT_MARK - (count - 1 - index))


def commit_sequence(commit_lsn: int) -> int:
    """Sequence covering every change committed at or before ``commit_lsn``."""
    return (commit_lsn << TXN_BITS) | COMMIT_MARK


def split_sequence(sequence: int) -> Tuple[int, bool]:
    """
    Split a sequence into its commit LSN and whether its transaction is complete.

    Returns:
        (commit_lsn, complete)
    """
    return sequence >> TXN_BITS, (sequence & COMMIT_MARK) == COMMIT_MARK


def decode_wal2json(
    source_id: str, sequence: int, payload: Any, lsn: Optional[int] = None
) -> Optional[RawEntry]:
    """
    Decode one wal2json v2 message.

    Args:
        source_id: Source identifier
        sequence: Sequence to give the entry
        payload: JSON text or bytes, or an already parsed message
        lsn: WAL position of the change (defaults to ``sequence``)

    Returns:
        Raw entry, or None for messages that are not row changes
    """
    data = _load(payload)
    action = data.get("action")
    if action in NON_ROW_ACTIONS:
        return None

    columns = {c["name"]: c.get("value") for c in data.get("columns") or []}
    identity = {c["name"]: c.get("value") for c in data.get("identity") or []}
    pk_names = [p["name"] for p in data.get("pk") or []]

    image = columns if action != "D" else identity
    if pk_names:
        key: Optional[Dict[str, Any]] = {name: image.get(name) for name in pk_names}
    else:
        key = identity or None

    return RawEntry(
        source_id=source_id,
        sequence=sequence,
        op=action or "",
        key=key,
        before=identity or None,
        after=columns if action != "D" else None,
        commit_timestamp=data.get("timestamp"),
        metadata={
            "schema": data.get("schema"),
            "table": data.get("table"),
            "lsn": int_to_lsn(sequence if lsn is None else lsn),
        },
    )


def _load(payload: Any) -> Dict[str, Any]:
    if isinstance(payload, dict):
        return payload
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8")
    return json.loads(payload)


class PostgresLogReader(LogReader):
    """Reads a table's changes from a per-source logical replication slot.

    Feedback to the server is only sent through :meth:`acknowledge`, i.e. for
    positions the relay has durably handed off, so the server keeps WAL the
    relay has read but not yet published.
    """

    def __init__(
        self,
        connection: PostgresConnectionManager,
        slot_prefix: str = "cdc_relay",
        output_plugin: str = "wal2json",
        create_slot: bool = True,
        poll_interval: float = 1.0,
        leases: Optional[ReaderLeases] = None,
    ) -> None:
        """
        Initialize Postgres log reader.

        Args:
            connection: Connection manager for the source database
            slot_prefix: Prefix of replication slot names
            output_plugin: Logical decoding plugin
            create_slot: Create the slot when it does not exist and no resume
                position is requested, or when a snapshot is taken
            poll_interval: Seconds to wait for WAL before rechecking for stop
            leases: Shared reader leases
        """
        super().__init__(leases)
        self.connection = connection
        self.slot_prefix = slot_prefix
        self.output_plugin = output_plugin
        self.create_slot = create_slot
        self.poll_interval = poll_interval
        self._cursors: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def _replication_connection(self) -> Any:
        try:
            return psycopg2.connect(
                connection_factory=psycopg2.extras.LogicalReplicationConnection,
                **self.connection.dsn_params,
            )
        except psycopg2.OperationalError as e:
            raise SourceUnavailable(f"Cannot open replication connection: {e}") from e

    def _slot_state(self, slot: str) -> Optional[Dict[str, Any]]:
        rows = self.connection.execute_query(
            "SELECT slot_name, confirmed_flush_lsn::text AS confirmed_flush_lsn "
            "FROM pg_replication_slots WHERE slot_name = %s",
            (slot,),
        )
        return rows[0] if rows else None

    def _prepare_slot(self, cursor: Any, source_id: str, slot: str, resume: Optional[int]) -> None:
        try:
            state = self._slot_state(slot)
        except psycopg2.OperationalError as e:
            raise SourceUnavailable(f"Cannot inspect replication slots: {e}", source_id) from e

        if state is None:
            if resume is not None:
                # Snapshots create the slot, so a stored position implies one existed
                raise SequenceGone(
                    f"Replication slot {slot} no longer exists; cannot resume after "
                    f"{int_to_lsn(split_sequence(resume)[0])}",
                    source_id=source_id,
                    requested=resume,
                )
            if not self.create_slot:
                raise SourceUnavailable(f"Replication slot {slot} does not exist", source_id)
            cursor.create_replication_slot(slot, output_plugin=self.output_plugin)
            logger.info(f"Created replication slot {slot}", extra={"source_id": source_id})
            return

        confirmed = state.get("confirmed_flush_lsn")
        if resume is None or not confirmed:
            return
        commit_lsn, complete = split_sequence(resume)
        # A partly handed-off transaction must still be ahead of the slot
        last_complete = commit_lsn if complete else commit_lsn - 1
        if lsn_to_int(confirmed) > last_complete:
            # The server would silently start at confirmed_flush_lsn
            raise SequenceGone(
                f"Slot {slot} confirmed past {confirmed}; changes after "
                f"{int_to_lsn(last_complete)} are gone",
                source_id=source_id,
                requested=resume,
                oldest_available=commit_sequence(lsn_to_int(confirmed)),
            )

    def _read(
        self, source_id: str, resume_sequence: Optional[int], stop: threading.Event
    ) -> Iterator[RawEntry]:
        slot = slot_name_for(self.slot_prefix, source_id)
        start_lsn = 0
        if resume_sequence is not None:
            commit_lsn, complete = split_sequence(resume_sequence)
            # Mid-transaction resumes restart from the slot's confirmed position
            start_lsn = commit_lsn if complete else 0
        conn = self._replication_connection()
        try:
            cursor = conn.cursor()
            self._prepare_slot(cursor, source_id, slot, resume_sequence)
            cursor.start_replication(
                slot_name=slot,
                decode=True,
                start_lsn=start_lsn,
                options={
                    "format-version": "2",
                    "include-transaction": "1",
                    "include-pk": "1",
                    "include-timestamp": "1",
                    "add-tables": source_id,
                },
            )
            with self._lock:
                self._cursors[source_id] = cursor
            logger.info(
                f"Streaming {source_id} from slot {slot} after "
                f"{int_to_lsn(start_lsn) if start_lsn else 'confirmed position'}",
                extra={"source_id": source_id, "sequence": resume_sequence},
            )

            pending: List[RawEntry] = []
            while not stop.is_set():
                message = cursor.read_message()
                if message is None:
                    select.select([cursor], [], [], self.poll_interval)
                    continue
                data = _load(message.payload)
                action = data.get("action")
                if action == "B":
                    pending = []
                elif action == "C":
                    committed, pending = pending, []
                    yield from _sequenced(committed, message.data_start)
                else:
                    entry = decode_wal2json(source_id, message.data_start, data)
                    if entry is not None:
                        pending.append(entry)
        except psycopg2.Error as e:
            raise self._translate(e, source_id, resume_sequence) from e
        except (OSError, ValueError) as e:
            raise SourceUnavailable(f"Replication stream for {source_id} failed: {e}", source_id) from e
        finally:
            with self._lock:
                self._cursors.pop(source_id, None)
            conn.close()

    def _translate(self, error: Exception, source_id: str, resume: Optional[int]) -> Exception:
        message = str(error)
        if any(marker in message for marker in PURGED_MARKERS):
            return SequenceGone(message, source_id=source_id, requested=resume)
        if isinstance(error, psycopg2.errors.UndefinedObject):
            return SequenceGone(message, source_id=source_id, requested=resume)
        return SourceUnavailable(message, source_id)

    def acknowledge(self, source_id: str, sequence: int) -> None:
        commit_lsn, complete = split_sequence(sequence)
        if not complete:
            return
        with self._lock:
            cursor = self._cursors.get(source_id)
        if cursor is not None:
            cursor.send_feedback(flush_lsn=commit_lsn)

    def discard(self, source_id: str) -> None:
        """Drop the source's replication slot if it exists."""
        slot = slot_name_for(self.slot_prefix, source_id)
        try:
            if self._slot_state(slot) is None:
                return
            self.connection.execute_query(
                "SELECT pg_drop_replication_slot(%s)", (slot,), fetch=False
            )
        except psycopg2.Error as e:
            raise SourceUnavailable(f"Cannot drop replication slot {slot}: {e}", source_id) from e
        logger.info(f"Dropped replication slot {slot}", extra={"source_id": source_id})

    def snapshot(self, source_id: str) -> Tuple[int, List[RawEntry]]:
        """
        Create a fresh slot and read the table in the snapshot it exports.

        The slot's consistent point is the snapshot position: the table is
        read exactly as of that point and streaming from the slot delivers
        every transaction committed after it.
        """
        if not self.create_slot:
            raise RelayError(
                f"Snapshot of {source_id} needs a new replication slot but slot creation is disabled",
                source_id,
            )
        schema, _, table = source_id.rpartition(".")
        slot = slot_name_for(self.slot_prefix, source_id)
        self.discard(source_id)

        replication = self._replication_connection()
        try:
            cursor = replication.cursor()
            cursor.create_replication_slot(slot, output_plugin=self.output_plugin)
            _, consistent_point, snapshot_name, _ = cursor.fetchone()
            logger.info(
                f"Created replication slot {slot} at {consistent_point}",
                extra={"source_id": source_id},
            )
            # The exported snapshot lives until the replication connection is used again
            key_columns, rows = self._read_table(source_id, schema or "public", table, snapshot_name)
        except psycopg2.Error as e:
            raise SourceUnavailable(f"Snapshot of {source_id} failed: {e}", source_id) from e
        finally:
            replication.close()

        position = commit_sequence(lsn_to_int(consistent_point))
        entries = [
            RawEntry(
                source_id=source_id,
                sequence=position,
                op="r",
                key={c: row[c] for c in key_columns} if key_columns else None,
                after=dict(row),
                metadata={"schema": schema, "table": table, "snapshot": True},
            )
            for row in rows
        ]
        return position, entries

    def _read_table(
        self, source_id: str, schema: str, table: str, snapshot_name: str
    ) -> Tuple[List[str], List[Any]]:
        try:
            conn = self.connection.get_connection()
        except psycopg2.OperationalError as e:
            raise SourceUnavailable(f"Cannot connect for snapshot of {source_id}: {e}", source_id) from e
        try:
            conn.set_session(isolation_level="REPEATABLE READ")
            with conn.cursor() as cursor:
                cursor.execute("SET TRANSACTION SNAPSHOT %s", (snapshot_name,))
                cursor.execute(_primary_key_query(), (f"{schema}.{table}",))
                key_columns = [row["attname"] for row in cursor.fetchall()]
                cursor.execute(sql.SQL("SELECT * FROM {}").format(sql.Identifier(schema, table)))
                rows = cursor.fetchall()
            conn.commit()
        except psycopg2.Error:
            if not conn.closed:
                conn.rollback()
            raise
        finally:
            if not conn.closed:
                conn.set_session(isolation_level="READ COMMITTED")
        return key_columns, rows


def _sequenced(entries: List[RawEntry], commit_lsn: int) -> Iterator[RawEntry]:
    count = len(entries)
    for index, entry in enumerate(entries):
        yield replace(
            entry,
            sequence=change_sequence(commit_lsn, index, count),
            metadata={**entry.metadata, "commit_lsn": int_to_lsn(commit_lsn)},
        )


def _primary_key_query() -> str:
    return (
        "SELECT a.attname FROM pg_index i "
        "JOIN pg_attribute a ON a.attrelid = i.indrelid AND a.attnum = ANY(i.indkey) "
        "WHERE i.indrelid = %s::regclass AND i.indisprimary ORDER BY a.attnum"
    )
