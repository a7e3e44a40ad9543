"""Postgres sink with sequence-guarded upserts."""

import threading
from typing import Any, Dict, Optional, Sequence

import psycopg2
from psycopg2 import sql
from psycopg2.extras import Json

from cdc_relay.common.exceptions import SchemaConflict, SinkUnavailable, SinkWriteError
from cdc_relay.observability.logging_config import get_logger
from cdc_relay.relay.events import ChangeEvent
from cdc_relay.relay.postgres.connection import PostgresConnectionManager
from cdc_relay.relay.sinks import DELETED_COLUMN, Sink, SinkSchema, event_row, infer_type

logger = get_logger(__name__)

METADATA_DDL = [
    ("_operation", "text"),
    ("_source_table", "text"),
    ("_sequence", "numeric NOT NULL"),
    ("_commit_timestamp", "timestamptz"),
    (DELETED_COLUMN, "boolean NOT NULL DEFAULT false"),
]


class PostgresSink(Sink):
    """Replace-by-key sink on a Postgres table.

    Upserts only win over an older ``_sequence``, so a stale write can never
    overwrite newer state even without the materializer's dedup check.

    ``delete_mode="hard"`` removes the row and records the delete sequence in
    a ``<table>__deletes`` ledger; ``delete_mode="tombstone"`` replaces the row
    with a ``_deleted`` marker row and readers filter on it.
    """

    def __init__(
        self,
        connection: PostgresConnectionManager,
        table: str,
        key_columns: Sequence[str],
        schema: Optional[SinkSchema] = None,
        delete_mode: str = "hard",
        table_schema: str = "public",
    ) -> None:
        """
        Initialize Postgres sink.

        Args:
            connection: Connection manager for the sink database
            table: Destination table name
            key_columns: Primary-key columns
            schema: Column schema (types are Postgres type names)
            delete_mode: ``hard`` or ``tombstone``
            table_schema: Destination schema name
        """
        if delete_mode not in ("hard", "tombstone"):
            raise ValueError(f"delete_mode must be 'hard' or 'tombstone', not {delete_mode!r}")
        if not key_columns:
            raise ValueError("key_columns must not be empty")
        self.connection = connection
        self.table = table
        self.table_schema = table_schema
        self.key_columns = list(key_columns)
        self.schema = schema or SinkSchema()
        self.delete_mode = delete_mode
        self._table_id = sql.Identifier(table_schema, table)
        self._ledger_id = sql.Identifier(table_schema, f"{table}__deletes")
        self._created = False
        # Lanes share one connection; transactions must not interleave
        self._lock = threading.RLock()

    # DDL

    def ensure_table(self, sample: Optional[ChangeEvent] = None) -> None:
        """
        Create the table (and delete ledger) if missing.

        Args:
            sample: Event whose key values type undeclared key columns
        """
        if self._created:
            return
        key_types = {
            c: self.schema.columns.get(c)
            or (infer_type(sample.key[c]) if sample is not None else "text")
            for c in self.key_columns
        }
        column_defs = [
            sql.SQL("{} {}").format(sql.Identifier(c), sql.SQL(key_types[c]))
            for c in self.key_columns
        ]
        column_defs += [
            sql.SQL("{} {}").format(sql.Identifier(c), sql.SQL(t))
            for c, t in self.schema.columns.items()
            if c not in self.key_columns
        ]
        column_defs += [
            sql.SQL("{} {}").format(sql.Identifier(c), sql.SQL(t)) for c, t in METADATA_DDL
        ]
        create = sql.SQL("CREATE TABLE IF NOT EXISTS {} ({}, PRIMARY KEY ({}))").format(
            self._table_id,
            sql.SQL(", ").join(column_defs),
            sql.SQL(", ").join(sql.Identifier(c) for c in self.key_columns),
        )
        ledger = sql.SQL(
            "CREATE TABLE IF NOT EXISTS {} (key_token text PRIMARY KEY, _sequence numeric NOT NULL)"
        ).format(self._ledger_id)
        self._run(lambda cur: (cur.execute(create), cur.execute(ledger)))
        self._created = True
        logger.info(f"Ensured sink table {self.table_schema}.{self.table}")

    def _add_columns(self, cursor: Any, columns: Dict[str, str]) -> None:
        for column, type_name in columns.items():
            cursor.execute(
                sql.SQL("ALTER TABLE {} ADD COLUMN IF NOT EXISTS {} {}").format(
                    self._table_id,
                    sql.Identifier(column),
                    sql.SQL(type_name),
                )
            )
            logger.info(f"Added column {column} to {self.table}")

    # Writes

    def applied_sequence(self, event: ChangeEvent) -> Optional[int]:
        self.ensure_table(event)
        query = sql.SQL(
            "SELECT GREATEST("
            "(SELECT _sequence FROM {} WHERE {}), "
            "(SELECT _sequence FROM {} WHERE key_token = %s)) AS seq"
        ).format(self._table_id, self._key_predicate(), self._ledger_id)
        params = tuple(event.key[c] for c in self.key_columns) + (event.key_token,)

        def select(cur: Any) -> Optional[int]:
            cur.execute(query, params)
            row = cur.fetchone()
            # numeric comes back as Decimal
            return int(row["seq"]) if row and row["seq"] is not None else None

        return self._run(select)

    def upsert(self, event: ChangeEvent) -> None:
        self.ensure_table(event)
        row = event_row(event)
        row[DELETED_COLUMN] = False

        # New columns join the shared schema only after their ALTER committed
        with self._lock:
            added = self.schema.validate(event.after_image or {})

            def write(cur: Any) -> None:
                self._add_columns(cur, added)
                self._upsert_row(cur, row, extra_columns=list(added))

            self._run(write)
            self.schema.extend(added)

    def delete(self, event: ChangeEvent) -> None:
        self.ensure_table(event)
        if self.delete_mode == "tombstone":
            row = event_row(event, deleted=True)
            self._run(lambda cur: self._upsert_row(cur, row))
            return

        delete = sql.SQL("DELETE FROM {} WHERE {} AND _sequence < %s").format(
            self._table_id, self._key_predicate()
        )
        record = sql.SQL(
            "INSERT INTO {} (key_token, _sequence) VALUES (%s, %s) "
            "ON CONFLICT (key_token) DO UPDATE SET _sequence = GREATEST({}._sequence, EXCLUDED._sequence)"
        ).format(self._ledger_id, self._ledger_id)
        key_params = tuple(event.key[c] for c in self.key_columns)

        def write(cur: Any) -> None:
            cur.execute(delete, key_params + (event.sequence,))
            cur.execute(record, (event.key_token, event.sequence))

        self._run(write)

    def _upsert_row(
        self, cursor: Any, row: Dict[str, Any], extra_columns: Sequence[str] = ()
    ) -> None:
        # Full replace-by-key: known columns absent from the image become NULL
        metadata = [name for name, _ in METADATA_DDL]
        columns = list(
            dict.fromkeys(
                self.key_columns + list(self.schema.columns) + list(extra_columns) + metadata
            )
        )
        values = [_adapt(row.get(c)) for c in columns]
        non_key = [c for c in columns if c not in self.key_columns]
        statement = sql.SQL(
            "INSERT INTO {table} ({columns}) VALUES ({values}) "
            "ON CONFLICT ({keys}) DO UPDATE SET {updates} "
            "WHERE {table}._sequence < EXCLUDED._sequence"
        ).format(
            table=self._table_id,
            columns=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            values=sql.SQL(", ").join(sql.Placeholder() for _ in columns),
            keys=sql.SQL(", ").join(sql.Identifier(c) for c in self.key_columns),
            updates=sql.SQL(", ").join(
                sql.SQL("{} = EXCLUDED.{}").format(sql.Identifier(c), sql.Identifier(c))
                for c in non_key
            ),
        )
        cursor.execute(statement, values)

    def truncate(self) -> None:
        def truncate_existing(cur: Any) -> None:
            cur.execute("SELECT to_regclass(%s) AS t", (f"{self.table_schema}.{self.table}",))
            row = cur.fetchone()
            if row and row["t"] is not None:
                cur.execute(sql.SQL("TRUNCATE {}, {}").format(self._table_id, self._ledger_id))

        self._run(truncate_existing)
        logger.info(f"Truncated sink table {self.table_schema}.{self.table}")

    def close(self) -> None:
        self.connection.close()

    # Helpers

    def _key_predicate(self) -> sql.Composable:
        return sql.SQL(" AND ").join(
            sql.SQL("{} = %s").format(sql.Identifier(c)) for c in self.key_columns
        )

    def _run(self, work: Any) -> Any:
        """Run ``work(cursor)`` in one committed transaction, mapping errors."""
        try:
            with self._lock, self.connection.transaction() as cursor:
                return work(cursor)
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            self.connection.reset()
            raise SinkUnavailable(f"Sink {self.table} unavailable: {e}") from e
        except psycopg2.DataError as e:
            raise SchemaConflict(
                f"Sink {self.table} rejected value: {e}", column="?", expected="?", actual="?"
            ) from e
        except psycopg2.Error as e:
            raise SinkWriteError(f"Sink {self.table} write failed: {e}") from e


def _adapt(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return Json(value)
    return value
