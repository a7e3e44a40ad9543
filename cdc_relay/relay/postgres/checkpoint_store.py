"""Checkpoint store backed by a Postgres table."""

import threading
from typing import Any, List, Optional

import psycopg2

from cdc_relay.common.exceptions import SinkUnavailable
from cdc_relay.observability.logging_config import get_logger
from cdc_relay.relay.checkpoint import CheckpointStore
from cdc_relay.relay.events import Checkpoint, checkpoint_id
from cdc_relay.relay.postgres.connection import PostgresConnectionManager

logger = get_logger(__name__)

CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS relay_checkpoints (
    namespace text NOT NULL,
    checkpoint_id text NOT NULL,
    source_id text NOT NULL,
    partition integer,
    sequence numeric NOT NULL,
    transport_offset bigint,
    updated_at timestamptz NOT NULL DEFAULT now(),
    PRIMARY KEY (namespace, checkpoint_id)
)
"""

UPSERT = """
INSERT INTO relay_checkpoints
    (namespace, checkpoint_id, source_id, partition, sequence, transport_offset, updated_at)
VALUES (%s, %s, %s, %s, %s, %s, %s)
ON CONFLICT (namespace, checkpoint_id) DO UPDATE SET
    sequence = EXCLUDED.sequence,
    transport_offset = EXCLUDED.transport_offset,
    updated_at = EXCLUDED.updated_at
"""

SELECT_COLUMNS = "source_id, partition, sequence, transport_offset, updated_at"


class PostgresCheckpointStore(CheckpointStore):
    """Checkpoints as rows of ``relay_checkpoints``, one row per record.

    Keeping checkpoints in the sink database lets a deployment back them up
    together with the materialized tables.
    """

    def __init__(self, connection: PostgresConnectionManager, namespace: str = "lanes") -> None:
        self.connection = connection
        self.namespace = namespace
        self._table_ready = False
        self._lock = threading.Lock()

    def _ensure_table(self) -> None:
        if not self._table_ready:
            self._execute(CREATE_TABLE, fetch=False)
            self._table_ready = True

    def _execute(self, query: str, params: Optional[tuple] = None, fetch: bool = True) -> Any:
        try:
            with self._lock:
                return self.connection.execute_query(query, params, fetch=fetch)
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            self.connection.reset()
            raise SinkUnavailable(f"Checkpoint table unavailable: {e}") from e

    def get(self, source_id: str, partition: Optional[int] = None) -> Optional[Checkpoint]:
        self._ensure_table()
        rows = self._execute(
            f"SELECT {SELECT_COLUMNS} FROM relay_checkpoints "
            "WHERE namespace = %s AND checkpoint_id = %s",
            (self.namespace, checkpoint_id(source_id, partition)),
        )
        return _to_checkpoint(rows[0]) if rows else None

    def put(self, checkpoint: Checkpoint) -> None:
        self._ensure_table()
        self._execute(
            UPSERT,
            (
                self.namespace,
                checkpoint.checkpoint_id,
                checkpoint.source_id,
                checkpoint.partition,
                checkpoint.sequence,
                checkpoint.offset,
                checkpoint.updated_at,
            ),
            fetch=False,
        )

    def delete(self, source_id: str, partition: Optional[int] = None) -> bool:
        self._ensure_table()
        rows = self._execute(
            "DELETE FROM relay_checkpoints WHERE namespace = %s AND checkpoint_id = %s "
            "RETURNING checkpoint_id",
            (self.namespace, checkpoint_id(source_id, partition)),
        )
        return bool(rows)

    def list(self, source_id: Optional[str] = None) -> List[Checkpoint]:
        self._ensure_table()
        if source_id is None:
            rows = self._execute(
                f"SELECT {SELECT_COLUMNS} FROM relay_checkpoints WHERE namespace = %s "
                "ORDER BY source_id, partition NULLS FIRST",
                (self.namespace,),
            )
        else:
            rows = self._execute(
                f"SELECT {SELECT_COLUMNS} FROM relay_checkpoints "
                "WHERE namespace = %s AND source_id = %s ORDER BY partition NULLS FIRST",
                (self.namespace, source_id),
            )
        return [_to_checkpoint(row) for row in rows or []]

    def close(self) -> None:
        self.connection.close()


def _to_checkpoint(row: Any) -> Checkpoint:
    return Checkpoint(
        source_id=row["source_id"],
        sequence=int(row["sequence"]),
        partition=row["partition"],
        offset=row["transport_offset"],
        updated_at=row["updated_at"],
    )
