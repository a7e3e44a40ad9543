"""Postgres connection manager."""

import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

import psycopg2
from psycopg2.extras import RealDictCursor

from cdc_relay.observability.logging_config import get_logger

logger = get_logger(__name__)


class PostgresConnectionManager:
    """Manages a PostgreSQL connection with connect retries and transactions."""

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        database: str,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        """
        Initialize Postgres connection manager.

        Args:
            host: Database host
            port: Database port
            user: Database user
            password: Database password
            database: Database name
            max_retries: Maximum connection retry attempts
            retry_delay: Delay between retries in seconds
        """
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.database = database
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._connection: Optional[psycopg2.extensions.connection] = None

    @classmethod
    def from_config(cls, config: Any) -> "PostgresConnectionManager":
        """Build from a SourceDatabaseConfig or SinkDatabaseConfig."""
        return cls(
            host=config.host,
            port=config.port,
            user=config.user,
            password=config.password,
            database=config.db,
        )

    @property
    def dsn_params(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": self.database,
        }

    def get_connection(self) -> psycopg2.extensions.connection:
        """
        Get database connection with retry logic.

        Returns:
            PostgreSQL connection

        Raises:
            psycopg2.OperationalError: If connection fails after all retries
        """
        if self._connection and not self._connection.closed:
            return self._connection

        last_exception: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                logger.info(
                    f"Connecting to Postgres at {self.host}:{self.port}/{self.database} "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                self._connection = psycopg2.connect(
                    cursor_factory=RealDictCursor, **self.dsn_params
                )
                logger.info("Successfully connected to Postgres")
                return self._connection
            except psycopg2.OperationalError as e:
                last_exception = e
                logger.warning(f"Connection attempt {attempt + 1} failed: {e}")
                if attempt < self.max_retries - 1:
                    time.sleep(self.retry_delay)

        logger.error(f"Failed to connect after {self.max_retries} attempts")
        raise last_exception  # type: ignore

    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.closed

    def reset(self) -> None:
        """Drop the current connection so the next call reconnects."""
        if self._connection is not None:
            try:
                self._connection.close()
            except psycopg2.Error as e:
                logger.debug(f"Ignoring error closing broken connection: {e}")
        self._connection = None

    def close(self) -> None:
        """Close database connection."""
        if self._connection and not self._connection.closed:
            self._connection.close()
            logger.info("Closed Postgres connection")

    @contextmanager
    def transaction(self) -> Iterator[Any]:
        """
        Cursor inside a transaction; commits on success, rolls back on error.

        The commit has completed when the block exits, so writes are durable
        on return.
        """
        conn = self.get_connection()
        try:
            with conn.cursor() as cursor:
                yield cursor
            conn.commit()
        except Exception:
            if not conn.closed:
                conn.rollback()
            raise

    def execute_query(
        self, query: Any, params: Optional[Tuple] = None, fetch: bool = True
    ) -> Optional[List[Dict[str, Any]]]:
        """
        Execute SQL query in its own transaction.

        Args:
            query: SQL query to execute
            params: Query parameters
            fetch: Whether to fetch results

        Returns:
            Query results if fetch=True, None otherwise
        """
        with self.transaction() as cursor:
            cursor.execute(query, params)
            if fetch and cursor.description:
                return cursor.fetchall()  # type: ignore
            return None

    def check_logical_replication(self) -> bool:
        """
        Check that the server can serve logical decoding.

        Returns:
            True if wal_level is 'logical'
        """
        result = self.execute_query("SHOW wal_level")
        if result:
            wal_level = result[0].get("wal_level")
            logger.info(f"Current wal_level: {wal_level}")
            return wal_level == "logical"
        return False

    def __enter__(self) -> "PostgresConnectionManager":
        self.get_connection()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

