"""Database backend implementation for the governance engine.

This module provides connection management, query execution and nested
transaction handling over SQLite. Reads are never cached: every query
observes committed state, which the compare-and-swap transitions rely on.
"""

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from ..errors.exceptions import StorageError

Params = Optional[Union[Dict[str, Any], Sequence[Any]]]


class DatabaseError(StorageError):
    """Base exception for database operations."""


class DatabaseConnectionError(DatabaseError):
    """Database connection error."""


class QueryError(DatabaseError):
    """Database query error."""


class IntegrityViolation(QueryError):
    """A uniqueness or foreign-key constraint rejected a write."""


@dataclass
class DatabaseConfig:
    """Database configuration."""

    database_path: str = ":memory:"
    connection_timeout: float = 30.0
    synchronous: str = "NORMAL"  # OFF, NORMAL, FULL
    journal_mode: str = "WAL"  # DELETE, TRUNCATE, MEMORY, WAL
    slow_query_threshold: float = 1.0  # seconds


@dataclass
class QueryResult:
    """Database query result."""

    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    rows_affected: int = 0
    execution_time: float = 0.0

    def first(self) -> Optional[Dict[str, Any]]:
        return self.rows[0] if self.rows else None


@dataclass
class DatabaseStats:
    """Database statistics."""

    total_queries: int = 0
    slow_queries: int = 0
    transactions_committed: int = 0
    transactions_rolled_back: int = 0
    total_execution_time: float = 0.0


class SQLiteBackend:
    """SQLite database backend.

    One connection is shared across threads and guarded by an ``RLock``; a
    thread holds the lock for the whole of an outer transaction, so nested
    ``transaction()`` blocks become savepoints.
    """

    def __init__(self, config: DatabaseConfig, schema: Sequence[str] = ()):
        self.config = config
        self._schema = list(schema)
        self._connection: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._depth = 0
        self._stats = DatabaseStats()
        self._logger = logging.getLogger(__name__)

        if config.database_path != ":memory:":
            Path(config.database_path).parent.mkdir(parents=True, exist_ok=True)

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    def connect(self) -> None:
        """Establish SQLite database connection."""
        with self._lock:
            if self._connection is not None:
                return

            try:
                self._connection = sqlite3.connect(
                    self.config.database_path,
                    timeout=self.config.connection_timeout,
                    isolation_level=None,  # transactions are managed explicitly
                    check_same_thread=False,
                )
                self._configure_sqlite()
                self._create_tables()
            except sqlite3.Error as e:
                self._connection = None
                raise DatabaseConnectionError(
                    f"Failed to connect to database: {e}", operation="connect", cause=e
                )

            self._logger.info(f"Connected to SQLite database: {self.config.database_path}")

    def disconnect(self) -> None:
        """Close SQLite database connection."""
        with self._lock:
            if self._connection is None:
                return
            try:
                self._connection.close()
            except sqlite3.Error as e:
                self._logger.error(f"Error closing database connection: {e}")
            finally:
                self._connection = None
            self._logger.info("Disconnected from SQLite database")

    def _configure_sqlite(self) -> None:
        self._connection.execute("PRAGMA foreign_keys = ON")
        self._connection.execute(f"PRAGMA synchronous = {self.config.synchronous}")
        if self.config.database_path != ":memory:":
            self._connection.execute(f"PRAGMA journal_mode = {self.config.journal_mode}")

    def _create_tables(self) -> None:
        for statement in self._schema:
            self._connection.execute(statement)

    def execute_query(self, query: str, params: Params = None) -> QueryResult:
        """Execute a single statement and return its rows as dicts."""
        with self._lock:
            if self._connection is None:
                raise DatabaseConnectionError("Database not connected", operation="query")

            start_time = time.time()
            try:
                cursor = self._connection.execute(query, params or ())
                columns = (
                    [description[0] for description in cursor.description]
                    if cursor.description
                    else []
                )
                rows = [dict(zip(columns, row)) for row in cursor.fetchall()]
            except sqlite3.IntegrityError as e:
                raise IntegrityViolation(
                    f"Constraint violation: {e}", operation="query", cause=e
                )
            except sqlite3.Error as e:
                raise QueryError(f"Query execution failed: {e}", operation="query", cause=e)

            execution_time = time.time() - start_time
            self._stats.total_queries += 1
            self._stats.total_execution_time += execution_time
            if execution_time > self.config.slow_query_threshold:
                self._stats.slow_queries += 1
                self._logger.warning(
                    f"Slow query detected: {execution_time:.3f}s - {query[:100]}..."
                )

            return QueryResult(
                rows=rows,
                row_count=len(rows),
                rows_affected=cursor.rowcount if cursor.rowcount is not None else 0,
                execution_time=execution_time,
            )

    @contextmanager
    def transaction(self) -> Iterator["SQLiteBackend"]:
        """Run a block atomically.

        The outermost block issues ``BEGIN IMMEDIATE``/``COMMIT``; inner blocks
        use savepoints so a caught inner failure only undoes its own writes.
        """
        with self._lock:
            if self._connection is None:
                raise DatabaseConnectionError(
                    "Database not connected", operation="transaction"
                )

            depth = self._depth
            savepoint = f"sp_{depth}"
            try:
                if depth == 0:
                    self._connection.execute("BEGIN IMMEDIATE")
                else:
                    self._connection.execute(f"SAVEPOINT {savepoint}")
            except sqlite3.Error as e:
                raise DatabaseError(
                    f"Failed to begin transaction: {e}", operation="begin", cause=e
                )

            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if depth == 0:
                    self._connection.execute("ROLLBACK")
                    self._stats.transactions_rolled_back += 1
                else:
                    self._connection.execute(f"ROLLBACK TO {savepoint}")
                    self._connection.execute(f"RELEASE {savepoint}")
                raise
            else:
                self._depth -= 1
                if depth == 0:
                    self._connection.execute("COMMIT")
                    self._stats.transactions_committed += 1
                else:
                    self._connection.execute(f"RELEASE {savepoint}")

    def get_stats(self) -> DatabaseStats:
        """Get database statistics."""
        with self._lock:
            return DatabaseStats(
                total_queries=self._stats.total_queries,
                slow_queries=self._stats.slow_queries,
                transactions_committed=self._stats.transactions_committed,
                transactions_rolled_back=self._stats.transactions_rolled_back,
                total_execution_time=self._stats.total_execution_time,
            )

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
