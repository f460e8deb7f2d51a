"""Storage layer for the governance engine.

This package provides the SQLite backend and the governance schema with its
atomic row operations.
"""

from .database import (
    DatabaseConfig,
    DatabaseConnectionError,
    DatabaseError,
    DatabaseStats,
    IntegrityViolation,
    QueryError,
    QueryResult,
    SQLiteBackend,
)
from .governance_store import SCHEMA, GovernanceStore

__all__ = [
    "DatabaseConfig",
    "DatabaseConnectionError",
    "DatabaseError",
    "DatabaseStats",
    "IntegrityViolation",
    "QueryError",
    "QueryResult",
    "SQLiteBackend",
    "SCHEMA",
    "GovernanceStore",
]
