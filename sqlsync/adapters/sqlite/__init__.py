"""SQLite adapters for the source database and sync state storage."""

from .base_repository import SQLiteBaseRepository
from .connection_pool import SQLiteConnectionPool, resolve_database_path
from .database_adapter import SQLiteDatabaseAdapter
from .schema import check_schema_version, init_state_database
from .state_repository import SQLiteStateRepository

__all__ = [
    "SQLiteBaseRepository",
    "SQLiteConnectionPool",
    "SQLiteDatabaseAdapter",
    "SQLiteStateRepository",
    "check_schema_version",
    "init_state_database",
    "resolve_database_path",
]
