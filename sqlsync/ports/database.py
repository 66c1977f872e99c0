"""Database port interface for reading tables to synchronize.

Defines abstract interface for schema and row access.
Implementations should be in adapters/ layer.
"""

from collections.abc import Sequence
from typing import Any, Protocol

from sqlsync.domain.entities import SchemaSnapshot


class DatabaseAdapter(Protocol):
    """Protocol for database access used by the sync engine.

    Implementations share a bounded connection pool across all table loops;
    each call acquires a connection and releases it before returning.
    """

    def get_all_tables(self) -> list[str]:
        """List user tables in the database.

        Returns:
            Table names, excluding internal tables.

        Raises:
            DatabaseConnectionError: If the database cannot be reached.
        """
        ...

    def get_schema(self, table: str) -> SchemaSnapshot:
        """Read the current column set and primary key of a table.

        Args:
            table: Table name.

        Returns:
            Fresh SchemaSnapshot for the table.

        Raises:
            DatabaseConnectionError: Transient failure (locked, busy).
            QueryError: Permanent failure (e.g., table dropped).
        """
        ...

    def get_rows(self, table: str) -> Sequence[dict[str, Any]]:
        """Read all current rows of a table.

        Args:
            table: Table name.

        Returns:
            Rows as column name to value mappings.

        Raises:
            DatabaseConnectionError: Transient failure (locked, busy).
            QueryError: Permanent failure (e.g., table dropped).
        """
        ...

    def close(self) -> None:
        """Release all pooled connections."""
        ...
