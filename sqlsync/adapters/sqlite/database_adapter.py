"""SQLite implementation of the DatabaseAdapter port."""

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlsync.adapters.sqlite.connection_pool import SQLiteConnectionPool
from sqlsync.domain.entities import ColumnInfo, SchemaSnapshot
from sqlsync.domain.exceptions import DatabaseConnectionError, QueryError

logger = logging.getLogger(__name__)

# OperationalError messages that usually clear up on their own
_TRANSIENT_MARKERS = ("locked", "busy", "unable to open", "disk i/o")


def quote_identifier(name: str) -> str:
    """Quote a table or column name for use in SQL."""
    return '"' + name.replace('"', '""') + '"'


class SQLiteDatabaseAdapter:
    """Reads schemas and rows from a SQLite database through a shared pool."""

    def __init__(self, pool: SQLiteConnectionPool) -> None:
        self.pool = pool

    @contextmanager
    def _query(self, table: str | None = None) -> Iterator[sqlite3.Connection]:
        """Borrow a connection and translate driver errors to domain errors."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except sqlite3.OperationalError as e:
            message = str(e)
            if any(marker in message.lower() for marker in _TRANSIENT_MARKERS):
                raise DatabaseConnectionError(f"Database unavailable: {message}") from e
            target = f" on table '{table}'" if table else ""
            raise QueryError(f"Query failed{target}: {message}") from e
        except sqlite3.DatabaseError as e:
            raise QueryError(f"Database error: {e}") from e

    def get_all_tables(self) -> list[str]:
        """List user tables, excluding SQLite internal tables."""
        with self._query() as conn:
            rows = conn.execute(
                "SELECT name FROM sqlite_master "
                "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
            ).fetchall()
        return [row[0] for row in rows]

    def get_schema(self, table: str) -> SchemaSnapshot:
        """Read columns and primary key via PRAGMA table_info.

        Raises:
            QueryError: If the table does not exist.
            DatabaseConnectionError: If the database is locked or unreachable.
        """
        with self._query(table) as conn:
            rows = conn.execute(f"PRAGMA table_info({quote_identifier(table)})").fetchall()
        if not rows:
            raise QueryError(
                f"Table '{table}' not found",
                hint="Check the table name in the config or whether it was dropped",
            )

        columns = []
        key_positions: list[tuple[int, str]] = []
        # PRAGMA table_info: cid, name, type, notnull, dflt_value, pk
        for row in rows:
            columns.append(
                ColumnInfo(name=row[1], declared_type=row[2] or "", nullable=not row[3])
            )
            if row[5]:
                key_positions.append((row[5], row[1]))

        primary_key = tuple(name for _, name in sorted(key_positions))
        return SchemaSnapshot(table=table, columns=tuple(columns), primary_key=primary_key)

    def get_rows(self, table: str) -> list[dict[str, Any]]:
        """Read every row of a table as a column-name mapping."""
        with self._query(table) as conn:
            cursor = conn.execute(f"SELECT * FROM {quote_identifier(table)}")
            names = [description[0] for description in cursor.description]
            rows = [dict(zip(names, row, strict=True)) for row in cursor]
        logger.debug("Fetched %d row(s) from '%s'", len(rows), table)
        return rows

    def close(self) -> None:
        self.pool.close()
