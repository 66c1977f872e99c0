"""Pytest configuration and shared fixtures."""

import gc
import sqlite3
from collections.abc import Callable, Iterable
from pathlib import Path

import pytest

from sqlsync.domain.entities import ColumnInfo, SchemaSnapshot
from tests.helpers.fake_index import FakeSearchIndex, RecordingSleep

# ============================================================================
# Source Database Helpers
# ============================================================================


def create_source_db(
    path: Path,
    schema: str,
    rows: dict[str, Iterable[tuple]] | None = None,
) -> Path:
    """Create a SQLite source database.

    Args:
        path: Database file to create.
        schema: SQL script creating the tables.
        rows: Optional mapping of table name to row tuples to insert.

    Returns:
        Path to the database file.
    """
    conn = sqlite3.connect(path)
    try:
        conn.executescript(schema)
        for table, table_rows in (rows or {}).items():
            table_rows = list(table_rows)
            if not table_rows:
                continue
            placeholders = ", ".join("?" for _ in table_rows[0])
            conn.executemany(f"INSERT INTO {table} VALUES ({placeholders})", table_rows)
        conn.commit()
    finally:
        conn.close()
    return path


def execute_sql(path: Path, sql: str, params: tuple = ()) -> None:
    """Run one statement against a source database and commit."""
    conn = sqlite3.connect(path)
    try:
        conn.execute(sql, params)
        conn.commit()
    finally:
        conn.close()


@pytest.fixture(autouse=True)
def cleanup_database_connections():
    """Automatically clean up database connections after each test.

    Runs gc.collect() twice so finalizers of unclosed SQLite connections run
    and do not emit ResourceWarning in later tests.
    """
    yield
    gc.collect()
    gc.collect()


@pytest.fixture
def users_db(tmp_path: Path) -> Path:
    """Source database with a small users table.

    Returns:
        Path to a database with users(id INTEGER PRIMARY KEY, name, email).
    """
    return create_source_db(
        tmp_path / "source.db",
        """
        CREATE TABLE users (
            id INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            email TEXT
        );
        """,
        {
            "users": [
                (1, "Ada", "ada@example.com"),
                (2, "Grace", "grace@example.com"),
                (3, "Linus", None),
            ]
        },
    )


@pytest.fixture
def snapshot_factory() -> Callable[..., SchemaSnapshot]:
    """Factory fixture for schema snapshots.

    Example:
        snapshot = snapshot_factory(
            columns=[("id", "INTEGER"), ("name", "TEXT")], primary_key=("id",)
        )
    """

    def _create(
        table: str = "users",
        columns: Iterable[tuple[str, str]] = (("id", "INTEGER"), ("name", "TEXT")),
        primary_key: tuple[str, ...] = ("id",),
    ) -> SchemaSnapshot:
        return SchemaSnapshot(
            table=table,
            columns=tuple(ColumnInfo(name, declared) for name, declared in columns),
            primary_key=primary_key,
        )

    return _create


@pytest.fixture
def fake_index() -> FakeSearchIndex:
    """In-memory SearchIndex that records every call."""
    return FakeSearchIndex()


@pytest.fixture
def no_sleep() -> RecordingSleep:
    """Sleep replacement that records requested delays and returns at once."""
    return RecordingSleep()
