"""Base class for SQLite repository adapters.

Provides lazy connection setup, thread safety, and the context manager
protocol for adapters that keep a single long-lived SQLite connection.
"""

import sqlite3
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Self


class SQLiteBaseRepository:
    """Base class providing SQLite connection management.

    Thread Safety:
        The connection is created lazily with double-checked locking and
        allows cross-thread access via check_same_thread=False. Subclasses
        hold ``_write_lock`` around multi-statement transactions, since
        several table loops share one repository.

    Example:
        class MyRepository(SQLiteBaseRepository):
            def count(self) -> int:
                conn = self._get_connection()
                return conn.execute("SELECT COUNT(*) FROM my_table").fetchone()[0]
    """

    def __init__(
        self,
        db_path: Path,
        *,
        connection_setup: Callable[[sqlite3.Connection], None] | None = None,
    ) -> None:
        """Initialize the repository.

        Args:
            db_path: Path to SQLite database file.
            connection_setup: Optional callback run once on the new connection.
        """
        self.db_path = db_path
        self._connection_setup = connection_setup
        self._conn: sqlite3.Connection | None = None
        self._conn_lock = threading.Lock()
        self._write_lock = threading.RLock()

    def _get_connection(self) -> sqlite3.Connection:
        """Get the database connection, creating it if needed.

        Returns:
            SQLite connection object.
        """
        if self._conn is None:
            with self._conn_lock:
                # Double-check pattern: re-check after acquiring lock
                if self._conn is None:
                    conn = sqlite3.connect(self.db_path, check_same_thread=False)
                    if self._connection_setup is not None:
                        self._connection_setup(conn)
                    self._conn = conn
        return self._conn

    def close(self) -> None:
        """Close the database connection if open.

        Safe to call multiple times.
        """
        with self._conn_lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> Self:
        """Enter context manager."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> bool:
        """Exit context manager, closing the database connection."""
        self.close()
        return False
