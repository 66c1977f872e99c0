"""Bounded SQLite connection pool shared by all table loops.

Connections are opened read-only on demand, up to the pool size, and handed
out for the duration of one query. Callers never hold a connection across
cycle phases.
"""

import logging
import queue
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlsync.domain.exceptions import ConfigError, DatabaseConnectionError

logger = logging.getLogger(__name__)

MEMORY_DATABASE = ":memory:"


def resolve_database_path(connection_string: str) -> str:
    """Turn a configured connection string into a database path.

    Accepts a plain path, ``sqlite:path``, ``sqlite://path`` and the
    ``//abs/path`` double-slash form (an absolute path).

    Args:
        connection_string: Value of ``database.connection_string``.

    Returns:
        Filesystem path, or ":memory:" for an in-memory database.

    Raises:
        ConfigError: If the connection string is empty.
    """
    value = connection_string.strip()
    if value.startswith("sqlite://"):
        value = value[len("sqlite://") :]
    elif value.startswith("sqlite:"):
        value = value[len("sqlite:") :]

    if value in (MEMORY_DATABASE, ":memory", "memory"):
        return MEMORY_DATABASE
    if value.startswith("//"):
        value = "/" + value.lstrip("/")
    if not value:
        raise ConfigError(
            "Database connection string is empty",
            hint="Set database.connection_string to the path of the SQLite file",
        )
    return str(Path(value).expanduser())


def decode_text(data: bytes) -> str | bytes:
    """Decode a TEXT value, keeping the raw bytes when it is not valid UTF-8.

    Raw bytes are base64-encoded in documents, the same as BLOBs.
    """
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data


class SQLiteConnectionPool:
    """Bounded pool of SQLite connections.

    Args:
        database: Database path or ":memory:".
        size: Maximum number of open connections.
        timeout: Seconds to wait for a free connection.
        read_only: Open file databases with mode=ro.
    """

    def __init__(
        self,
        database: str,
        size: int = 5,
        timeout: float = 30.0,
        read_only: bool = True,
    ) -> None:
        if size <= 0:
            raise ValueError(f"pool size must be positive, got {size}")
        self.database = database
        self.size = size
        self.timeout = timeout
        self.read_only = read_only
        self._idle: queue.LifoQueue[sqlite3.Connection] = queue.LifoQueue()
        self._slots = threading.BoundedSemaphore(size)
        self._lock = threading.Lock()
        self._open: list[sqlite3.Connection] = []
        self._closed = False

    def _target(self) -> tuple[str, bool]:
        if self.database == MEMORY_DATABASE:
            # Named shared-cache database so every pooled connection sees it
            return f"file:sqlsync-{id(self)}?mode=memory&cache=shared", True
        if self.read_only:
            return f"{Path(self.database).resolve().as_uri()}?mode=ro", True
        return self.database, False

    def _connect(self) -> sqlite3.Connection:
        target, uri = self._target()
        try:
            conn = sqlite3.connect(
                target, uri=uri, timeout=self.timeout, check_same_thread=False
            )
        except sqlite3.Error as e:
            raise DatabaseConnectionError(
                f"Unable to open database {self.database}: {e}",
                hint="Check that database.connection_string points to an existing file",
            ) from e
        conn.row_factory = sqlite3.Row
        conn.text_factory = decode_text
        with self._lock:
            self._open.append(conn)
        logger.debug("Opened connection %d/%d to %s", len(self._open), self.size, self.database)
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Borrow a connection for the duration of a with-block.

        Raises:
            DatabaseConnectionError: If the pool is closed, no connection frees
                up within the timeout, or a new connection cannot be opened.
        """
        if self._closed:
            raise DatabaseConnectionError("Connection pool is closed")
        if not self._slots.acquire(timeout=self.timeout):
            raise DatabaseConnectionError(
                f"Timed out after {self.timeout}s waiting for a database connection"
            )
        try:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                conn = self._connect()
            try:
                yield conn
            finally:
                self._idle.put(conn)
        finally:
            self._slots.release()

    def close(self) -> None:
        """Close every connection the pool opened. Safe to call twice."""
        self._closed = True
        with self._lock:
            connections, self._open = self._open, []
        for conn in connections:
            conn.close()
        while True:
            try:
                self._idle.get_nowait()
            except queue.Empty:
                break
