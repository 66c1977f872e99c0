"""Error classification for sync cycles.

Maps any exception raised inside a cycle to a SyncErrorType so summaries can
tell operators whether the next interval is likely to recover on its own.
"""

import errno
import sqlite3

import httpx

from sqlsync.domain.entities import SyncErrorType
from sqlsync.domain.exceptions import (
    ConfigError,
    DatabaseConnectionError,
    InvalidKeyValue,
    PermanentIndexError,
    QueryError,
    SchemaClassificationError,
    TransientIndexError,
    UnsupportedKeyType,
)

# OSError errnos that usually clear up without operator action
_TRANSIENT_ERRNOS = (
    errno.EAGAIN,
    errno.EBUSY,
    errno.ECONNREFUSED,
    errno.ECONNRESET,
    errno.ETIMEDOUT,
)


def classify_sync_error(exception: Exception) -> SyncErrorType:
    """Classify an exception into a SyncErrorType.

    Args:
        exception: The exception to classify.

    Returns:
        SyncErrorType indicating the category of error.
    """
    # Typed collaborator errors first
    if isinstance(exception, (DatabaseConnectionError, TransientIndexError)):
        return SyncErrorType.TRANSIENT
    if isinstance(
        exception,
        (
            QueryError,
            PermanentIndexError,
            UnsupportedKeyType,
            InvalidKeyValue,
            SchemaClassificationError,
            ConfigError,
        ),
    ):
        return SyncErrorType.PERMANENT

    # Untranslated driver errors
    if isinstance(exception, sqlite3.OperationalError):
        message = str(exception).lower()
        if "locked" in message or "busy" in message or "unable to open" in message:
            return SyncErrorType.TRANSIENT
        return SyncErrorType.PERMANENT
    if isinstance(exception, sqlite3.Error):
        return SyncErrorType.PERMANENT
    if isinstance(exception, (httpx.TimeoutException, httpx.TransportError)):
        return SyncErrorType.TRANSIENT

    if isinstance(exception, PermissionError):
        return SyncErrorType.PERMANENT
    if isinstance(exception, (TimeoutError, ConnectionError)):
        return SyncErrorType.TRANSIENT
    if isinstance(exception, OSError):
        if exception.errno in _TRANSIENT_ERRNOS:
            return SyncErrorType.TRANSIENT
        return SyncErrorType.UNKNOWN

    return SyncErrorType.UNKNOWN
