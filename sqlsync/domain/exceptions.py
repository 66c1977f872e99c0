"""Domain exceptions for sqlsync.

These exceptions represent business rule violations and collaborator failures.
They are caught at the cycle boundary (a failed cycle) or at the application
boundary (CLI) and converted to user-facing messages there.

Transient failures are worth retrying; permanent failures repeat until the
external condition is fixed.
"""


class SyncDomainError(Exception):
    """Base exception for all domain errors.

    Attributes:
        message: User-facing error message.
        hint: Optional actionable suggestion.
    """

    def __init__(self, message: str, hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint


class ConfigError(SyncDomainError):
    """Raised when static configuration is missing or invalid."""

    pass


class UnsupportedKeyType(SyncDomainError):
    """Raised when a table's primary key cannot be normalized.

    Composite (multi-column) keys and non-integer, non-text key columns
    fall in this category.
    """

    pass


class InvalidKeyValue(SyncDomainError):
    """Raised when a single row's primary key value is null or unusable."""

    pass


class SchemaClassificationError(SyncDomainError):
    """Raised when a schema snapshot has a shape the engine cannot sync."""

    pass


# =============================================================================
# Database collaborator errors
# =============================================================================


class DatabaseError(SyncDomainError):
    """Base class for database collaborator failures."""

    pass


class DatabaseConnectionError(DatabaseError):
    """Transient database failure (locked, busy, unable to open)."""

    pass


class QueryError(DatabaseError):
    """Permanent database failure (table dropped, malformed query)."""

    pass


# =============================================================================
# Index service collaborator errors
# =============================================================================


class IndexServiceError(SyncDomainError):
    """Base class for index service failures.

    Attributes:
        status: HTTP status code, or None when no response was received.
    """

    def __init__(
        self, message: str, status: int | None = None, hint: str | None = None
    ) -> None:
        super().__init__(message, hint=hint)
        self.status = status


class TransientIndexError(IndexServiceError):
    """Retryable failure: timeout, connection refused, 408/429/5xx."""

    pass


class PermanentIndexError(IndexServiceError):
    """Non-retryable failure: authentication rejected, malformed request."""

    pass
