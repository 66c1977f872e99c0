"""Config domain models for sqlsync.

Configuration is stored in a TOML file and describes the database to poll,
the Meilisearch instance to push to, and per-table sync settings. This module
defines the domain models that represent validated configuration state.
"""

from dataclasses import dataclass, field
from typing import Literal


@dataclass(frozen=True)
class MeilisearchConfig:
    """Connection settings for the Meilisearch instance.

    Attributes:
        host: Base URL (e.g., "http://localhost:7700")
        api_key: Optional API key sent as a bearer token
        timeout_seconds: Per-request HTTP timeout
        wait_for_tasks: Poll the task queue until each write task finishes,
                        turning failed tasks into permanent errors
        task_timeout_seconds: Maximum time to wait for one task

    Raises:
        ValueError: If host is empty or a timeout is not positive.
    """

    host: str = "http://localhost:7700"
    api_key: str | None = None
    timeout_seconds: float = 30.0
    wait_for_tasks: bool = False
    task_timeout_seconds: float = 60.0

    def __post_init__(self) -> None:
        """Validate meilisearch config after initialization."""
        if not self.host:
            raise ValueError("meilisearch host cannot be empty")
        if self.timeout_seconds <= 0:
            raise ValueError(
                f"timeout_seconds must be positive, got {self.timeout_seconds}"
            )
        if self.task_timeout_seconds <= 0:
            raise ValueError(
                f"task_timeout_seconds must be positive, got {self.task_timeout_seconds}"
            )


@dataclass(frozen=True)
class TypoToleranceConfig:
    """Typo tolerance toggle applied to an index."""

    enabled: bool = True


@dataclass(frozen=True)
class TableConfig:
    """Configuration for one synchronized table.

    Attributes:
        name: Table name in the database
        primary_key: Key column; fills in or overrides the declared key
        index_name: Target index (defaults to the table name)
        fields_to_index: Columns copied into documents (empty = all)
        watch_for_changes: Keep polling after the initial sync
        searchable_attributes: Explicit searchable attributes (None = all)
        ranking_rules: Custom ranking rules (None = index default)
        typo_tolerance: Typo tolerance settings (None = index default)
        poll_interval_seconds: Per-table override of the poll interval
        batch_size: Per-table override of the document batch size
        max_concurrent_batches: Per-table override of the concurrency limit

    Raises:
        ValueError: If name is empty or an override is not positive.
    """

    name: str
    primary_key: str | None = None
    index_name: str | None = None
    fields_to_index: list[str] = field(default_factory=list)
    watch_for_changes: bool = True
    searchable_attributes: list[str] | None = None
    ranking_rules: list[str] | None = None
    typo_tolerance: TypoToleranceConfig | None = None
    poll_interval_seconds: float | None = None
    batch_size: int | None = None
    max_concurrent_batches: int | None = None

    def __post_init__(self) -> None:
        """Validate table config after initialization."""
        if not self.name:
            raise ValueError("table name cannot be empty")
        for attr in ("poll_interval_seconds", "batch_size", "max_concurrent_batches"):
            value = getattr(self, attr)
            if value is not None and value <= 0:
                raise ValueError(f"{attr} must be positive, got {value}")

    @property
    def target_index(self) -> str:
        return self.index_name or self.name


@dataclass(frozen=True)
class DatabaseConfig:
    """Configuration for the source database and polling defaults.

    Attributes:
        type: Database backend (only "sqlite" is supported)
        connection_string: Path or sqlite: URL of the database file
        poll_interval_seconds: Seconds between cycles for each table
        connection_pool_size: Maximum open connections shared by all tables
        max_concurrent_batches: In-flight batch calls per table cycle
        document_batch_size: Maximum entries per index call
        tables: Tables to synchronize

    Raises:
        ValueError: If type is unsupported or a numeric value is not positive.
    """

    type: Literal["sqlite"] = "sqlite"
    connection_string: str = ""
    poll_interval_seconds: float = 60.0
    connection_pool_size: int = 5
    max_concurrent_batches: int = 5
    document_batch_size: int = 100
    tables: list[TableConfig] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Validate database config after initialization."""
        if self.type != "sqlite":
            raise ValueError(f"Unsupported database type: {self.type!r}")
        if not self.connection_string:
            raise ValueError("database connection_string cannot be empty")
        if self.poll_interval_seconds <= 0:
            raise ValueError(
                f"poll_interval_seconds must be positive, got {self.poll_interval_seconds}"
            )
        if self.connection_pool_size <= 0:
            raise ValueError(
                f"connection_pool_size must be positive, got {self.connection_pool_size}"
            )
        if self.max_concurrent_batches <= 0:
            raise ValueError(
                f"max_concurrent_batches must be positive, "
                f"got {self.max_concurrent_batches}"
            )
        if self.document_batch_size <= 0:
            raise ValueError(
                f"document_batch_size must be positive, got {self.document_batch_size}"
            )
        names = [table.name for table in self.tables]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Tables configured more than once: {', '.join(duplicates)}")


@dataclass(frozen=True)
class SyncConfig:
    """Retry, throttling and state persistence settings.

    Attributes:
        max_attempts: Attempts per batch call before it is marked failed
        base_backoff_seconds: Delay before the first retry
        max_backoff_seconds: Upper bound for any single retry delay
        backoff_jitter: Extra random fraction (0-1) added to each delay
        batch_delay_seconds: Pause between successive batches on one worker
        max_text_length: Text fields longer than this are truncated
        state_path: SQLite file persisting committed sync state (None = memory only)

    Raises:
        ValueError: If any value is out of range.
    """

    max_attempts: int = 5
    base_backoff_seconds: float = 0.5
    max_backoff_seconds: float = 30.0
    backoff_jitter: float = 0.5
    batch_delay_seconds: float = 0.1
    max_text_length: int = 10_000_000
    state_path: str | None = None

    def __post_init__(self) -> None:
        """Validate sync config after initialization."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.base_backoff_seconds < 0:
            raise ValueError(
                f"base_backoff_seconds cannot be negative, got {self.base_backoff_seconds}"
            )
        if self.max_backoff_seconds < self.base_backoff_seconds:
            raise ValueError(
                f"max_backoff_seconds ({self.max_backoff_seconds}) must be >= "
                f"base_backoff_seconds ({self.base_backoff_seconds})"
            )
        if not 0 <= self.backoff_jitter <= 1:
            raise ValueError(
                f"backoff_jitter must be between 0 and 1, got {self.backoff_jitter}"
            )
        if self.batch_delay_seconds < 0:
            raise ValueError(
                f"batch_delay_seconds cannot be negative, got {self.batch_delay_seconds}"
            )
        if self.max_text_length <= 0:
            raise ValueError(
                f"max_text_length must be positive, got {self.max_text_length}"
            )


@dataclass(frozen=True)
class AppConfig:
    """Complete sqlsync configuration.

    Typically loaded from a TOML file and used to wire the engine.

    Attributes:
        meilisearch: Index service settings
        database: Source database and table settings
        sync: Retry, throttling and state settings
    """

    meilisearch: MeilisearchConfig
    database: DatabaseConfig
    sync: SyncConfig = field(default_factory=SyncConfig)

    def registrations(self) -> list["TableRegistration"]:
        """Resolve per-table overrides against the database defaults."""
        db = self.database
        return [
            TableRegistration(
                table=table.name,
                index_name=table.target_index,
                primary_key=table.primary_key,
                fields_to_index=tuple(table.fields_to_index),
                poll_interval_seconds=table.poll_interval_seconds
                or db.poll_interval_seconds,
                batch_size=table.batch_size or db.document_batch_size,
                max_concurrency=table.max_concurrent_batches
                or db.max_concurrent_batches,
                watch_for_changes=table.watch_for_changes,
                max_text_length=self.sync.max_text_length,
            )
            for table in db.tables
        ]


@dataclass(frozen=True)
class TableRegistration:
    """Everything the scheduler needs to poll one table.

    Attributes:
        table: Source table name
        index_name: Target index
        primary_key: Configured key column (None = use the declared key)
        fields_to_index: Columns copied into documents (empty = all)
        poll_interval_seconds: Seconds between cycle starts
        batch_size: Maximum entries per index call
        max_concurrency: In-flight batch calls per cycle
        watch_for_changes: Keep polling after the first cycle
        max_text_length: Text fields longer than this are truncated

    Raises:
        ValueError: If a numeric setting is not positive.
    """

    table: str
    index_name: str
    primary_key: str | None = None
    fields_to_index: tuple[str, ...] = ()
    poll_interval_seconds: float = 60.0
    batch_size: int = 100
    max_concurrency: int = 5
    watch_for_changes: bool = True
    max_text_length: int = 10_000_000

    def __post_init__(self) -> None:
        """Validate registration after initialization."""
        if self.poll_interval_seconds <= 0:
            raise ValueError(
                f"poll_interval_seconds must be positive, got {self.poll_interval_seconds}"
            )
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if self.max_concurrency <= 0:
            raise ValueError(
                f"max_concurrency must be positive, got {self.max_concurrency}"
            )
