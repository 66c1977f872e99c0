"""Domain entities and value objects.

Core domain models representing the business concepts of sqlsync.
These are pure Python dataclasses with no dependencies on infrastructure.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum, IntEnum
from types import MappingProxyType

import blake3

# Signed 64-bit range for integer primary keys
INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1


class KeyKind(IntEnum):
    """Tag of a normalized primary key.

    The integer values define cross-kind ordering: integer keys sort before
    text keys.
    """

    INTEGER = 0
    TEXT = 1


@dataclass(frozen=True, order=True)
class NormalizedKey:
    """A primary key value in one canonical, comparable form.

    Attributes:
        kind: Whether the key is an integer or text key.
        value: Signed 64-bit int for INTEGER keys, canonical string for TEXT.

    Raises:
        ValueError: If value does not match kind or is out of range.
    """

    kind: KeyKind
    value: int | str

    def __post_init__(self) -> None:
        """Validate key value against its kind."""
        if self.kind is KeyKind.INTEGER:
            if isinstance(self.value, bool) or not isinstance(self.value, int):
                raise ValueError(f"Integer key requires int value, got {self.value!r}")
            if not INT64_MIN <= self.value <= INT64_MAX:
                raise ValueError(f"Integer key out of 64-bit range: {self.value}")
        elif not isinstance(self.value, str):
            raise ValueError(f"Text key requires str value, got {self.value!r}")

    @classmethod
    def integer(cls, value: int) -> NormalizedKey:
        return cls(KeyKind.INTEGER, value)

    @classmethod
    def text(cls, value: str) -> NormalizedKey:
        return cls(KeyKind.TEXT, value)

    @property
    def document_id(self) -> int | str:
        """Value used as the document identifier in the search index."""
        return self.value

    def __str__(self) -> str:
        return str(self.value)


@dataclass(frozen=True)
class RowFingerprint:
    """Key and content hash of one row.

    Attributes:
        key: Normalized primary key (key columns are not part of the hash).
        content_hash: blake3 hash of the canonical field encoding
            (64 lowercase hex chars).

    Raises:
        ValueError: If content_hash is not a valid blake3 hex digest.
    """

    key: NormalizedKey
    content_hash: str

    # Regex for validating blake3 hashes (64 lowercase hex chars)
    _BLAKE3_PATTERN = re.compile(r"^[a-f0-9]{64}$")

    def __post_init__(self) -> None:
        """Validate content hash format."""
        if not self._BLAKE3_PATTERN.match(self.content_hash):
            raise ValueError(
                f"Invalid blake3 hash for content_hash: must be 64 lowercase hex chars, "
                f"got: {self.content_hash!r}"
            )


@dataclass(frozen=True, eq=False)
class FingerprintedRow:
    """A row fingerprint together with the document to send to the index."""

    fingerprint: RowFingerprint
    document: dict[str, object]

    @property
    def key(self) -> NormalizedKey:
        return self.fingerprint.key


# =============================================================================
# Schema
# =============================================================================


@dataclass(frozen=True)
class ColumnInfo:
    """One column of a table as declared in the database."""

    name: str
    declared_type: str
    nullable: bool = True

    @property
    def normalized_type(self) -> str:
        """Declared type upper-cased with whitespace collapsed."""
        return " ".join(self.declared_type.upper().split())


@dataclass(frozen=True)
class SchemaSnapshot:
    """Column set and primary key of a table at one point in time.

    Snapshots are replaced wholesale on each poll and never mutated.

    Attributes:
        table: Table name.
        columns: Columns in declaration order.
        primary_key: Primary key column name(s), in key order.
    """

    table: str
    columns: tuple[ColumnInfo, ...]
    primary_key: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        """Coerce sequences to tuples so snapshots stay hashable."""
        object.__setattr__(self, "columns", tuple(self.columns))
        object.__setattr__(self, "primary_key", tuple(self.primary_key))

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(column.name for column in self.columns)

    @property
    def columns_by_name(self) -> dict[str, ColumnInfo]:
        return {column.name: column for column in self.columns}

    def column(self, name: str) -> ColumnInfo | None:
        return self.columns_by_name.get(name)

    def with_primary_key(self, primary_key: tuple[str, ...]) -> SchemaSnapshot:
        return replace(self, primary_key=tuple(primary_key))

    @property
    def version(self) -> str:
        """Stable identifier of this schema (blake3 of its canonical form)."""
        parts = [f"pk={','.join(self.primary_key)}"]
        parts.extend(
            f"{c.name}:{c.normalized_type}:{int(c.nullable)}" for c in self.columns
        )
        return blake3.blake3("\n".join(parts).encode("utf-8")).hexdigest()


class SchemaChangeKind(str, Enum):
    """Classification of the difference between two schema snapshots.

    Declared from lowest to highest precedence.
    """

    UNCHANGED = "unchanged"
    COLUMNS_ADDED = "columns_added"
    TYPES_CHANGED = "types_changed"
    COLUMNS_REMOVED = "columns_removed"
    PRIMARY_KEY_CHANGED = "primary_key_changed"


@dataclass(frozen=True)
class SchemaChange:
    """Result of comparing a previous and a current schema snapshot.

    The kind is the highest-precedence change found. The column sets are
    always filled in from the raw comparison, so a COLUMNS_REMOVED change
    still reports any columns added in the same poll.

    Attributes:
        kind: Classification driving the dispatch strategy.
        added: Columns present now but not before.
        removed: Columns present before but not now.
        retyped: Retained columns whose declared type changed.
        initial: True when there was no previous snapshot.
    """

    kind: SchemaChangeKind = SchemaChangeKind.UNCHANGED
    added: frozenset[str] = frozenset()
    removed: frozenset[str] = frozenset()
    retyped: frozenset[str] = frozenset()
    initial: bool = False

    @property
    def requires_full_reindex(self) -> bool:
        return self.kind in (
            SchemaChangeKind.PRIMARY_KEY_CHANGED,
            SchemaChangeKind.TYPES_CHANGED,
        )

    @property
    def requires_field_update(self) -> bool:
        """True when index attributes must be added or removed incrementally."""
        return not self.requires_full_reindex and bool(self.added or self.removed)


# =============================================================================
# Sync state
# =============================================================================


@dataclass(frozen=True)
class TableSyncState:
    """Last successfully synchronized state of one table.

    Owned exclusively by that table's polling loop and replaced (never
    mutated) when a cycle commits.

    Attributes:
        snapshot: Last committed schema, or None before the first commit.
        fingerprints: Mapping of key to fingerprint for every synced row.
        schema_version: Version identifier of the committed snapshot.
        last_synced_at: Completion time of the last successful cycle.
    """

    snapshot: SchemaSnapshot | None = None
    fingerprints: Mapping[NormalizedKey, RowFingerprint] = field(
        default_factory=dict
    )
    schema_version: str = ""
    last_synced_at: datetime | None = None

    def __post_init__(self) -> None:
        """Freeze the fingerprint map."""
        object.__setattr__(
            self, "fingerprints", MappingProxyType(dict(self.fingerprints))
        )

    @property
    def is_initial(self) -> bool:
        """True if no cycle has committed yet."""
        return self.snapshot is None


class OperationKind(str, Enum):
    """Category of a diff entry, and of the index call that carries it."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class DiffSet:
    """Creations, updates and deletions computed for one cycle.

    The three key sets are pairwise disjoint. Never persisted.
    """

    creations: Mapping[NormalizedKey, FingerprintedRow] = field(default_factory=dict)
    updates: Mapping[NormalizedKey, FingerprintedRow] = field(default_factory=dict)
    deletions: frozenset[NormalizedKey] = frozenset()
    unchanged: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.creations or self.updates or self.deletions)

    @property
    def total_changes(self) -> int:
        return len(self.creations) + len(self.updates) + len(self.deletions)


# =============================================================================
# Dispatch results
# =============================================================================


class BatchStatus(str, Enum):
    """Terminal status of one batch call."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"  # transient failure, attempts exhausted
    REJECTED = "rejected"  # permanent failure, not retried
    SKIPPED = "skipped"  # never sent because the cycle already failed permanently


@dataclass(frozen=True)
class BatchOutcome:
    """Outcome of delivering one batch (or one configuration call)."""

    kind: OperationKind | None
    keys: tuple[NormalizedKey, ...]
    status: BatchStatus
    attempts: int = 0
    error: str | None = None
    status_code: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is BatchStatus.SUCCEEDED


@dataclass
class CategoryCounts:
    """Entries delivered and failed for one operation kind."""

    succeeded: int = 0
    failed: int = 0


@dataclass
class DispatchResult:
    """Aggregate outcome of dispatching one DiffSet.

    Built up by the dispatcher's workers through record(), which is safe to
    call from several threads.
    """

    counts: dict[OperationKind, CategoryCounts] = field(
        default_factory=lambda: {kind: CategoryCounts() for kind in OperationKind}
    )
    outcomes: list[BatchOutcome] = field(default_factory=list)
    _lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    def record(self, outcome: BatchOutcome) -> None:
        """Add one batch outcome to the totals."""
        with self._lock:
            self.outcomes.append(outcome)
            if outcome.kind is None:
                return
            counts = self.counts[outcome.kind]
            if outcome.succeeded:
                counts.succeeded += len(outcome.keys)
            else:
                counts.failed += len(outcome.keys)

    @property
    def succeeded(self) -> bool:
        """True only if every batch was delivered."""
        return all(outcome.succeeded for outcome in self.outcomes)

    @property
    def permanent_failure(self) -> BatchOutcome | None:
        for outcome in self.outcomes:
            if outcome.status is BatchStatus.REJECTED:
                return outcome
        return None

    @property
    def failed_keys(self) -> list[NormalizedKey]:
        """Keys whose batch did not reach the index, in key order."""
        keys = [
            key
            for outcome in self.outcomes
            if not outcome.succeeded
            for key in outcome.keys
        ]
        return sorted(keys)

    @property
    def batches_total(self) -> int:
        return len([o for o in self.outcomes if o.kind is not None])

    @property
    def batches_failed(self) -> int:
        return len([o for o in self.outcomes if o.kind is not None and not o.succeeded])


# =============================================================================
# Cycle lifecycle
# =============================================================================


class CyclePhase(str, Enum):
    """Phase of a table's polling loop."""

    IDLE = "idle"
    FETCHING = "fetching"
    DIFFING = "diffing"
    DISPATCHING = "dispatching"
    COMMITTING = "committing"
    FAILED = "failed"


class CycleOutcome(str, Enum):
    """How one cycle ended."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"  # previous cycle still in flight
    CANCELLED = "cancelled"  # shutdown observed at a phase boundary


class SyncErrorType(str, Enum):
    """Classification of sync errors.

    Allows callers to distinguish between different failure modes and respond
    appropriately (retry next interval vs. operator action required).
    """

    NONE = "none"  # No error occurred
    TRANSIENT = "transient"  # Network, timeout, busy database, 5xx
    PERMANENT = "permanent"  # Auth, malformed request, unsupported schema
    UNKNOWN = "unknown"  # Unclassified error


@dataclass
class CycleSummary:
    """Result of one cycle, reported upward to CLI and reporters.

    Attributes:
        table: Source table name.
        index_name: Target index.
        outcome: How the cycle ended.
        created: Documents created in the index.
        updated: Documents replaced in the index.
        deleted: Documents deleted from the index.
        unchanged: Rows skipped because their fingerprint matched.
        skipped_rows: Rows ignored because their key was null or invalid.
        duration_seconds: Wall time of the cycle.
        schema_change: Classification of the schema comparison.
        full_reindex: Whether the cycle rebuilt the index from scratch.
        error: Error message if the cycle failed, None otherwise.
        error_type: Classification of the error for programmatic handling.
        failed_keys: Keys whose batch failed terminally.
    """

    table: str
    index_name: str
    outcome: CycleOutcome
    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    skipped_rows: int = 0
    duration_seconds: float = 0.0
    schema_change: SchemaChangeKind = SchemaChangeKind.UNCHANGED
    full_reindex: bool = False
    error: str | None = None
    error_type: SyncErrorType = field(default=SyncErrorType.NONE)
    failed_keys: list[NormalizedKey] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.outcome is CycleOutcome.SUCCEEDED

    @property
    def total_changes(self) -> int:
        return self.created + self.updated + self.deleted
