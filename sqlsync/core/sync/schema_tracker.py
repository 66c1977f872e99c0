"""Schema change classification.

Compares the schema snapshot committed by the previous cycle with the one
read in the current cycle and decides how the cycle must dispatch:

    PRIMARY_KEY_CHANGED > COLUMNS_REMOVED > TYPES_CHANGED > COLUMNS_ADDED > UNCHANGED

PRIMARY_KEY_CHANGED and TYPES_CHANGED force a full reindex. COLUMNS_ADDED and
COLUMNS_REMOVED only update the index field configuration. A missing previous
snapshot classifies as UNCHANGED with initial=True; the caller then diffs
against empty state, which turns every row into a creation.
"""

import logging

from sqlsync.domain.entities import SchemaChange, SchemaChangeKind, SchemaSnapshot
from sqlsync.domain.exceptions import SchemaClassificationError

logger = logging.getLogger(__name__)


def validate_snapshot(snapshot: SchemaSnapshot) -> None:
    """Check that a snapshot has a shape the engine can sync.

    Raises:
        SchemaClassificationError: If the table has no columns or its primary
            key names a column that does not exist.
    """
    if not snapshot.columns:
        raise SchemaClassificationError(
            f"Table '{snapshot.table}' has no columns",
            hint="Check that the table exists and the connection string is correct",
        )
    names = set(snapshot.column_names)
    missing = [column for column in snapshot.primary_key if column not in names]
    if missing:
        raise SchemaClassificationError(
            f"Primary key column(s) {', '.join(missing)} not found in table "
            f"'{snapshot.table}'",
            hint="Fix primary_key in the table config",
        )


def _key_identity(snapshot: SchemaSnapshot) -> tuple[tuple[str, str], ...]:
    """Key column names together with their declared types."""
    columns = snapshot.columns_by_name
    return tuple(
        (name, columns[name].normalized_type if name in columns else "")
        for name in snapshot.primary_key
    )


def classify(previous: SchemaSnapshot | None, current: SchemaSnapshot) -> SchemaChange:
    """Classify the difference between two snapshots of the same table.

    Args:
        previous: Snapshot committed by the last successful cycle, if any.
        current: Snapshot read in this cycle.

    Returns:
        SchemaChange carrying the highest-precedence kind and the raw
        added/removed/retyped column sets.

    Raises:
        SchemaClassificationError: If the current snapshot is unusable.
    """
    validate_snapshot(current)

    if previous is None:
        return SchemaChange(kind=SchemaChangeKind.UNCHANGED, initial=True)

    before = previous.columns_by_name
    after = current.columns_by_name

    added = frozenset(after) - frozenset(before)
    removed = frozenset(before) - frozenset(after)
    # Nullability is not part of a type change; the index has no such notion
    retyped = frozenset(
        name
        for name in frozenset(before) & frozenset(after)
        if before[name].normalized_type != after[name].normalized_type
    )

    if _key_identity(previous) != _key_identity(current):
        kind = SchemaChangeKind.PRIMARY_KEY_CHANGED
    elif removed:
        kind = SchemaChangeKind.COLUMNS_REMOVED
    elif retyped:
        kind = SchemaChangeKind.TYPES_CHANGED
    elif added:
        kind = SchemaChangeKind.COLUMNS_ADDED
    else:
        kind = SchemaChangeKind.UNCHANGED

    if kind is not SchemaChangeKind.UNCHANGED:
        logger.info(
            "Schema change in '%s': %s (added=%s removed=%s retyped=%s)",
            current.table,
            kind.value,
            sorted(added),
            sorted(removed),
            sorted(retyped),
        )

    return SchemaChange(kind=kind, added=added, removed=removed, retyped=retyped)
