"""Row-level change detection.

Compares the fingerprints committed by the previous cycle with the rows read
in this cycle. Only rows whose key is new or whose content hash changed are
sent to the index, so steady-state cost scales with the size of the change
rather than the size of the table.
"""

import logging
from collections.abc import Iterable, Mapping

from sqlsync.domain.entities import (
    DiffSet,
    FingerprintedRow,
    NormalizedKey,
    RowFingerprint,
)

logger = logging.getLogger(__name__)


def diff(
    previous_state: Mapping[NormalizedKey, RowFingerprint],
    current_rows: Iterable[FingerprintedRow],
) -> DiffSet:
    """Compute creations, updates and deletions.

    Args:
        previous_state: Committed fingerprints keyed by normalized key. Empty
            on the first cycle or after a full reindex.
        current_rows: Fingerprinted rows read in this cycle.

    Returns:
        DiffSet whose creation, update and deletion key sets are disjoint.
        Keys with an unchanged hash appear only in the unchanged count.
    """
    creations: dict[NormalizedKey, FingerprintedRow] = {}
    updates: dict[NormalizedKey, FingerprintedRow] = {}
    seen: set[NormalizedKey] = set()
    unchanged = 0
    duplicates = 0

    for row in current_rows:
        key = row.key
        if key in seen:
            # First occurrence wins; a second one would make the sets overlap
            duplicates += 1
            continue
        seen.add(key)

        committed = previous_state.get(key)
        if committed is None:
            creations[key] = row
        elif committed.content_hash != row.fingerprint.content_hash:
            updates[key] = row
        else:
            unchanged += 1

    deletions = frozenset(key for key in previous_state if key not in seen)

    if duplicates:
        logger.warning("Ignored %d row(s) with a duplicate normalized key", duplicates)

    logger.debug(
        "Diff: %d created, %d updated, %d deleted, %d unchanged",
        len(creations),
        len(updates),
        len(deletions),
        unchanged,
    )
    return DiffSet(
        creations=creations,
        updates=updates,
        deletions=deletions,
        unchanged=unchanged,
    )


def committed_fingerprints(
    current_rows: Iterable[FingerprintedRow],
) -> dict[NormalizedKey, RowFingerprint]:
    """Fingerprint map to commit after a fully successful dispatch.

    This is the current row set (first occurrence per key), which equals the
    previous state with the diff applied.
    """
    fingerprints: dict[NormalizedKey, RowFingerprint] = {}
    for row in current_rows:
        fingerprints.setdefault(row.key, row.fingerprint)
    return fingerprints
