"""Sync state persistence port.

Defines the interface for persisting committed TableSyncState between runs.
"""

from typing import Protocol

from sqlsync.domain.entities import TableSyncState


class SyncStateRepository(Protocol):
    """Repository for committed per-table sync state.

    Only the owning table loop calls these methods: at startup (load), after
    a full reindex recreated the index (delete) and at commit time (save).
    """

    def load(self, table: str) -> TableSyncState | None:
        """Load the last committed state of a table.

        Args:
            table: Table name.

        Returns:
            The committed state, or None if the table was never synced.
        """
        ...

    def save(self, table: str, state: TableSyncState) -> None:
        """Replace the committed state of a table.

        Args:
            table: Table name.
            state: New committed state.
        """
        ...

    def delete(self, table: str) -> None:
        """Forget the committed state of a table.

        Args:
            table: Table name.
        """
        ...
