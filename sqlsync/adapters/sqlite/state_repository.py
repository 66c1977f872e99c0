"""SQLite adapter implementing the SyncStateRepository port.

Persists each table's committed TableSyncState so a restarted process does
not resend rows the index already holds.
"""

import json
import logging
from datetime import datetime
from pathlib import Path

from sqlsync.adapters.sqlite.base_repository import SQLiteBaseRepository
from sqlsync.adapters.sqlite.schema import check_schema_version, init_state_database
from sqlsync.domain.entities import (
    ColumnInfo,
    KeyKind,
    NormalizedKey,
    RowFingerprint,
    SchemaSnapshot,
    TableSyncState,
)

logger = logging.getLogger(__name__)


def _snapshot_to_json(snapshot: SchemaSnapshot) -> str:
    return json.dumps(
        {
            "table": snapshot.table,
            "primary_key": list(snapshot.primary_key),
            "columns": [
                {"name": c.name, "type": c.declared_type, "nullable": c.nullable}
                for c in snapshot.columns
            ],
        }
    )


def _snapshot_from_json(raw: str) -> SchemaSnapshot:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid snapshot JSON in state file: {e}") from e
    return SchemaSnapshot(
        table=data["table"],
        columns=tuple(
            ColumnInfo(name=c["name"], declared_type=c["type"], nullable=c["nullable"])
            for c in data["columns"]
        ),
        primary_key=tuple(data["primary_key"]),
    )


class SQLiteStateRepository(SQLiteBaseRepository):
    """SQLite implementation of SyncStateRepository."""

    def __init__(self, db_path: Path) -> None:
        """Initialize the repository, creating the state file if needed.

        Args:
            db_path: Path to the state file.

        Raises:
            ValueError: If the file was written by a newer schema version.
        """
        init_state_database(db_path)
        check_schema_version(db_path)
        super().__init__(db_path)

    def load(self, table: str) -> TableSyncState | None:
        """Load the committed state of a table.

        Args:
            table: Source table name.

        Returns:
            The saved state, or None if the table was never committed.
        """
        with self._write_lock:
            conn = self._get_connection()
            row = conn.execute(
                "SELECT snapshot, schema_version, last_synced_at "
                "FROM sync_state WHERE table_name = ?",
                (table,),
            ).fetchone()
            if row is None:
                return None
            key_rows = conn.execute(
                "SELECT key_kind, key_value, content_hash "
                "FROM fingerprints WHERE table_name = ?",
                (table,),
            ).fetchall()

        fingerprints: dict[NormalizedKey, RowFingerprint] = {}
        for kind, value, content_hash in key_rows:
            key_kind = KeyKind(kind)
            key = NormalizedKey(
                key_kind, int(value) if key_kind is KeyKind.INTEGER else value
            )
            fingerprints[key] = RowFingerprint(key=key, content_hash=content_hash)

        return TableSyncState(
            snapshot=_snapshot_from_json(row[0]),
            fingerprints=fingerprints,
            schema_version=row[1],
            last_synced_at=datetime.fromisoformat(row[2]) if row[2] else None,
        )

    def save(self, table: str, state: TableSyncState) -> None:
        """Replace the committed state of a table in one transaction.

        Args:
            table: Source table name.
            state: State to persist. A state without snapshot is not saved.
        """
        if state.snapshot is None:
            return
        synced_at = state.last_synced_at.isoformat() if state.last_synced_at else None
        with self._write_lock:
            conn = self._get_connection()
            with conn:
                conn.execute("DELETE FROM fingerprints WHERE table_name = ?", (table,))
                conn.executemany(
                    "INSERT INTO fingerprints (table_name, key_kind, key_value, content_hash) "
                    "VALUES (?, ?, ?, ?)",
                    (
                        (table, int(fp.key.kind), str(fp.key.value), fp.content_hash)
                        for fp in state.fingerprints.values()
                    ),
                )
                conn.execute(
                    """
                    INSERT INTO sync_state (table_name, snapshot, schema_version, last_synced_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(table_name) DO UPDATE SET
                        snapshot = excluded.snapshot,
                        schema_version = excluded.schema_version,
                        last_synced_at = excluded.last_synced_at
                    """,
                    (table, _snapshot_to_json(state.snapshot), state.schema_version, synced_at),
                )
        logger.debug("Saved state for '%s' (%d rows)", table, len(state.fingerprints))

    def delete(self, table: str) -> None:
        """Forget the committed state of a table."""
        with self._write_lock:
            conn = self._get_connection()
            with conn:
                conn.execute("DELETE FROM fingerprints WHERE table_name = ?", (table,))
                conn.execute("DELETE FROM sync_state WHERE table_name = ?", (table,))
