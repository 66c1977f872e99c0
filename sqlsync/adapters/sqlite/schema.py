"""SQLite schema for the sync state file.

The state file holds, per table, the last committed schema snapshot and the
fingerprint of every synchronized row:
- sync_state: one row per table with the snapshot and commit time
- fingerprints: one row per synchronized source row
- meta: schema version of this file
"""

import sqlite3
from pathlib import Path

# Schema version for migrations
SCHEMA_VERSION = 1


def init_state_database(db_path: Path) -> None:
    """Create the state database if it does not exist yet.

    Args:
        db_path: Path to the state file.

    Raises:
        sqlite3.Error: If database creation fails.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    try:
        _create_tables(conn)
        conn.execute(
            "INSERT OR IGNORE INTO meta (key, value) VALUES ('schema_version', ?)",
            (str(SCHEMA_VERSION),),
        )
        conn.commit()
    finally:
        conn.close()


def _create_tables(conn: sqlite3.Connection) -> None:
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS sync_state (
            table_name TEXT PRIMARY KEY,
            snapshot TEXT NOT NULL,
            schema_version TEXT NOT NULL,
            last_synced_at TEXT
        )
    """)

    # key_kind follows KeyKind: 0 = integer, 1 = text
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS fingerprints (
            table_name TEXT NOT NULL,
            key_kind INTEGER NOT NULL,
            key_value TEXT NOT NULL,
            content_hash TEXT NOT NULL,
            PRIMARY KEY (table_name, key_kind, key_value)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
    """)


def check_schema_version(db_path: Path) -> int:
    """Return the schema version recorded in a state file.

    Raises:
        ValueError: If the file was written by a newer schema version.
    """
    conn = sqlite3.connect(db_path)
    try:
        row = conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()
    finally:
        conn.close()
    version = int(row[0]) if row else 0
    if version > SCHEMA_VERSION:
        raise ValueError(
            f"State file {db_path} has schema version {version}, "
            f"this sqlsync supports up to {SCHEMA_VERSION}"
        )
    return version
