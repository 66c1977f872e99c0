"""End-to-end sync of real SQLite tables into an in-memory index."""

from pathlib import Path

import pytest

from sqlsync.adapters.sqlite.connection_pool import SQLiteConnectionPool
from sqlsync.adapters.sqlite.database_adapter import SQLiteDatabaseAdapter
from sqlsync.adapters.sqlite.state_repository import SQLiteStateRepository
from sqlsync.core.sync.dispatcher import BatchDispatcher, RetryPolicy
from sqlsync.core.sync.scheduler import PollScheduler
from sqlsync.domain.config import TableRegistration
from sqlsync.domain.entities import CycleOutcome, SchemaChangeKind
from tests.conftest import create_source_db, execute_sql

POLICY = RetryPolicy(max_attempts=2, base_backoff_seconds=0.0, jitter=0.0, batch_delay_seconds=0.0)


@pytest.fixture
def database(users_db: Path):
    db = SQLiteDatabaseAdapter(SQLiteConnectionPool(str(users_db), size=3))
    yield db
    db.close()


def make_scheduler(database, index, no_sleep, state_repository=None, **registration):
    scheduler = PollScheduler(
        database,
        BatchDispatcher(index, POLICY, sleep=no_sleep),
        state_repository=state_repository,
    )
    scheduler.register_table(
        TableRegistration(table="users", index_name="users", batch_size=2, **registration)
    )
    return scheduler


class TestEndToEndSync:
    """Full cycles over a real database."""

    def test_initial_sync_then_changes(self, database, users_db, fake_index, no_sleep) -> None:
        """Inserts, updates and deletes reach the index on the next cycle."""
        scheduler = make_scheduler(database, fake_index, no_sleep)

        (first,) = scheduler.run_once()
        assert first.created == 3
        assert fake_index.documents["users"][3] == {"id": 3, "name": "Linus"}

        execute_sql(users_db, "UPDATE users SET email = 'linus@example.com' WHERE id = 3")
        execute_sql(users_db, "DELETE FROM users WHERE id = 1")
        execute_sql(users_db, "INSERT INTO users VALUES (4, 'Barbara', NULL)")

        (second,) = scheduler.run_once()

        assert (second.created, second.updated, second.deleted) == (1, 1, 1)
        assert set(fake_index.documents["users"]) == {2, 3, 4}
        assert fake_index.documents["users"][3]["email"] == "linus@example.com"

    def test_schema_evolution(self, database, users_db, fake_index, no_sleep) -> None:
        """An added column updates the index fields, then every document."""
        scheduler = make_scheduler(database, fake_index, no_sleep)
        scheduler.run_once()
        fake_index.calls.clear()

        execute_sql(users_db, "ALTER TABLE users ADD COLUMN bio TEXT DEFAULT ''")
        (summary,) = scheduler.run_once()

        assert summary.schema_change is SchemaChangeKind.COLUMNS_ADDED
        assert fake_index.operations()[0] == "configure"
        assert fake_index.calls[0][2] == (("bio",), (), "id")
        assert summary.updated == 3
        assert fake_index.documents["users"][1]["bio"] == ""

    def test_value_shapes(self, tmp_path: Path, fake_index, no_sleep) -> None:
        """Blobs, reals and text keys are shaped into JSON values."""
        path = create_source_db(
            tmp_path / "shapes.db",
            """
            CREATE TABLE files (
                uuid TEXT PRIMARY KEY,
                size REAL,
                data BLOB
            );
            """,
            {"files": [("A1B2C3D4-0000-4000-8000-000000000001", 1.5, b"\x00\x01")]},
        )
        db = SQLiteDatabaseAdapter(SQLiteConnectionPool(str(path)))
        try:
            scheduler = PollScheduler(db, BatchDispatcher(fake_index, POLICY, sleep=no_sleep))
            scheduler.register_table(TableRegistration(table="files", index_name="files"))
            (summary,) = scheduler.run_once()
        finally:
            db.close()

        assert summary.succeeded
        (document,) = fake_index.documents["files"].values()
        assert document == {
            "uuid": "A1B2C3D4-0000-4000-8000-000000000001",
            "size": 1.5,
            "data": "AAE=",
        }

    def test_dropped_table_fails_permanently(
        self, database, users_db, fake_index, no_sleep
    ) -> None:
        """A table dropped between cycles fails without touching the index."""
        scheduler = make_scheduler(database, fake_index, no_sleep)
        scheduler.run_once()
        fake_index.calls.clear()

        execute_sql(users_db, "DROP TABLE users")
        (summary,) = scheduler.run_once()

        assert summary.outcome is CycleOutcome.FAILED
        assert summary.error_type.value == "permanent"
        assert fake_index.calls == []

    def test_restart_resumes_from_state_file(
        self, database, users_db, fake_index, no_sleep, tmp_path: Path
    ) -> None:
        """A restarted engine only sends what changed while it was down."""
        state_path = tmp_path / "state.db"
        with SQLiteStateRepository(state_path) as repo:
            make_scheduler(database, fake_index, no_sleep, state_repository=repo).run_once()

        execute_sql(users_db, "UPDATE users SET name = 'Grace Hopper' WHERE id = 2")
        fake_index.calls.clear()

        with SQLiteStateRepository(state_path) as repo:
            (summary,) = make_scheduler(
                database, fake_index, no_sleep, state_repository=repo
            ).run_once()

        assert (summary.created, summary.updated, summary.deleted) == (0, 1, 0)
        assert fake_index.operations() == ["upsert"]
        assert fake_index.calls[0][2] == [
            {"id": 2, "name": "Grace Hopper", "email": "grace@example.com"}
        ]

    @pytest.mark.slow
    def test_polling_picks_up_changes(self, database, users_db, fake_index, no_sleep) -> None:
        """A running scheduler syncs changes made between ticks."""
        scheduler = make_scheduler(database, fake_index, no_sleep, poll_interval_seconds=0.05)
        scheduler.start()
        try:
            execute_sql(users_db, "INSERT INTO users VALUES (10, 'Katherine', NULL)")
            for _ in range(100):
                if 10 in fake_index.documents.get("users", {}):
                    break
                scheduler.wait(timeout=0.05)
        finally:
            scheduler.stop()

        assert 10 in fake_index.documents["users"]
