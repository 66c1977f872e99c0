"""Tests for batched index dispatch with retries."""

import random

import pytest

from sqlsync.core.sync.change_detector import diff
from sqlsync.core.sync.dispatcher import BatchDispatcher, RetryPolicy, chunked
from sqlsync.core.sync.hashing import RowHasher
from sqlsync.domain.config import SyncConfig
from sqlsync.domain.entities import (
    BatchStatus,
    DiffSet,
    NormalizedKey,
    OperationKind,
)
from sqlsync.domain.exceptions import PermanentIndexError, TransientIndexError
from tests.helpers.fake_index import FakeSearchIndex

FAST = RetryPolicy(
    max_attempts=3,
    base_backoff_seconds=1.0,
    max_backoff_seconds=8.0,
    jitter=0.0,
    batch_delay_seconds=0.25,
)


def make_diff(snapshot, creates=(), updates=(), deletes=()) -> DiffSet:
    """Build a DiffSet with the given integer keys in each category."""
    hasher = RowHasher(snapshot)
    previous_rows = [{"id": i, "name": "old"} for i in (*updates, *deletes)]
    previous = {
        row.key: row.fingerprint for row in hasher.fingerprint_rows(previous_rows)[0]
    }
    current_rows = [{"id": i, "name": "new"} for i in (*creates, *updates)]
    current, _ = hasher.fingerprint_rows(current_rows)
    return diff(previous, current)


class TestRetryPolicy:
    """Tests for backoff computation."""

    def test_backoff_doubles_up_to_cap(self) -> None:
        """Delays grow exponentially and stop at max_backoff_seconds."""
        rng = random.Random(0)
        delays = [FAST.backoff(attempt, rng) for attempt in range(1, 6)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 8.0]

    def test_jitter_bounded(self) -> None:
        """Jitter adds at most the configured fraction of the delay."""
        policy = RetryPolicy(base_backoff_seconds=2.0, max_backoff_seconds=2.0, jitter=0.5)
        rng = random.Random(42)
        for _ in range(50):
            assert 2.0 <= policy.backoff(1, rng) <= 3.0

    def test_from_config(self) -> None:
        """Policy mirrors the sync configuration."""
        policy = RetryPolicy.from_config(
            SyncConfig(max_attempts=7, backoff_jitter=0.1, batch_delay_seconds=0.0)
        )
        assert policy.max_attempts == 7
        assert policy.jitter == 0.1
        assert policy.batch_delay_seconds == 0.0

    def test_invalid_attempts_rejected(self) -> None:
        """At least one attempt is required."""
        with pytest.raises(ValueError, match="max_attempts"):
            RetryPolicy(max_attempts=0)


class TestChunked:
    """Tests for chunked()."""

    def test_splits_with_remainder(self) -> None:
        """Last chunk holds the remainder."""
        assert list(chunked([1, 2, 3, 4, 5], 2)) == [(1, 2), (3, 4), (5,)]

    def test_empty_input(self) -> None:
        """No items produce no chunks."""
        assert list(chunked([], 3)) == []

    def test_non_positive_size_rejected(self) -> None:
        """Batch size must be positive."""
        with pytest.raises(ValueError):
            list(chunked([1], 0))


class TestBuildBatches:
    """Tests for partitioning a DiffSet into batches."""

    def test_partitions_each_category(self, snapshot_factory, fake_index) -> None:
        """Every category is cut into batches of at most batch_size."""
        diffset = make_diff(
            snapshot_factory(), creates=range(1, 6), updates=(10, 11), deletes=(20,)
        )
        batches = BatchDispatcher(fake_index).build_batches("users", diffset, 2)

        kinds = [batch.kind for batch in batches]
        assert kinds == [
            OperationKind.CREATE,
            OperationKind.CREATE,
            OperationKind.CREATE,
            OperationKind.UPDATE,
            OperationKind.DELETE,
        ]
        assert all(len(batch.keys) <= 2 for batch in batches)
        assert batches[0].keys == (NormalizedKey.integer(1), NormalizedKey.integer(2))

    def test_empty_diff_has_no_batches(self, fake_index) -> None:
        """An empty diff produces no index calls."""
        assert BatchDispatcher(fake_index).build_batches("users", DiffSet(), 10) == []


class TestDispatch:
    """Tests for BatchDispatcher.dispatch()."""

    def test_delivers_every_category(self, snapshot_factory, fake_index, no_sleep) -> None:
        """Creations and updates are upserted, deletions deleted by id."""
        fake_index.documents["users"] = {2: {"id": 2}, 3: {"id": 3}}
        diffset = make_diff(snapshot_factory(), creates=(1,), updates=(2,), deletes=(3,))
        dispatcher = BatchDispatcher(fake_index, FAST, sleep=no_sleep)

        result = dispatcher.dispatch("users", diffset, batch_size=10, max_concurrency=1)

        assert result.succeeded
        assert result.counts[OperationKind.CREATE].succeeded == 1
        assert result.counts[OperationKind.UPDATE].succeeded == 1
        assert result.counts[OperationKind.DELETE].succeeded == 1
        assert fake_index.calls_for("delete") == [("delete", "users", [3])]
        assert set(fake_index.documents["users"]) == {1, 2}
        assert fake_index.documents["users"][2]["name"] == "new"

    def test_empty_diff_makes_no_calls(self, fake_index, no_sleep) -> None:
        """Nothing to send means no index traffic."""
        result = BatchDispatcher(fake_index, FAST, sleep=no_sleep).dispatch(
            "users", DiffSet(), 10, 2
        )
        assert result.succeeded
        assert result.outcomes == []
        assert fake_index.calls == []

    def test_transient_failure_retried(self, snapshot_factory, fake_index, no_sleep) -> None:
        """A batch that fails transiently then succeeds counts as delivered."""
        fake_index.script_failure(
            "upsert", TransientIndexError("busy", status=503), TransientIndexError("busy")
        )
        diffset = make_diff(snapshot_factory(), creates=(1, 2))
        dispatcher = BatchDispatcher(fake_index, FAST, sleep=no_sleep)

        result = dispatcher.dispatch("users", diffset, batch_size=10, max_concurrency=1)

        assert result.succeeded
        assert result.outcomes[0].attempts == 3
        assert len(fake_index.calls_for("upsert")) == 3
        assert no_sleep.calls == [1.0, 2.0]

    def test_exhausted_batch_fails_without_stopping_siblings(
        self, snapshot_factory, fake_index, no_sleep
    ) -> None:
        """Only the exhausted batch fails; the other batches are still delivered."""
        fake_index.fail_always["delete"] = TransientIndexError("timeout")
        fake_index.documents["users"] = {9: {"id": 9}}
        diffset = make_diff(snapshot_factory(), creates=(1, 2, 3), deletes=(9,))
        dispatcher = BatchDispatcher(fake_index, FAST, sleep=no_sleep)

        result = dispatcher.dispatch("users", diffset, batch_size=2, max_concurrency=1)

        assert not result.succeeded
        assert result.permanent_failure is None
        statuses = {o.kind: o.status for o in result.outcomes}
        assert statuses[OperationKind.DELETE] is BatchStatus.FAILED
        assert result.counts[OperationKind.CREATE].succeeded == 3
        assert result.counts[OperationKind.DELETE].failed == 1
        assert result.failed_keys == [NormalizedKey.integer(9)]
        assert len(fake_index.calls_for("delete")) == FAST.max_attempts

    def test_permanent_failure_skips_remaining(
        self, snapshot_factory, fake_index, no_sleep
    ) -> None:
        """A rejected batch is not retried and later batches are skipped."""
        fake_index.script_failure("upsert", PermanentIndexError("bad document", status=400))
        diffset = make_diff(snapshot_factory(), creates=range(1, 7))
        dispatcher = BatchDispatcher(fake_index, FAST, sleep=no_sleep)

        result = dispatcher.dispatch("users", diffset, batch_size=2, max_concurrency=1)

        statuses = [o.status for o in result.outcomes]
        assert statuses == [BatchStatus.REJECTED, BatchStatus.SKIPPED, BatchStatus.SKIPPED]
        assert result.permanent_failure.status_code == 400
        assert result.permanent_failure.attempts == 1
        assert len(fake_index.calls_for("upsert")) == 1
        assert len(result.failed_keys) == 6

    def test_unexpected_error_rejected(self, snapshot_factory, fake_index, no_sleep) -> None:
        """A non-transient error from the client is treated as permanent."""
        fake_index.script_failure("upsert", ValueError("not serializable"))
        diffset = make_diff(snapshot_factory(), creates=(1,))

        result = BatchDispatcher(fake_index, FAST, sleep=no_sleep).dispatch(
            "users", diffset, 10, 1
        )

        assert result.outcomes[0].status is BatchStatus.REJECTED
        assert "not serializable" in result.outcomes[0].error

    def test_connection_error_retried(self, snapshot_factory, fake_index, no_sleep) -> None:
        """Network-level exceptions are classified transient and retried."""
        fake_index.script_failure("upsert", ConnectionError("refused"))
        diffset = make_diff(snapshot_factory(), creates=(1,))

        result = BatchDispatcher(fake_index, FAST, sleep=no_sleep).dispatch(
            "users", diffset, 10, 1
        )

        assert result.succeeded
        assert result.outcomes[0].attempts == 2

    def test_throttle_between_batches(self, snapshot_factory, fake_index, no_sleep) -> None:
        """A single worker pauses between its successive batches."""
        diffset = make_diff(snapshot_factory(), creates=range(1, 7))

        BatchDispatcher(fake_index, FAST, sleep=no_sleep).dispatch("users", diffset, 2, 1)

        assert no_sleep.calls == [0.25, 0.25]

    def test_concurrency_limit(self, snapshot_factory, no_sleep) -> None:
        """No more than max_concurrency calls are ever in flight."""
        index = FakeSearchIndex(call_delay=0.02)
        diffset = make_diff(snapshot_factory(), creates=range(1, 41))

        result = BatchDispatcher(index, FAST, sleep=no_sleep).dispatch(
            "users", diffset, batch_size=2, max_concurrency=3
        )

        assert result.succeeded
        assert len(index.calls_for("upsert")) == 20
        assert 1 <= index.max_in_flight <= 3
        assert len(index.documents["users"]) == 40

    def test_invalid_concurrency_rejected(self, fake_index) -> None:
        """max_concurrency must be positive."""
        with pytest.raises(ValueError, match="max_concurrency"):
            BatchDispatcher(fake_index).dispatch("users", DiffSet(), 10, 0)


class TestRunWithRetry:
    """Tests for single-call retry used by index configuration."""

    def test_exhaustion_keeps_status_code(self, no_sleep) -> None:
        """The last transient status code is reported."""

        def call() -> None:
            raise TransientIndexError("unavailable", status=503)

        outcome = BatchDispatcher(FakeSearchIndex(), FAST, sleep=no_sleep).run_with_retry(
            None, (), call, "configuration"
        )

        assert outcome.status is BatchStatus.FAILED
        assert outcome.status_code == 503
        assert outcome.attempts == 3
        assert no_sleep.calls == [1.0, 2.0]
