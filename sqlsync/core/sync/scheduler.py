"""Poll scheduling and the per-table sync cycle.

Each registered table gets a TableSyncLoop that owns its TableSyncState and
runs cycles through the phases

    IDLE -> FETCHING -> DIFFING -> DISPATCHING -> COMMITTING -> IDLE

with FAILED returning to IDLE on the next cycle. State is replaced only after
every batch of a cycle reached the index; a failed cycle leaves it untouched,
so the next cycle recomputes the same pending changes.

The PollScheduler runs one ticker thread per table. A tick that arrives while
the table's previous cycle is still running is skipped, not queued. Shutdown
is observed at phase boundaries; a cycle that has started dispatching always
runs to completion.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime

from sqlsync.core.sync.change_detector import committed_fingerprints, diff
from sqlsync.core.sync.dispatcher import BatchDispatcher
from sqlsync.core.sync.errors import classify_sync_error
from sqlsync.core.sync.hashing import RowHasher
from sqlsync.core.sync.schema_tracker import classify
from sqlsync.domain.config import TableRegistration
from sqlsync.domain.entities import (
    BatchOutcome,
    BatchStatus,
    CycleOutcome,
    CyclePhase,
    CycleSummary,
    DispatchResult,
    OperationKind,
    SchemaChange,
    SchemaSnapshot,
    SyncErrorType,
    TableSyncState,
)
from sqlsync.ports.database import DatabaseAdapter
from sqlsync.ports.reporting import CycleReporter
from sqlsync.ports.state import SyncStateRepository

logger = logging.getLogger(__name__)


class CycleCancelled(Exception):
    """Raised inside a cycle when shutdown is observed at a phase boundary."""


class TableSyncLoop:
    """Runs sync cycles for one table and owns its committed state.

    Args:
        registration: Table settings resolved from configuration.
        database: Database adapter (shared, pooled).
        dispatcher: Batch dispatcher wrapping the index client.
        state_repository: Optional store for committed state across restarts.
        clock: Monotonic clock used for durations.
    """

    def __init__(
        self,
        registration: TableRegistration,
        database: DatabaseAdapter,
        dispatcher: BatchDispatcher,
        state_repository: SyncStateRepository | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registration = registration
        self.database = database
        self.dispatcher = dispatcher
        self.state_repository = state_repository
        self._clock = clock
        self._in_flight = threading.Lock()
        self.phase = CyclePhase.IDLE
        self.state = self._load_state()

    @property
    def table(self) -> str:
        return self.registration.table

    @property
    def in_flight(self) -> bool:
        return self._in_flight.locked()

    def _load_state(self) -> TableSyncState:
        if self.state_repository is None:
            return TableSyncState()
        try:
            state = self.state_repository.load(self.table)
        except Exception as e:
            logger.warning(
                "Could not load saved state for '%s', starting from scratch: %s",
                self.table,
                e,
            )
            return TableSyncState()
        if state is None:
            return TableSyncState()
        logger.info(
            "Resuming '%s' from saved state (%d rows)", self.table, len(state.fingerprints)
        )
        return state

    def run_cycle(self, shutdown: threading.Event | None = None) -> CycleSummary:
        """Run one fetch, diff, dispatch and commit pass.

        Args:
            shutdown: Checked at each phase boundary before dispatching.

        Returns:
            Summary of the cycle. Never raises for collaborator failures.
        """
        if not self._in_flight.acquire(blocking=False):
            logger.warning("Previous cycle for '%s' still running, skipping tick", self.table)
            return self.skipped_summary()
        try:
            return self._run_cycle(shutdown or threading.Event())
        finally:
            self.phase = CyclePhase.IDLE
            self._in_flight.release()

    def _run_cycle(self, shutdown: threading.Event) -> CycleSummary:
        start = self._clock()
        reg = self.registration
        change: SchemaChange | None = None
        result: DispatchResult | None = None

        def checkpoint() -> None:
            if shutdown.is_set():
                raise CycleCancelled()

        try:
            checkpoint()
            self.phase = CyclePhase.FETCHING
            snapshot = self.database.get_schema(reg.table)
            if reg.primary_key:
                snapshot = snapshot.with_primary_key((reg.primary_key,))
            rows = self.database.get_rows(reg.table)

            checkpoint()
            self.phase = CyclePhase.DIFFING
            change = classify(self.state.snapshot, snapshot)
            hasher = RowHasher(snapshot, reg.fields_to_index, reg.max_text_length)
            current, skipped = hasher.fingerprint_rows(rows)
            previous = {} if change.requires_full_reindex else self.state.fingerprints
            diffset = diff(previous, current)

            checkpoint()
            self.phase = CyclePhase.DISPATCHING
            configured = self._configure_index(change, snapshot, hasher.key_column)
            if not configured.succeeded:
                rejected = configured if configured.status is BatchStatus.REJECTED else None
                return self._failure(start, change, configured.error, rejected)
            if change.requires_full_reindex:
                self._forget_saved_state()
            result = self.dispatcher.dispatch(
                reg.index_name, diffset, reg.batch_size, reg.max_concurrency
            )
            if not result.succeeded:
                rejected = result.permanent_failure
                error = (
                    rejected.error
                    if rejected
                    else f"{result.batches_failed} batch(es) failed after retries"
                )
                summary = self._failure(start, change, error, rejected)
                summary.failed_keys = result.failed_keys
                self._apply_counts(summary, result)
                return summary

            self.phase = CyclePhase.COMMITTING
            self._commit(
                TableSyncState(
                    snapshot=snapshot,
                    fingerprints=committed_fingerprints(current),
                    schema_version=snapshot.version,
                    last_synced_at=datetime.now(UTC),
                )
            )
        except CycleCancelled:
            logger.info("Cycle for '%s' cancelled by shutdown", reg.table)
            return self._summary(CycleOutcome.CANCELLED, schema_change=change)
        except Exception as e:
            self.phase = CyclePhase.FAILED
            error_type = classify_sync_error(e)
            logger.error("Cycle for '%s' failed (%s): %s", reg.table, error_type.value, e)
            return self._summary(
                CycleOutcome.FAILED,
                schema_change=change,
                duration=self._clock() - start,
                error=str(e),
                error_type=error_type,
            )

        summary = self._summary(
            CycleOutcome.SUCCEEDED,
            schema_change=change,
            duration=self._clock() - start,
            unchanged=diffset.unchanged,
            skipped_rows=skipped,
        )
        self._apply_counts(summary, result)
        logger.info(
            "Synced '%s' -> '%s': %d created, %d updated, %d deleted, %d unchanged (%.2fs)",
            reg.table,
            reg.index_name,
            summary.created,
            summary.updated,
            summary.deleted,
            summary.unchanged,
            summary.duration_seconds,
        )
        return summary

    def _configure_index(
        self, change: SchemaChange, snapshot: SchemaSnapshot, key_column: str
    ) -> BatchOutcome:
        """Apply index configuration implied by the schema change.

        Runs before any row batch, so documents never carry fields the index
        has not been told about and removed fields stop being searchable first.
        """
        index_name = self.registration.index_name
        fields = self._document_fields(snapshot, key_column)
        index = self.dispatcher.index

        if change.requires_full_reindex:
            logger.info("Full reindex of '%s' (%s)", index_name, change.kind.value)

            def call() -> None:
                index.recreate_index(index_name, key_column)
                index.configure_index(index_name, fields, (), key_column)

        elif change.initial:

            def call() -> None:
                index.configure_index(index_name, fields, (), key_column)

        elif change.requires_field_update:
            added = [name for name in fields if name in change.added]
            removed = sorted(
                name for name in change.removed if self._selected(name)
            )
            if not added and not removed:
                return self._no_configuration()

            def call() -> None:
                index.configure_index(index_name, added, removed, key_column)

        else:
            return self._no_configuration()

        return self.dispatcher.run_with_retry(
            None, (), call, f"configuration of '{index_name}'"
        )

    def _selected(self, column: str) -> bool:
        fields = self.registration.fields_to_index
        return not fields or column in fields

    def _document_fields(self, snapshot: SchemaSnapshot, key_column: str) -> list[str]:
        names = [key_column]
        for column in snapshot.column_names:
            if column != key_column and self._selected(column):
                names.append(column)
        return names

    @staticmethod
    def _no_configuration() -> BatchOutcome:
        return BatchOutcome(kind=None, keys=(), status=BatchStatus.SUCCEEDED)

    def _forget_saved_state(self) -> None:
        # The recreated index is empty; saved fingerprints no longer describe it
        if self.state_repository is None:
            return
        try:
            self.state_repository.delete(self.table)
        except Exception:
            logger.exception("Failed to clear saved sync state for '%s'", self.table)

    def _commit(self, state: TableSyncState) -> None:
        if self.state_repository is not None:
            try:
                self.state_repository.save(self.table, state)
            except Exception:
                logger.exception("Failed to persist sync state for '%s'", self.table)
        self.state = state

    def _failure(
        self,
        start: float,
        change: SchemaChange | None,
        error: str | None,
        rejected: BatchOutcome | None,
    ) -> CycleSummary:
        self.phase = CyclePhase.FAILED
        error_type = SyncErrorType.PERMANENT if rejected else SyncErrorType.TRANSIENT
        logger.error(
            "Cycle for '%s' failed (%s): %s", self.table, error_type.value, error
        )
        return self._summary(
            CycleOutcome.FAILED,
            schema_change=change,
            duration=self._clock() - start,
            error=error,
            error_type=error_type,
        )

    def skipped_summary(self) -> CycleSummary:
        return self._summary(CycleOutcome.SKIPPED)

    @staticmethod
    def _apply_counts(summary: CycleSummary, result: DispatchResult | None) -> None:
        if result is None:
            return
        summary.created = result.counts[OperationKind.CREATE].succeeded
        summary.updated = result.counts[OperationKind.UPDATE].succeeded
        summary.deleted = result.counts[OperationKind.DELETE].succeeded

    def _summary(
        self,
        outcome: CycleOutcome,
        schema_change: SchemaChange | None = None,
        duration: float = 0.0,
        error: str | None = None,
        error_type: SyncErrorType = SyncErrorType.NONE,
        unchanged: int = 0,
        skipped_rows: int = 0,
    ) -> CycleSummary:
        summary = CycleSummary(
            table=self.table,
            index_name=self.registration.index_name,
            outcome=outcome,
            unchanged=unchanged,
            skipped_rows=skipped_rows,
            duration_seconds=duration,
            error=error,
            error_type=error_type,
        )
        if schema_change is not None:
            summary.schema_change = schema_change.kind
            summary.full_reindex = schema_change.requires_full_reindex
        return summary


class PollScheduler:
    """Drives one recurring cycle per registered table.

    Args:
        database: Database adapter shared by all tables.
        dispatcher: Batch dispatcher shared by all tables.
        state_repository: Optional store for committed state.
        reporter: Optional receiver of every cycle summary.
        clock: Monotonic clock used for tick scheduling.
    """

    def __init__(
        self,
        database: DatabaseAdapter,
        dispatcher: BatchDispatcher,
        state_repository: SyncStateRepository | None = None,
        reporter: CycleReporter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.database = database
        self.dispatcher = dispatcher
        self.state_repository = state_repository
        self.reporter = reporter
        self._clock = clock
        self._loops: dict[str, TableSyncLoop] = {}
        self._finished: dict[str, threading.Event] = {}
        self._tickers: list[threading.Thread] = []
        self._executor: ThreadPoolExecutor | None = None
        self._shutdown = threading.Event()

    @property
    def loops(self) -> dict[str, TableSyncLoop]:
        return dict(self._loops)

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    def register_table(self, registration: TableRegistration) -> TableSyncLoop:
        """Register a table for polling.

        Args:
            registration: Poll interval, batch size and concurrency for the table.

        Returns:
            The table's sync loop.

        Raises:
            ValueError: If the table is already registered or the scheduler
                is running.
        """
        if registration.table in self._loops:
            raise ValueError(f"Table '{registration.table}' is already registered")
        if self._executor is not None:
            raise ValueError("Cannot register tables while the scheduler is running")
        loop = TableSyncLoop(
            registration,
            self.database,
            self.dispatcher,
            state_repository=self.state_repository,
            clock=self._clock,
        )
        self._loops[registration.table] = loop
        self._finished[registration.table] = threading.Event()
        logger.debug(
            "Registered '%s' -> '%s' (every %.1fs, batch %d, concurrency %d)",
            registration.table,
            registration.index_name,
            registration.poll_interval_seconds,
            registration.batch_size,
            registration.max_concurrency,
        )
        return loop

    def _report(self, summary: CycleSummary) -> None:
        if self.reporter is None:
            return
        try:
            self.reporter.on_cycle_complete(summary)
        except Exception:
            logger.exception("Cycle reporter failed for '%s'", summary.table)

    def _run_and_report(self, loop: TableSyncLoop) -> CycleSummary:
        summary = loop.run_cycle(self._shutdown)
        self._report(summary)
        if summary.succeeded and not loop.registration.watch_for_changes:
            logger.info("'%s' does not watch for changes, stopping its loop", loop.table)
            self._finished[loop.table].set()
        return summary

    def tick(self, table: str) -> bool:
        """Start a cycle for a table unless one is already in flight.

        Returns:
            True if a cycle was started, False if the tick was skipped.
        """
        loop = self._loops[table]
        if self._executor is None or self._shutdown.is_set():
            return False
        if loop.in_flight:
            logger.warning("Previous cycle for '%s' still running, skipping tick", table)
            self._report(loop.skipped_summary())
            return False
        self._executor.submit(self._run_and_report, loop)
        return True

    def _ticker(self, loop: TableSyncLoop) -> None:
        interval = loop.registration.poll_interval_seconds
        finished = self._finished[loop.table]
        next_tick = self._clock()
        while not self._shutdown.is_set() and not finished.is_set():
            self.tick(loop.table)
            next_tick += interval
            # Fixed-rate schedule; a late tick does not shift the following ones
            while next_tick <= self._clock():
                next_tick += interval
            if self._shutdown.wait(next_tick - self._clock()):
                break

    def start(self) -> None:
        """Start one ticker per table. The first tick fires immediately."""
        if self._executor is not None:
            raise RuntimeError("Scheduler already started")
        if not self._loops:
            raise ValueError("No tables registered")
        self._shutdown.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=len(self._loops), thread_name_prefix="sqlsync-cycle"
        )
        for loop in self._loops.values():
            thread = threading.Thread(
                target=self._ticker,
                args=(loop,),
                name=f"sqlsync-ticker-{loop.table}",
                daemon=True,
            )
            thread.start()
            self._tickers.append(thread)
        logger.info("Polling %d table(s)", len(self._loops))

    def wait(self, timeout: float | None = None) -> bool:
        """Block until every table loop finished or shutdown was requested.

        Returns:
            True if all loops finished, False on shutdown or timeout.
        """
        deadline = None if timeout is None else self._clock() + timeout
        while not self._shutdown.is_set():
            if all(event.is_set() for event in self._finished.values()):
                return True
            remaining = 0.5 if deadline is None else min(0.5, deadline - self._clock())
            if remaining <= 0:
                return False
            self._shutdown.wait(remaining)
        return False

    def stop(self) -> None:
        """Stop ticking and wait for in-flight cycles to finish."""
        logger.info("Shutting down, waiting for in-flight cycles")
        self._shutdown.set()
        for thread in self._tickers:
            thread.join()
        self._tickers.clear()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def run_once(self, tables: Iterable[str] | None = None) -> list[CycleSummary]:
        """Run exactly one cycle for each selected table, concurrently.

        Args:
            tables: Table names to run (None = all registered tables).

        Returns:
            Summaries in registration order.

        Raises:
            KeyError: If a named table is not registered.
        """
        names = list(self._loops) if tables is None else list(tables)
        loops = [self._loops[name] for name in names]
        if not loops:
            return []
        with ThreadPoolExecutor(
            max_workers=len(loops), thread_name_prefix="sqlsync-cycle"
        ) as executor:
            futures = [executor.submit(self._run_and_report, loop) for loop in loops]
            return [future.result() for future in futures]
