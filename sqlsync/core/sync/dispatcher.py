"""Batched, concurrent delivery of a DiffSet to the search index.

Each diff category is cut into batches of at most batch_size entries. A fixed
pool of worker threads drains a shared batch queue, so at most max_concurrency
index calls are in flight at once. Every worker pauses for the configured
batch delay between its successive batches.

Batch calls are retried on transient failure with exponential backoff and
jitter, up to a bounded attempt count. A batch that exhausts its attempts is
FAILED without stopping its siblings. A permanent failure is not retried; it
marks the batch REJECTED and every batch not yet started is SKIPPED.
"""

import logging
import queue
import random
import threading
import time
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TypeVar

from sqlsync.core.sync.errors import classify_sync_error
from sqlsync.domain.config import SyncConfig
from sqlsync.domain.entities import (
    BatchOutcome,
    BatchStatus,
    DiffSet,
    DispatchResult,
    FingerprintedRow,
    NormalizedKey,
    OperationKind,
    SyncErrorType,
)
from sqlsync.domain.exceptions import (
    IndexServiceError,
    PermanentIndexError,
    TransientIndexError,
)
from sqlsync.ports.search_index import SearchIndex

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry and throttle settings for index calls.

    Attributes:
        max_attempts: Attempts per call, including the first
        base_backoff_seconds: Delay before the first retry
        max_backoff_seconds: Upper bound of the exponential delay
        jitter: Random extra delay as a fraction (0-1) of the computed delay
        batch_delay_seconds: Pause between successive batches on one worker
    """

    max_attempts: int = 5
    base_backoff_seconds: float = 0.5
    max_backoff_seconds: float = 30.0
    jitter: float = 0.5
    batch_delay_seconds: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")

    @classmethod
    def from_config(cls, config: SyncConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_backoff_seconds=config.base_backoff_seconds,
            max_backoff_seconds=config.max_backoff_seconds,
            jitter=config.backoff_jitter,
            batch_delay_seconds=config.batch_delay_seconds,
        )

    def backoff(self, attempt: int, rng: random.Random) -> float:
        """Delay before the retry that follows the given (1-based) attempt."""
        delay = min(
            self.max_backoff_seconds,
            self.base_backoff_seconds * (2 ** (attempt - 1)),
        )
        return delay + rng.uniform(0, delay * self.jitter)


@dataclass(frozen=True)
class Batch:
    """One unit of work for an index call."""

    kind: OperationKind
    keys: tuple[NormalizedKey, ...]
    call: Callable[[], None]


def chunked(items: Sequence[T], size: int) -> Iterator[tuple[T, ...]]:
    """Yield consecutive slices of at most size items."""
    if size <= 0:
        raise ValueError(f"batch size must be positive, got {size}")
    for start in range(0, len(items), size):
        yield tuple(items[start : start + size])


class BatchDispatcher:
    """Pushes DiffSets to a SearchIndex under a concurrency limit.

    Args:
        index: Index client, safe for concurrent use.
        policy: Retry and throttle settings.
        sleep: Sleep function (injected by tests).
        rng: Random source for backoff jitter (injected by tests).
    """

    def __init__(
        self,
        index: SearchIndex,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.index = index
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng or random.Random()

    def run_with_retry(
        self,
        kind: OperationKind | None,
        keys: tuple[NormalizedKey, ...],
        call: Callable[[], None],
        label: str,
    ) -> BatchOutcome:
        """Run one index call with bounded retries.

        Args:
            kind: Operation kind of the batch, None for configuration calls.
            keys: Keys carried by the call (empty for configuration calls).
            call: The index call to make.
            label: Short description for log messages.

        Returns:
            SUCCEEDED, FAILED (transient, attempts exhausted) or REJECTED
            (permanent) outcome. Never raises for index failures.
        """
        last_error: Exception | None = None
        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                call()
                if attempt > 1:
                    logger.info("%s succeeded after %d attempts", label, attempt)
                return BatchOutcome(
                    kind=kind, keys=keys, status=BatchStatus.SUCCEEDED, attempts=attempt
                )
            except PermanentIndexError as e:
                logger.error("%s rejected: %s", label, e.message)
                return BatchOutcome(
                    kind=kind,
                    keys=keys,
                    status=BatchStatus.REJECTED,
                    attempts=attempt,
                    error=e.message,
                    status_code=e.status,
                )
            except TransientIndexError as e:
                last_error = e
            except Exception as e:
                if classify_sync_error(e) is not SyncErrorType.TRANSIENT:
                    logger.exception("%s failed with unexpected error", label)
                    return BatchOutcome(
                        kind=kind,
                        keys=keys,
                        status=BatchStatus.REJECTED,
                        attempts=attempt,
                        error=str(e),
                    )
                last_error = e

            if attempt < self.policy.max_attempts:
                delay = self.policy.backoff(attempt, self._rng)
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                    label,
                    attempt,
                    self.policy.max_attempts,
                    last_error,
                    delay,
                )
                self._sleep(delay)

        logger.error(
            "%s failed after %d attempts: %s", label, self.policy.max_attempts, last_error
        )
        status_code = last_error.status if isinstance(last_error, IndexServiceError) else None
        return BatchOutcome(
            kind=kind,
            keys=keys,
            status=BatchStatus.FAILED,
            attempts=self.policy.max_attempts,
            error=str(last_error),
            status_code=status_code,
        )

    def build_batches(
        self, index_name: str, diff: DiffSet, batch_size: int
    ) -> list[Batch]:
        """Partition a DiffSet into upsert and delete batches."""
        batches: list[Batch] = []
        for kind, rows in (
            (OperationKind.CREATE, diff.creations),
            (OperationKind.UPDATE, diff.updates),
        ):
            batches.extend(self._upsert_batches(index_name, kind, rows, batch_size))

        for keys in chunked(sorted(diff.deletions), batch_size):
            ids = [key.document_id for key in keys]
            batches.append(
                Batch(
                    kind=OperationKind.DELETE,
                    keys=keys,
                    call=lambda ids=ids: self.index.delete_batch(index_name, ids),
                )
            )
        return batches

    def _upsert_batches(
        self,
        index_name: str,
        kind: OperationKind,
        rows: Mapping[NormalizedKey, FingerprintedRow],
        batch_size: int,
    ) -> Iterable[Batch]:
        for keys in chunked(sorted(rows), batch_size):
            documents = [rows[key].document for key in keys]
            yield Batch(
                kind=kind,
                keys=keys,
                call=lambda docs=documents: self.index.upsert_batch(index_name, docs),
            )

    def dispatch(
        self,
        index_name: str,
        diff: DiffSet,
        batch_size: int,
        max_concurrency: int,
    ) -> DispatchResult:
        """Deliver a DiffSet to the index.

        Args:
            index_name: Target index.
            diff: Changes to deliver.
            batch_size: Maximum entries per index call.
            max_concurrency: Maximum simultaneous in-flight index calls.

        Returns:
            DispatchResult with per-category counts and every batch outcome.
        """
        if max_concurrency <= 0:
            raise ValueError(f"max_concurrency must be positive, got {max_concurrency}")

        result = DispatchResult()
        batches = self.build_batches(index_name, diff, batch_size)
        if not batches:
            return result

        pending: queue.Queue[Batch] = queue.Queue()
        for batch in batches:
            pending.put(batch)
        abort = threading.Event()

        def worker() -> None:
            first = True
            while True:
                try:
                    batch = pending.get_nowait()
                except queue.Empty:
                    return
                if not first and not abort.is_set():
                    self._sleep(self.policy.batch_delay_seconds)
                first = False
                if abort.is_set():
                    result.record(
                        BatchOutcome(kind=batch.kind, keys=batch.keys, status=BatchStatus.SKIPPED)
                    )
                    continue
                label = f"{batch.kind.value} batch of {len(batch.keys)} for '{index_name}'"
                outcome = self.run_with_retry(batch.kind, batch.keys, batch.call, label)
                result.record(outcome)
                if outcome.status is BatchStatus.REJECTED:
                    abort.set()

        workers = min(max_concurrency, len(batches))
        logger.debug(
            "Dispatching %d batch(es) to '%s' with %d worker(s)",
            len(batches),
            index_name,
            workers,
        )
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix=f"dispatch-{index_name}"
        ) as executor:
            futures = [executor.submit(worker) for _ in range(workers)]
            for future in futures:
                future.result()

        if not result.succeeded:
            logger.warning(
                "%d of %d batch(es) for '%s' did not reach the index",
                result.batches_failed,
                result.batches_total,
                index_name,
            )
        return result
