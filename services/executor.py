"""
Bounded-parallel execution of batch workers.

Batches run in sequential groups of at most K concurrent workers. Each group
is fully joined before the next one starts, which is also the only point
where cancellation is observed and progress is published.
"""
import asyncio
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from core.assembler import assemble, by_index, merge_failed_batches
from core.exceptions import ImportPaused
from core.logger import setup_logger
from core.schema import BatchProgress, FailedBatch, ResumeState, RowRange

logger = setup_logger(__name__)


@dataclass
class BatchOutcome:
    """Result of one worker call for one batch."""
    batch_index: int
    items: List[Any] = field(default_factory=list)
    success: bool = True
    retry_count: int = 0
    was_retried: bool = False
    error: Optional[str] = None
    row_range: Optional[RowRange] = None


class BatchWorker(Protocol):
    async def process(self, batch: Any, total_batches: int) -> BatchOutcome: ...

    def row_range(self, batch: Any) -> RowRange: ...


@dataclass
class ExecutionResult:
    items: List[Any]
    failed_batches: List[FailedBatch]
    total_batches: int = 0
    retried_batches: int = 0

    @property
    def successful_batches(self) -> int:
        return self.total_batches - len(self.failed_batches)


class CancellationToken:
    """Cooperative pause flag, safe to set from another thread."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


class ProgressTracker:
    """
    Sole owner of the run's BatchProgress.

    The snapshot is replaced as a whole after each group, so readers never see
    a partially applied group. Observers can subscribe with ``on_progress``.
    """

    def __init__(
        self,
        on_progress: Optional[Callable[[BatchProgress], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._on_progress = on_progress
        self._clock = clock
        self._snapshot = BatchProgress()
        self._started_at = 0.0
        self._start_completed = 0

    @property
    def snapshot(self) -> BatchProgress:
        return self._snapshot

    def start(
        self,
        total: int,
        completed: int = 0,
        failed: int = 0,
        retried: int = 0,
        expected: int = 0,
        processed: int = 0,
    ) -> None:
        """Begin a run, seeding counters with work done before a resume."""
        self._started_at = self._clock()
        self._start_completed = completed
        self._publish(BatchProgress(
            completed=completed,
            total=total,
            successful_batches=max(completed - failed, 0),
            failed_batches=failed,
            retried_batches=retried,
            processed_transactions=processed,
            expected_transactions=expected,
        ))

    def record_group(self, outcomes: Sequence[BatchOutcome]) -> None:
        current = self._snapshot
        completed = current.completed + len(outcomes)
        done_this_run = completed - self._start_completed
        remaining = max(current.total - completed, 0)

        elapsed = self._clock() - self._started_at
        estimated = (elapsed / done_this_run) * remaining if done_this_run else None

        self._publish(BatchProgress(
            completed=completed,
            total=current.total,
            successful_batches=current.successful_batches + sum(1 for o in outcomes if o.success),
            failed_batches=current.failed_batches + sum(1 for o in outcomes if not o.success),
            retried_batches=current.retried_batches + sum(1 for o in outcomes if o.was_retried),
            processed_transactions=current.processed_transactions + sum(len(o.items) for o in outcomes),
            expected_transactions=current.expected_transactions,
            estimated_time_left=estimated,
            current_retry_attempt=max((o.retry_count for o in outcomes), default=0),
        ))

    def _publish(self, snapshot: BatchProgress) -> None:
        self._snapshot = snapshot
        if self._on_progress is not None:
            try:
                self._on_progress(snapshot)
            except Exception as e:
                logger.warning(f"Progress observer failed: {e}")


class ParallelBatchExecutor:
    """Runs a worker over batches, K at a time, with cooperative pausing."""

    def __init__(
        self,
        worker: BatchWorker,
        concurrency: int = 20,
        cancel_token: Optional[CancellationToken] = None,
        progress: Optional[ProgressTracker] = None,
        sort_key: Callable[[Any], int] = by_index,
        label: str = "batch",
    ):
        """
        Args:
            worker: Object with an async ``process(batch, total_batches)``
            concurrency: Maximum batches in flight (K)
            cancel_token: Polled before every group; None disables pausing
            progress: Progress owner; a private one is created if omitted
            sort_key: Global ordering key of produced items
            label: Name used in log lines
        """
        if concurrency < 1:
            raise ValueError("concurrency must be a positive integer")
        self.worker = worker
        self.concurrency = concurrency
        self.cancel_token = cancel_token
        self.progress = progress or ProgressTracker()
        self.sort_key = sort_key
        self.label = label

    async def run(
        self,
        batches: Sequence[Any],
        start_index: int = 0,
        prior_items: Optional[Sequence[Any]] = None,
        prior_failed_batches: Optional[Sequence[FailedBatch]] = None,
        prior_retried_batches: int = 0,
        expected_items: int = 0,
    ) -> ExecutionResult:
        """
        Process ``batches[start_index:]`` in groups and merge with prior results.

        Args:
            batches: All batches of the run
            start_index: First batch still to process
            prior_items: Items already collected for batches before start_index
            prior_failed_batches: Failures already recorded before start_index
            prior_retried_batches: Batches retried before start_index
            expected_items: Expected item count, for progress reporting only

        Returns:
            ExecutionResult with items sorted by the global key

        Raises:
            ImportPaused: If the cancellation token is set at a group boundary
        """
        if not 0 <= start_index <= len(batches):
            raise ValueError(f"start_index {start_index} outside 0..{len(batches)}")

        total = len(batches)
        prior = list(prior_items or [])
        slots: Dict[int, List[Any]] = {}
        failed: List[FailedBatch] = list(prior_failed_batches or [])

        self.progress.start(
            total=total,
            completed=start_index,
            failed=len(failed),
            retried=prior_retried_batches,
            expected=expected_items,
            processed=len(prior),
        )
        logger.info(
            f"Running {total - start_index}/{total} {self.label}es "
            f"({self.concurrency} in parallel, starting at {start_index})"
        )

        for group_start in range(start_index, total, self.concurrency):
            if self.cancel_token is not None and self.cancel_token.is_cancelled:
                items, failed_sorted = assemble(slots, failed, prior, self.sort_key)
                state = ResumeState(
                    batches=list(batches),
                    next_index=group_start,
                    collected_transactions=items,
                    failed_batches=failed_sorted,
                    retried_batches=self.progress.snapshot.retried_batches,
                )
                logger.info(f"Paused before {self.label} {group_start + 1}/{total}")
                raise ImportPaused(state)

            group = batches[group_start:group_start + self.concurrency]
            outcomes = await self._run_group(group, total)

            for outcome in outcomes:
                if outcome.success:
                    slots[outcome.batch_index] = outcome.items
                else:
                    failed.append(FailedBatch(
                        batch_index=outcome.batch_index,
                        row_range=outcome.row_range,
                        error=outcome.error or "unknown error",
                        retry_count=outcome.retry_count,
                    ))

            self.progress.record_group(outcomes)
            snapshot = self.progress.snapshot
            logger.info(
                f"Progress: {snapshot.completed}/{snapshot.total} {self.label}es, "
                f"{snapshot.processed_transactions} items, {snapshot.failed_batches} failed"
            )

        items, failed_sorted = assemble(slots, merge_failed_batches(failed), prior, self.sort_key)
        return ExecutionResult(
            items=items,
            failed_batches=failed_sorted,
            total_batches=total,
            retried_batches=self.progress.snapshot.retried_batches,
        )

    async def _run_group(self, group: Sequence[Any], total: int) -> List[BatchOutcome]:
        """Dispatch a whole group and wait for every member."""
        results = await asyncio.gather(
            *(self.worker.process(batch, total) for batch in group),
            return_exceptions=True,
        )

        outcomes = []
        for batch, result in zip(group, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error(f"{self.label} {batch.batch_index + 1} crashed: {result}")
                outcomes.append(BatchOutcome(
                    batch_index=batch.batch_index,
                    success=False,
                    error=str(result),
                    row_range=self.worker.row_range(batch),
                ))
            else:
                outcomes.append(result)
        return outcomes
