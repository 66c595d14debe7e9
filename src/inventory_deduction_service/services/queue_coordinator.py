"""Retry queue coordinator for deduction jobs.

Payment confirmations only ever enqueue a job. A single periodic sweep claims
pending (and abandoned) jobs and hands them to the executor, and it alone
decides whether a failure is retried, given up on, or sent to a human.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from inventory_deduction_service.errors import (
    DeductionError,
    QueueError,
    RetryExhaustedError,
    StorageUnavailableError,
)
from inventory_deduction_service.models.job_models import (
    DeductionJob,
    DeductionJobStatus,
    QueueStatus,
)
from inventory_deduction_service.models.order_models import OrderLine, serialize_order_lines
from inventory_deduction_service.notifiers.base_notifier import Notifier
from inventory_deduction_service.observability import traced
from inventory_deduction_service.observability.metrics import (
    record_enqueue,
    record_job_exhausted,
    record_job_failure,
    record_sweep_duration,
)
from inventory_deduction_service.repositories.job_repository import (
    ABANDONED_CLAIM_ERROR,
    DeductionJobRepository,
)
from inventory_deduction_service.services.deduction_executor import DeductionExecutor

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Counts from one sweep cycle.

    Attributes:
        processed: Jobs claimed this sweep
        completed: Jobs that finished successfully
        retried: Jobs sent back to pending after a failure
        exhausted: Jobs sent to manual review
        skipped: Candidates another worker claimed first, or whose claim was
            lost before the outcome could be written
    """

    processed: int = 0
    completed: int = 0
    retried: int = 0
    exhausted: int = 0
    skipped: int = 0


class QueueCoordinator:
    """Durable deduction queue with a single periodic sweep.

    Construct one per process; ``start()`` runs the sweep loop as an asyncio
    task and ``run_sweep()`` runs exactly one cycle for scheduled invocations
    and tests.
    """

    def __init__(
        self,
        job_repository: DeductionJobRepository,
        executor: DeductionExecutor,
        notifier: Notifier,
        max_attempts: int = 3,
        sweep_interval_seconds: float = 10,
        stale_lock_seconds: float = 300,
        batch_size: int = 25,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        """Initialize the coordinator.

        Args:
            job_repository: Durable job table
            executor: Runs a single order's deduction
            notifier: Receives manual-review signals for exhausted jobs
            max_attempts: Failed attempts before a job is exhausted
            sweep_interval_seconds: Pause between sweep cycles
            stale_lock_seconds: Age after which a processing claim is considered abandoned
            batch_size: Maximum jobs claimed per sweep
            clock: Source of job timestamps
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.job_repository = job_repository
        self.executor = executor
        self.notifier = notifier
        self.max_attempts = max_attempts
        self.sweep_interval_seconds = sweep_interval_seconds
        self.stale_lock_seconds = stale_lock_seconds
        self.batch_size = batch_size
        self.clock = clock

        self._sweep_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        """Whether the background sweep loop is active."""
        return self._task is not None and not self._task.done()

    async def enqueue(self, order_id: str, order_lines: Sequence[OrderLine | dict[str, Any]]) -> bool:
        """Queue a deduction for a paid order.

        Safe to call any number of times for the same order: while a job that
        is not exhausted exists, further calls do nothing.

        Args:
            order_id: Order identifier
            order_lines: Order lines, validated or raw (validated at execution)

        Returns:
            bool: True if a job was created, False if one already existed

        Raises:
            StorageUnavailableError: If the job table could not be written
        """
        now = self.clock()
        job = DeductionJob(
            order_id=order_id,
            payload=serialize_order_lines(order_lines),
            status=DeductionJobStatus.PENDING,
            created_at=now,
            updated_at=now,
        )

        created = await asyncio.to_thread(self.job_repository.create_job, job)
        record_enqueue(created)

        if created:
            logger.info(f"Queued deduction for order {order_id}")
        else:
            logger.info(f"Deduction for order {order_id} already queued, enqueue ignored")

        return created

    @traced("deduction.sweep")
    async def run_sweep(self) -> SweepResult:
        """Run one sweep cycle over pending and abandoned jobs.

        Candidates are selected once at the start, so a job released for retry
        during this cycle waits for the next one.

        Returns:
            SweepResult with per-outcome counts

        Raises:
            StorageUnavailableError: If candidate jobs could not be listed
        """
        async with self._sweep_lock:
            started = time.monotonic()
            result = SweepResult()

            stale_before = self.clock() - timedelta(seconds=self.stale_lock_seconds)
            candidates = await self._select_candidates(stale_before)

            for job in candidates:
                try:
                    claimed = await asyncio.to_thread(
                        self.job_repository.claim_job, job.order_id, self.clock(), stale_before
                    )
                except StorageUnavailableError as e:
                    logger.error(f"Could not claim job for order {job.order_id}: {e}")
                    continue

                if claimed is None:
                    result.skipped += 1
                    continue

                result.processed += 1
                if claimed.attempts >= self.max_attempts:
                    await self._exhaust_abandoned(claimed, result)
                else:
                    await self._process(claimed, result)

            record_sweep_duration(time.monotonic() - started, result.processed)

            if result.processed:
                logger.info(
                    f"Sweep processed {result.processed} job(s): {result.completed} completed, "
                    f"{result.retried} retried, {result.exhausted} exhausted"
                )

            return result

    async def run_forever(self) -> None:
        """Sweep at a fixed interval until ``stop()`` is called.

        A failing sweep is logged and the loop carries on; the stop signal is
        only observed between sweeps so an in-flight deduction always finishes.
        """
        while not self._stop_event.is_set():
            try:
                await self.run_sweep()
            except Exception as e:
                logger.error(f"Deduction sweep failed: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.sweep_interval_seconds)
            except TimeoutError:
                pass

    def start(self) -> None:
        """Start the background sweep loop on the running event loop."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self.run_forever())
        logger.info(f"Deduction queue worker started, sweeping every {self.sweep_interval_seconds}s")

    async def stop(self) -> None:
        """Stop the sweep loop after the current sweep finishes."""
        if self._task is None:
            return

        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("Deduction queue worker stopped")

    async def get_job(self, order_id: str) -> DeductionJob | None:
        """Get the job for an order.

        Args:
            order_id: Order identifier

        Returns:
            DeductionJob if found, None otherwise
        """
        return await asyncio.to_thread(self.job_repository.get_job, order_id)

    async def list_jobs(
        self, status: DeductionJobStatus = DeductionJobStatus.EXHAUSTED, limit: int = 50
    ) -> list[DeductionJob]:
        """List jobs in a status, newest first (the manual-review view by default).

        Args:
            status: Status to list
            limit: Maximum number of jobs

        Returns:
            list: Matching jobs
        """
        return await asyncio.to_thread(
            self.job_repository.list_jobs_by_status, status, limit=limit, newest_first=True
        )

    async def get_queue_status(self, recent_limit: int = 10) -> QueueStatus:
        """Summarize the queue for the admin dashboard.

        Args:
            recent_limit: Number of recent unfinished jobs to include

        Returns:
            QueueStatus with per-status counts and recent jobs needing attention
        """
        counts = await asyncio.to_thread(self.job_repository.count_by_status)

        recent: list[DeductionJob] = []
        for status in (
            DeductionJobStatus.EXHAUSTED,
            DeductionJobStatus.PROCESSING,
            DeductionJobStatus.PENDING,
        ):
            recent.extend(
                await asyncio.to_thread(
                    self.job_repository.list_jobs_by_status,
                    status,
                    limit=recent_limit,
                    newest_first=True,
                )
            )

        recent.sort(key=lambda job: job.updated_at or job.created_at, reverse=True)

        return QueueStatus(counts=counts, recent_jobs=recent[:recent_limit], is_running=self.is_running)

    async def retry_job(self, order_id: str) -> DeductionJob | None:
        """Give an exhausted job a fresh retry budget (manual staff retry).

        Args:
            order_id: Order identifier

        Returns:
            DeductionJob after the reset, or None if no job exists

        Raises:
            QueueError: If the job is not exhausted
        """
        job = await asyncio.to_thread(self.job_repository.get_job, order_id)
        if job is None:
            return None

        if job.status != DeductionJobStatus.EXHAUSTED or not await asyncio.to_thread(
            self.job_repository.reset_job, order_id, self.clock()
        ):
            raise QueueError(
                f"Job for order {order_id} is {job.status.value}, only exhausted jobs can be retried",
                order_id=order_id,
                details={"status": job.status.value},
            )

        logger.info(f"Manual retry scheduled for order {order_id}")
        return await asyncio.to_thread(self.job_repository.get_job, order_id)

    async def cleanup_completed_jobs(self, days_to_keep: int = 7) -> int:
        """Delete completed jobs older than the retention window.

        Ledger rows stay behind as the evidence that the order was deducted.

        Args:
            days_to_keep: Retention window in days

        Returns:
            int: Number of jobs deleted
        """
        cutoff = self.clock() - timedelta(days=days_to_keep)
        deleted = await asyncio.to_thread(self.job_repository.delete_completed_before, cutoff)
        logger.info(f"Cleaned up {deleted} completed deduction job(s) older than {days_to_keep} days")
        return deleted

    async def _select_candidates(self, stale_before: datetime) -> list[DeductionJob]:
        candidates = await asyncio.to_thread(
            self.job_repository.list_jobs_by_status, DeductionJobStatus.PENDING, limit=self.batch_size
        )

        remaining = self.batch_size - len(candidates)
        if remaining > 0:
            processing = await asyncio.to_thread(
                self.job_repository.list_jobs_by_status, DeductionJobStatus.PROCESSING
            )
            stale = [job for job in processing if job.is_stale(stale_before)]
            for job in stale[:remaining]:
                logger.warning(f"Recovering abandoned claim on order {job.order_id}")
                candidates.append(job)

        return candidates

    async def _process(self, job: DeductionJob, result: SweepResult) -> None:
        try:
            await self.executor.execute(job.order_id, job.payload)
        except DeductionError as e:
            await self._record_failure(job, e, result)
            return
        except Exception as e:
            logger.exception(f"Unexpected error deducting order {job.order_id}")
            await self._record_failure(
                job, DeductionError(f"Unexpected error: {e}", order_id=job.order_id), result
            )
            return

        try:
            completed = await asyncio.to_thread(
                self.job_repository.complete_job, job.order_id, self.clock()
            )
        except StorageUnavailableError as e:
            # Stale-lock recovery re-runs it; the guard turns that into a no-op.
            logger.error(f"Could not mark order {job.order_id} completed: {e}")
            return

        if not completed:
            logger.warning(f"Order {job.order_id} deducted but its claim was lost, completion skipped")
            result.skipped += 1
            return

        result.completed += 1

    async def _record_failure(
        self, job: DeductionJob, error: DeductionError, result: SweepResult
    ) -> None:
        attempts = job.attempts + 1
        last_error = f"{type(error).__name__}: {error.message}"
        record_job_failure(type(error).__name__, error.retryable)

        if error.retryable and attempts < self.max_attempts:
            logger.warning(
                f"Deduction for order {job.order_id} failed (attempt {attempts}/"
                f"{self.max_attempts}), retrying next sweep: {last_error}"
            )
            try:
                released = await asyncio.to_thread(
                    self.job_repository.release_for_retry,
                    job.order_id,
                    attempts,
                    last_error,
                    self.clock(),
                )
            except StorageUnavailableError as e:
                logger.error(f"Could not record failure for order {job.order_id}: {e}")
                return

            if released:
                result.retried += 1
            else:
                result.skipped += 1
            return

        signal: DeductionError = error
        if error.retryable:
            signal = RetryExhaustedError(job.order_id, attempts, last_error)

        await self._exhaust(job, attempts, last_error, signal, result)

    async def _exhaust_abandoned(self, job: DeductionJob, result: SweepResult) -> None:
        last_error = job.last_error or ABANDONED_CLAIM_ERROR
        record_job_failure("AbandonedClaim", True)
        await self._exhaust(
            job,
            job.attempts,
            last_error,
            RetryExhaustedError(job.order_id, job.attempts, last_error),
            result,
        )

    async def _exhaust(
        self,
        job: DeductionJob,
        attempts: int,
        last_error: str,
        signal: DeductionError,
        result: SweepResult,
    ) -> None:
        try:
            exhausted = await asyncio.to_thread(
                self.job_repository.mark_exhausted, job.order_id, attempts, last_error, self.clock()
            )
        except StorageUnavailableError as e:
            logger.error(f"Could not record failure for order {job.order_id}: {e}")
            return

        if not exhausted:
            result.skipped += 1
            return

        result.exhausted += 1
        record_job_exhausted(last_error.partition(":")[0])

        logger.error(f"Deduction for order {job.order_id} exhausted: {signal.message}")

        exhausted_job = job.model_copy(
            update={
                "status": DeductionJobStatus.EXHAUSTED,
                "attempts": attempts,
                "last_error": last_error,
                "locked_at": None,
            }
        )
        try:
            delivered = await self.notifier.notify_manual_review(exhausted_job, signal)
        except Exception as e:
            logger.error(f"Notifier {self.notifier.channel_name} raised on manual review: {e}")
            delivered = False

        if not delivered:
            logger.error(f"Manual-review notification for order {job.order_id} was not delivered")
