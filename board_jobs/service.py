"""High-level work queue: enqueue, dispatch, retry and administration."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Union
from uuid import UUID, uuid4

import asyncpg

from board_jobs.collaborators import HandlerServices
from board_jobs.models import (
    BatchResult,
    JobType,
    QueueJob,
    QueueStats,
)
from board_jobs.registry import JobRegistry, coerce_result, job_registry
from board_jobs.store import JobStore

DEFAULT_MAX_RETRIES = 3
MAX_ALLOWED_RETRIES = 10
RETRY_DELAYS_SECONDS = (5, 15, 60)

EMAIL_BATCH_SIZE = 50
EMAIL_BATCH_STAGGER_MS = 5_000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def calculate_retry_delay(retry_count: int) -> int:
    """
    Backoff delay in seconds before retry number ``retry_count`` (1-indexed).

    Follows the fixed ladder 5s, 15s, 60s; the last rung repeats.
    """
    index = min(max(retry_count, 1) - 1, len(RETRY_DELAYS_SECONDS) - 1)
    return RETRY_DELAYS_SECONDS[index]


class JobQueueService:
    """Persisted, priority-ordered, retryable dispatch of typed jobs."""

    def __init__(
        self,
        store: JobStore,
        registry: Optional[JobRegistry] = None,
        services: Optional[HandlerServices] = None,
        logger: Optional[logging.Logger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.registry = registry or job_registry
        self.services = services or HandlerServices()
        self.logger = logger or logging.getLogger(__name__)
        self._clock = clock or utcnow

    @classmethod
    def from_pool(
        cls,
        db_pool: asyncpg.Pool,
        registry: Optional[JobRegistry] = None,
        services: Optional[HandlerServices] = None,
        logger: Optional[logging.Logger] = None,
    ) -> "JobQueueService":
        return cls(JobStore(db_pool), registry=registry, services=services, logger=logger)

    def now(self) -> datetime:
        return self._clock()

    async def enqueue(
        self,
        job_type: Union[JobType, str],
        payload: Dict[str, Any],
        *,
        priority: int = 0,
        delay_ms: int = 0,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> UUID:
        """
        Add a job to the processing queue.

        Args:
            job_type: One of the JobType values
            payload: Job-type specific data; ``job_id``/``user_id`` keys are
                copied to their own columns
            priority: Higher values are dequeued first
            delay_ms: Earliest start, in milliseconds from now
            max_retries: Retries allowed after the first attempt

        Returns:
            UUID: The created job ID
        """
        job_type = JobType(job_type)
        if not isinstance(payload, dict):
            raise ValueError("payload must be a JSON object")
        if delay_ms < 0:
            raise ValueError(f"delay_ms must be >= 0, got {delay_ms}")
        if not 0 <= max_retries <= MAX_ALLOWED_RETRIES:
            raise ValueError(
                f"max_retries must be between 0 and {MAX_ALLOWED_RETRIES}, got {max_retries}"
            )

        now = self.now()
        job = await self.store.insert_job(
            id=uuid4(),
            job_type=job_type,
            payload=payload,
            scheduled_for=now + timedelta(milliseconds=delay_ms),
            created_at=now,
            priority=priority,
            max_retries=max_retries,
            job_id=_optional_str(payload.get("job_id")),
            user_id=_optional_str(payload.get("user_id")),
        )

        self.logger.info(f"Enqueued {job_type.value} job with ID: {job.id}")
        return job.id

    async def get_job(self, job_id: UUID) -> QueueJob:
        """Get a job by ID."""
        return await self.store.get_job(job_id)

    async def list_jobs(
        self,
        *,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        limit: int = 50,
    ) -> List[QueueJob]:
        """List jobs with optional filters."""
        return await self.store.list_jobs(status=status, job_type=job_type, limit=limit)

    async def process_next_job(self) -> bool:
        """
        Claim and run the next eligible job.

        Returns False when no job is due (the queue is idle), True when a job
        was claimed and its outcome persisted.
        """
        outcome = await self._process_next()
        return outcome is not None

    async def process_all_pending_jobs(
        self,
        max_jobs: int = 100,
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> BatchResult:
        """
        Run due jobs one at a time until the queue is idle or ``max_jobs`` ran.

        ``should_continue`` is checked before every claim; once it returns
        False no further job is started and the batch ends.
        """
        result = BatchResult()

        while result.processed < max_jobs:
            if should_continue is not None and not should_continue():
                self.logger.info("Stop requested, not claiming further jobs")
                break

            outcome = await self._process_next()
            if outcome is None:
                break

            result.processed += 1
            if outcome:
                result.successful += 1
            else:
                result.failed += 1

        self.logger.info(
            f"Batch processing complete: {result.processed} jobs processed "
            f"({result.successful} successful, {result.failed} failed)"
        )
        return result

    async def get_queue_stats(self) -> QueueStats:
        """Aggregate job counts by status and job type."""
        stats = QueueStats()
        for job_type, status, count in await self.store.count_by_status_and_type():
            stats.add(job_type, status, count)
        return stats

    async def cancel_pending_jobs(
        self, job_type: Optional[Union[JobType, str]] = None
    ) -> int:
        """Cancel pending jobs, optionally only those of one type."""
        if job_type is not None:
            job_type = JobType(job_type)

        count = await self.store.cancel_pending(self.now(), job_type=job_type)

        suffix = f" of type {job_type.value}" if job_type is not None else ""
        self.logger.info(f"Cancelled {count} pending jobs{suffix}")
        return count

    async def purge_finished_jobs(self, older_than: timedelta) -> int:
        """Delete terminal rows that finished more than ``older_than`` ago."""
        count = await self.store.delete_terminal_jobs_before(self.now() - older_than)
        if count > 0:
            self.logger.info(f"Purged {count} finished queue jobs")
        return count

    async def queue_listing_ingest(
        self,
        partitions: Optional[Sequence[str]] = None,
        results_per_page: Optional[int] = None,
        priority: int = 5,
    ) -> UUID:
        """Queue a harvest of the external listing API."""
        payload: Dict[str, Any] = {}
        if partitions:
            payload["partitions"] = list(partitions)
        if results_per_page:
            payload["results_per_page"] = results_per_page
        return await self.enqueue(
            JobType.INGEST_EXTERNAL_LISTINGS, payload, priority=priority
        )

    async def queue_embedding(self, user_id: str, resume_text: str) -> UUID:
        """Queue resume embedding generation for a user."""
        return await self.enqueue(
            JobType.GENERATE_EMBEDDING,
            {"user_id": user_id, "resume_text": resume_text},
            priority=5,
        )

    async def queue_email_batch(
        self,
        job_id: str,
        user_ids: Sequence[str],
        template: str = "featured_job_match",
    ) -> List[UUID]:
        """
        Queue emails about a listing to many users.

        Recipients are split into batches of 50 so one job never overwhelms
        the email provider; batches are staggered by 5 seconds.
        """
        queued = []
        for index, start in enumerate(range(0, len(user_ids), EMAIL_BATCH_SIZE)):
            batch = list(user_ids[start:start + EMAIL_BATCH_SIZE])
            queued.append(
                await self.enqueue(
                    JobType.SEND_EMAIL_BATCH,
                    {"job_id": job_id, "user_ids": batch, "template": template},
                    priority=8,
                    delay_ms=index * EMAIL_BATCH_STAGGER_MS,
                )
            )
        return queued

    async def queue_weekly_digest(self, priority: int = 1) -> UUID:
        return await self.enqueue(JobType.SEND_WEEKLY_DIGEST, {}, priority=priority)

    async def queue_cleanup(self, days_old: int = 90, priority: int = 0) -> UUID:
        return await self.enqueue(
            JobType.CLEANUP_EXPIRED_RECORDS, {"days_old": days_old}, priority=priority
        )

    async def _process_next(self) -> Optional[bool]:
        """
        Claim one job and run it.

        Returns None if nothing was due, otherwise True on success and False
        when the attempt ended in a retry or a terminal failure.
        """
        job = await self.store.claim_next_job(self.now())
        if job is None:
            return None

        handler = self.registry.get_handler(job.job_type)
        if handler is None:
            error = f"No handler registered for job type {job.job_type.value}"
            self.logger.error(f"{error}, failing job {job.id}")
            await self.store.mark_failed(job.id, error, self.now())
            return False

        self.logger.info(
            f"Processing {job.job_type.value} job {job.id} "
            f"(attempt {job.retry_count + 1}/{job.max_retries + 1})"
        )
        ctx = {
            "job": job,
            "logger": self.logger,
            "services": self.services,
            "queue": self,
        }

        try:
            result = coerce_result(await handler(ctx, job.payload))
        except asyncio.CancelledError:
            # Leave no row stranded in processing when the scheduler gives up
            await asyncio.shield(self._handle_failure(job, "Execution cancelled"))
            raise
        except Exception as e:
            self.logger.error(f"Job {job.id} failed: {str(e)}", exc_info=True)
            await self._handle_failure(job, str(e) or type(e).__name__)
            return False

        if result.success:
            await self.store.mark_completed(job.id, self.now(), result.data)
            self.logger.info(f"Completed {job.job_type.value} job: {job.id}")
            return True

        await self._handle_failure(job, result.error or "Unknown error")
        return False

    async def _handle_failure(self, job: QueueJob, error: str) -> None:
        """Apply the retry ladder or mark the job as permanently failed."""
        new_retry_count = job.retry_count + 1

        if new_retry_count <= job.max_retries:
            delay = calculate_retry_delay(new_retry_count)
            scheduled_for = self.now() + timedelta(seconds=delay)
            await self.store.schedule_retry(job.id, new_retry_count, error, scheduled_for)
            self.logger.warning(
                f"Scheduled retry {new_retry_count}/{job.max_retries} for job "
                f"{job.id} in {delay}s: {error}"
            )
        else:
            await self.store.mark_failed(job.id, error, self.now())
            self.logger.error(
                f"Job {job.id} failed permanently after {job.max_retries} retries: {error}"
            )


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)
