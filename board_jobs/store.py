"""Database store layer for the job processing queue."""

import json
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

import asyncpg

from board_jobs.errors import JobNotFoundError
from board_jobs.models import JobStatus, JobType, QueueJob


class JobStore:
    """Database layer for queue job operations."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def insert_job(
        self,
        id: UUID,
        job_type: JobType,
        payload: dict[str, Any],
        scheduled_for: datetime,
        created_at: datetime,
        priority: int = 0,
        max_retries: int = 3,
        job_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> QueueJob:
        """Insert a new pending job into the database."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO job_processing_queue (
                    id, job_type, job_id, user_id, status, payload,
                    priority, retry_count, max_retries, scheduled_for, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, 0, $8, $9, $10)
                RETURNING *
                """,
                id,
                job_type.value,
                job_id,
                user_id,
                JobStatus.PENDING.value,
                json.dumps(payload),
                priority,
                max_retries,
                scheduled_for,
                created_at,
            )

        return self._row_to_job(row)

    async def get_job(self, job_id: UUID) -> QueueJob:
        """Get a job by ID."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM job_processing_queue WHERE id = $1", job_id
            )

        if not row:
            raise JobNotFoundError(job_id)

        return self._row_to_job(row)

    async def list_jobs(
        self,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        limit: int = 50,
    ) -> list[QueueJob]:
        """List jobs with optional filters."""
        query = "SELECT * FROM job_processing_queue WHERE 1=1"
        params = []
        param_idx = 1

        if status:
            query += f" AND status = ${param_idx}"
            params.append(status)
            param_idx += 1

        if job_type:
            query += f" AND job_type = ${param_idx}"
            params.append(job_type)
            param_idx += 1

        query += f" ORDER BY created_at DESC LIMIT ${param_idx}"
        params.append(limit)

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(query, *params)

        return [self._row_to_job(row) for row in rows]

    async def claim_next_job(self, now: datetime) -> Optional[QueueJob]:
        """
        Atomically claim the best eligible pending job.

        The row is selected by priority DESC, scheduled_for ASC among pending
        rows due at ``now`` and flipped to processing in the same statement.
        FOR UPDATE SKIP LOCKED keeps two concurrent claims from taking the
        same row.
        """
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE job_processing_queue
                SET status = $1, processed_at = $2
                WHERE id = (
                    SELECT id FROM job_processing_queue
                    WHERE status = $3
                      AND scheduled_for <= $2
                    ORDER BY priority DESC, scheduled_for ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                JobStatus.PROCESSING.value,
                now,
                JobStatus.PENDING.value,
            )

        return self._row_to_job(row) if row else None

    async def mark_completed(
        self, job_id: UUID, now: datetime, result: Optional[dict[str, Any]] = None
    ) -> None:
        """Mark a processing job as completed."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE job_processing_queue
                SET status = $1, completed_at = $2, result = $3, error = NULL
                WHERE id = $4 AND status = $5
                """,
                JobStatus.COMPLETED.value,
                now,
                json.dumps(result) if result is not None else None,
                job_id,
                JobStatus.PROCESSING.value,
            )

    async def schedule_retry(
        self, job_id: UUID, retry_count: int, error: str, scheduled_for: datetime
    ) -> None:
        """Put a processing job back to pending with a later schedule time."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE job_processing_queue
                SET status = $1,
                    retry_count = $2,
                    error = $3,
                    scheduled_for = $4
                WHERE id = $5 AND status = $6
                """,
                JobStatus.PENDING.value,
                retry_count,
                error,
                scheduled_for,
                job_id,
                JobStatus.PROCESSING.value,
            )

    async def mark_failed(self, job_id: UUID, error: str, now: datetime) -> None:
        """Mark a processing job as permanently failed."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE job_processing_queue
                SET status = $1, error = $2, completed_at = $3
                WHERE id = $4 AND status = $5
                """,
                JobStatus.FAILED.value,
                error,
                now,
                job_id,
                JobStatus.PROCESSING.value,
            )

    async def cancel_pending(
        self, now: datetime, job_type: Optional[JobType] = None
    ) -> int:
        """Cancel pending jobs, optionally filtered by type. Returns the count."""
        query = """
            UPDATE job_processing_queue
            SET status = $1, completed_at = $2
            WHERE status = $3
        """
        params = [JobStatus.CANCELLED.value, now, JobStatus.PENDING.value]
        if job_type is not None:
            query += " AND job_type = $4"
            params.append(job_type.value)

        async with self.db_pool.acquire() as conn:
            result = await conn.execute(query, *params)

        # Extract count from result string like "UPDATE 5"
        return int(result.split()[-1]) if result else 0

    async def count_by_status_and_type(self) -> list[tuple[str, str, int]]:
        """Return (job_type, status, count) rows for every populated group."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT job_type, status, COUNT(*) AS count
                FROM job_processing_queue
                GROUP BY status, job_type
                """
            )

        return [(row["job_type"], row["status"], row["count"]) for row in rows]

    async def delete_terminal_jobs_before(self, cutoff: datetime) -> int:
        """Delete completed, failed and cancelled rows finished before ``cutoff``."""
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                DELETE FROM job_processing_queue
                WHERE status = ANY($1::text[])
                  AND completed_at < $2
                """,
                [
                    JobStatus.COMPLETED.value,
                    JobStatus.FAILED.value,
                    JobStatus.CANCELLED.value,
                ],
                cutoff,
            )

        return int(result.split()[-1]) if result else 0

    def _row_to_job(self, row: asyncpg.Record) -> QueueJob:
        """Convert a database row to a QueueJob model."""
        return QueueJob(
            id=row["id"],
            job_type=JobType(row["job_type"]),
            status=JobStatus(row["status"]),
            payload=json.loads(row["payload"])
            if isinstance(row["payload"], str)
            else row["payload"],
            scheduled_for=row["scheduled_for"],
            priority=row["priority"],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            job_id=row["job_id"],
            user_id=row["user_id"],
            error=row["error"],
            result=json.loads(row["result"])
            if row["result"] and isinstance(row["result"], str)
            else row["result"],
            created_at=row["created_at"],
            processed_at=row["processed_at"],
            completed_at=row["completed_at"],
        )
