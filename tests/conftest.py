"""Pytest configuration and fixtures."""

import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID

import pytest

from board_jobs.errors import JobNotFoundError
from board_jobs.models import JobStatus, QueueJob, TERMINAL_STATUSES
from board_jobs.registry import JobRegistry
from board_jobs.service import JobQueueService


class FakeClock:
    """Controllable clock returning timezone-aware UTC datetimes."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 6, 3, 2, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeJobStore:
    """In-memory implementation of the JobStore interface."""

    def __init__(self):
        self.jobs: dict[UUID, QueueJob] = {}

    async def insert_job(
        self,
        id,
        job_type,
        payload,
        scheduled_for,
        created_at,
        priority=0,
        max_retries=3,
        job_id=None,
        user_id=None,
    ) -> QueueJob:
        job = QueueJob(
            id=id,
            job_type=job_type,
            status=JobStatus.PENDING,
            payload=copy.deepcopy(payload),
            scheduled_for=scheduled_for,
            priority=priority,
            max_retries=max_retries,
            job_id=job_id,
            user_id=user_id,
            created_at=created_at,
        )
        self.jobs[id] = job
        return copy.copy(job)

    async def get_job(self, job_id: UUID) -> QueueJob:
        if job_id not in self.jobs:
            raise JobNotFoundError(job_id)
        return copy.copy(self.jobs[job_id])

    async def list_jobs(self, status=None, job_type=None, limit=50):
        jobs = [
            copy.copy(job)
            for job in self.jobs.values()
            if (status is None or job.status.value == status)
            and (job_type is None or job.job_type.value == job_type)
        ]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return jobs[:limit]

    async def claim_next_job(self, now: datetime) -> Optional[QueueJob]:
        candidates = [
            job
            for job in self.jobs.values()
            if job.status == JobStatus.PENDING and job.scheduled_for <= now
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda job: (-job.priority, job.scheduled_for))
        job = candidates[0]
        job.status = JobStatus.PROCESSING
        job.processed_at = now
        return copy.copy(job)

    async def mark_completed(self, job_id, now, result=None) -> None:
        job = self.jobs[job_id]
        if job.status == JobStatus.PROCESSING:
            job.status = JobStatus.COMPLETED
            job.completed_at = now
            job.result = result
            job.error = None

    async def schedule_retry(self, job_id, retry_count, error, scheduled_for) -> None:
        job = self.jobs[job_id]
        if job.status == JobStatus.PROCESSING:
            assert retry_count <= job.max_retries
            job.status = JobStatus.PENDING
            job.retry_count = retry_count
            job.error = error
            job.scheduled_for = scheduled_for

    async def mark_failed(self, job_id, error, now) -> None:
        job = self.jobs[job_id]
        if job.status == JobStatus.PROCESSING:
            job.status = JobStatus.FAILED
            job.error = error
            job.completed_at = now

    async def cancel_pending(self, now, job_type=None) -> int:
        count = 0
        for job in self.jobs.values():
            if job.status != JobStatus.PENDING:
                continue
            if job_type is not None and job.job_type != job_type:
                continue
            job.status = JobStatus.CANCELLED
            job.completed_at = now
            count += 1
        return count

    async def count_by_status_and_type(self) -> list[tuple[str, str, int]]:
        counts: dict[tuple[str, str], int] = {}
        for job in self.jobs.values():
            key = (job.job_type.value, job.status.value)
            counts[key] = counts.get(key, 0) + 1
        return [(job_type, status, count) for (job_type, status), count in counts.items()]

    async def delete_terminal_jobs_before(self, cutoff) -> int:
        doomed = [
            job_id
            for job_id, job in self.jobs.items()
            if job.status in TERMINAL_STATUSES
            and job.completed_at is not None
            and job.completed_at < cutoff
        ]
        for job_id in doomed:
            del self.jobs[job_id]
        return len(doomed)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return FakeJobStore()


@pytest.fixture
def registry():
    """A fresh registry with no handlers."""
    return JobRegistry()


@pytest.fixture
def queue(store, registry, clock):
    """JobQueueService over the in-memory store."""
    return JobQueueService(store, registry=registry, clock=clock)


@pytest.fixture
def sample_api_listing():
    """One element of the upstream search ``results`` array."""

    def make(listing_id: Any = "4471", **overrides):
        data = {
            "id": listing_id,
            "title": "Warehouse Associate",
            "company": {"display_name": "Valley Logistics"},
            "location": {"display_name": "Stockton, San Joaquin County"},
            "description": (
                "Join our warehouse team. Forklift experience preferred, "
                "bilingual Spanish a plus. Full benefits."
            ),
            "salary_min": 38000,
            "salary_max": 45000,
            "contract_time": "full_time",
            "category": {"label": "Logistics & Warehouse Jobs"},
            "redirect_url": f"https://www.adzuna.com/details/{listing_id}",
            "created": "2024-06-01T08:30:00Z",
        }
        data.update(overrides)
        return data

    return make
