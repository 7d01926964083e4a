"""Data models for queue jobs and harvested listings."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

from dateutil import parser as date_parser
from pydantic import BaseModel, Field


class JobType(str, Enum):
    """Closed set of job types understood by the queue."""

    INGEST_EXTERNAL_LISTINGS = "ingest_external_listings"
    GENERATE_EMBEDDING = "generate_embedding"
    SEND_EMAIL_BATCH = "send_email_batch"
    SEND_WEEKLY_DIGEST = "send_weekly_digest"
    CLEANUP_EXPIRED_RECORDS = "cleanup_expired_records"


class JobStatus(str, Enum):
    """Job status values."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)


class QueueJob:
    """Represents a row of the job processing queue."""

    def __init__(
        self,
        id: UUID,
        job_type: JobType,
        status: JobStatus,
        payload: Dict[str, Any],
        scheduled_for: datetime,
        priority: int = 0,
        retry_count: int = 0,
        max_retries: int = 3,
        job_id: Optional[str] = None,
        user_id: Optional[str] = None,
        error: Optional[str] = None,
        result: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
        processed_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
    ):
        self.id = id
        self.job_type = JobType(job_type) if isinstance(job_type, str) else job_type
        self.status = JobStatus(status) if isinstance(status, str) else status
        self.payload = payload
        self.scheduled_for = scheduled_for
        self.priority = priority
        self.retry_count = retry_count
        self.max_retries = max_retries
        self.job_id = job_id
        self.user_id = user_id
        self.error = error
        self.result = result
        self.created_at = created_at
        self.processed_at = processed_at
        self.completed_at = completed_at

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for JSON serialization."""
        return {
            "id": str(self.id),
            "job_type": self.job_type.value,
            "status": self.status.value,
            "payload": self.payload,
            "priority": self.priority,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "job_id": self.job_id,
            "user_id": self.user_id,
            "error": self.error,
            "result": self.result,
            "scheduled_for": (
                self.scheduled_for.isoformat() if self.scheduled_for else None
            ),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "processed_at": (
                self.processed_at.isoformat() if self.processed_at else None
            ),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
        }

    def __repr__(self) -> str:
        return (
            f"QueueJob(id={self.id}, job_type={self.job_type.value}, "
            f"status={self.status.value}, retry_count={self.retry_count})"
        )


@dataclass
class HandlerResult:
    """Outcome reported by a job handler."""

    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Optional[Dict[str, Any]] = None) -> "HandlerResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, data: Optional[Dict[str, Any]] = None) -> "HandlerResult":
        return cls(success=False, data=data, error=error)


@dataclass
class BatchResult:
    """Counts reported by a batch processing run."""

    processed: int = 0
    successful: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
        }


@dataclass
class QueueStats:
    """Aggregate job counts by status and by job type."""

    totals: Dict[str, int] = field(
        default_factory=lambda: {status.value: 0 for status in JobStatus}
    )
    by_type: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def add(self, job_type: str, status: str, count: int) -> None:
        self.totals[status] = self.totals.get(status, 0) + count
        self.by_type.setdefault(job_type, {})[status] = count

    def to_dict(self) -> Dict[str, Any]:
        return {**self.totals, "by_type": self.by_type}


class ExternalListingRecord(BaseModel):
    """A listing returned by the external job search API."""

    id: str
    title: str = ""
    company: str = ""
    location: str = ""
    description: str = ""
    salary_min: Optional[float] = None
    salary_max: Optional[float] = None
    contract_type: Optional[str] = None
    category: Optional[str] = None
    url: Optional[str] = None
    posted_at: Optional[datetime] = None
    raw: Dict[str, Any] = Field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ExternalListingRecord":
        """Build a record from one element of the upstream ``results`` array."""
        created = data.get("created")
        return cls(
            id=str(data["id"]),
            title=(data.get("title") or "").strip(),
            company=((data.get("company") or {}).get("display_name") or "").strip(),
            location=((data.get("location") or {}).get("display_name") or "").strip(),
            description=data.get("description") or "",
            salary_min=data.get("salary_min"),
            salary_max=data.get("salary_max"),
            contract_type=data.get("contract_time") or data.get("contract_type"),
            category=(data.get("category") or {}).get("label"),
            url=data.get("redirect_url"),
            posted_at=date_parser.isoparse(created) if created else None,
            raw=data,
        )
