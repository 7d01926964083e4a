"""FastAPI router exposing queue operations to operators."""

import hmac
import logging
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field

from board_jobs.config import BoardJobsConfig
from board_jobs.errors import AuthTokenError, JobNotFoundError
from board_jobs.models import JobType
from board_jobs.service import MAX_ALLOWED_RETRIES, JobQueueService


logger = logging.getLogger(__name__)


class EnqueueJobRequest(BaseModel):
    """Request model for enqueueing a job."""

    job_type: JobType
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    delay_ms: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0, le=MAX_ALLOWED_RETRIES)


class EnqueueJobResponse(BaseModel):
    job_id: str


class CancelJobsRequest(BaseModel):
    job_type: Optional[JobType] = None


class CancelJobsResponse(BaseModel):
    cancelled: int


class JobResponse(BaseModel):
    """Response model for job details."""

    id: str
    job_type: str
    status: str
    payload: Dict[str, Any]
    priority: int
    retry_count: int
    max_retries: int
    job_id: Optional[str] = None
    user_id: Optional[str] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    scheduled_for: Optional[str] = None
    created_at: Optional[str] = None
    processed_at: Optional[str] = None
    completed_at: Optional[str] = None


def check_auth_token(expected: Optional[str], provided: Optional[str]) -> None:
    """
    Raises:
        AuthTokenError: If a token is configured and ``provided`` does not match
    """
    if not expected:
        return
    if not provided:
        raise AuthTokenError("Missing auth token")
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        raise AuthTokenError("Invalid auth token")


def create_queue_router_from_config(
    queue_service_factory: Callable[[], JobQueueService],
    config: BoardJobsConfig,
) -> APIRouter:
    """Router protected by ``BOARD_JOBS_ENQUEUE_AUTH_TOKEN`` when it is set."""
    return create_queue_router(
        queue_service_factory, auth_token=config.enqueue_auth_token
    )


def create_queue_router(
    queue_service_factory: Callable[[], JobQueueService],
    auth_token: Optional[str] = None,
) -> APIRouter:
    """
    Create FastAPI router for the job queue.

    Args:
        queue_service_factory: Callable that returns a JobQueueService instance
        auth_token: Optional token required in the X-Board-Jobs-Token header

    Returns:
        APIRouter instance
    """
    router = APIRouter(prefix="/queue")

    async def get_queue_service() -> JobQueueService:
        """Dependency to get JobQueueService instance."""
        return queue_service_factory()

    async def verify_auth_token(
        x_board_jobs_token: Optional[str] = Header(None, alias="X-Board-Jobs-Token")
    ) -> None:
        """Verify auth token if configured."""
        try:
            check_auth_token(auth_token, x_board_jobs_token)
        except AuthTokenError as e:
            raise HTTPException(status_code=401, detail=str(e)) from e

    @router.post("/jobs", response_model=EnqueueJobResponse)
    async def enqueue_job(
        request: EnqueueJobRequest,
        queue: JobQueueService = Depends(get_queue_service),
        _: None = Depends(verify_auth_token),
    ):
        """Enqueue a new job."""
        try:
            job_id = await queue.enqueue(
                request.job_type,
                request.payload,
                priority=request.priority,
                delay_ms=request.delay_ms,
                max_retries=request.max_retries,
            )
            return EnqueueJobResponse(job_id=str(job_id))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        except Exception as e:
            logger.exception("Error enqueueing job")
            raise HTTPException(status_code=500, detail="Internal server error") from e

    @router.get("/jobs/{job_id}", response_model=JobResponse)
    async def get_job(
        job_id: str,
        queue: JobQueueService = Depends(get_queue_service),
        _: None = Depends(verify_auth_token),
    ):
        """Get job details by ID."""
        try:
            job_uuid = UUID(job_id)
        except ValueError as e:
            raise HTTPException(status_code=400, detail="Invalid job ID format") from e

        try:
            job = await queue.get_job(job_uuid)
            return JobResponse(**job.to_dict())
        except JobNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        except Exception as e:
            logger.exception("Error getting job")
            raise HTTPException(status_code=500, detail="Internal server error") from e

    @router.get("/jobs", response_model=List[JobResponse])
    async def list_jobs(
        status: Optional[str] = Query(None),
        job_type: Optional[str] = Query(None),
        limit: int = Query(50, ge=1, le=1000),
        queue: JobQueueService = Depends(get_queue_service),
        _: None = Depends(verify_auth_token),
    ):
        """List jobs with optional filters."""
        try:
            jobs = await queue.list_jobs(status=status, job_type=job_type, limit=limit)
            return [JobResponse(**job.to_dict()) for job in jobs]
        except Exception as e:
            logger.exception("Error listing jobs")
            raise HTTPException(status_code=500, detail="Internal server error") from e

    @router.get("/stats")
    async def get_stats(
        queue: JobQueueService = Depends(get_queue_service),
        _: None = Depends(verify_auth_token),
    ):
        """Job counts by status and job type."""
        try:
            stats = await queue.get_queue_stats()
            return stats.to_dict()
        except Exception as e:
            logger.exception("Error getting queue stats")
            raise HTTPException(status_code=500, detail="Internal server error") from e

    @router.post("/cancel", response_model=CancelJobsResponse)
    async def cancel_jobs(
        request: CancelJobsRequest,
        queue: JobQueueService = Depends(get_queue_service),
        _: None = Depends(verify_auth_token),
    ):
        """Cancel pending jobs, optionally of a single type."""
        try:
            cancelled = await queue.cancel_pending_jobs(request.job_type)
            return CancelJobsResponse(cancelled=cancelled)
        except Exception as e:
            logger.exception("Error cancelling jobs")
            raise HTTPException(status_code=500, detail="Internal server error") from e

    return router
