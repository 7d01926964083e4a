"""Periodic cleanup of stale matches and finished queue rows."""

from datetime import timedelta
from typing import Any, Dict

from pydantic import BaseModel, Field

from board_jobs.handlers.base import get_logger, get_services, validate_payload
from board_jobs.models import HandlerResult, JobType
from board_jobs.registry import job_registry
from board_jobs.service import utcnow


class CleanupPayload(BaseModel):
    days_old: int = Field(default=90, ge=1)


@job_registry.handler(JobType.CLEANUP_EXPIRED_RECORDS)
async def cleanup_expired_records(ctx: Dict[str, Any], payload: Dict[str, Any]):
    params = validate_payload(CleanupPayload, JobType.CLEANUP_EXPIRED_RECORDS, payload)
    logger = get_logger(ctx)
    listings = get_services(ctx).require("listings")
    older_than = timedelta(days=params.days_old)

    deleted_matches = await listings.delete_stale_matches(utcnow() - older_than)

    purged_jobs = 0
    queue = ctx.get("queue")
    if queue is not None:
        purged_jobs = await queue.purge_finished_jobs(older_than)

    logger.info(
        f"Cleaned up {deleted_matches} old job matches and {purged_jobs} finished queue jobs"
    )
    return HandlerResult.ok({"deleted": deleted_matches, "purged_jobs": purged_jobs})
