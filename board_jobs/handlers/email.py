"""Listing notification batches and the weekly digest."""

from datetime import timedelta
from typing import Any, Dict, List

from pydantic import BaseModel, Field

from board_jobs.handlers.base import get_logger, get_services, validate_payload
from board_jobs.models import HandlerResult, JobType
from board_jobs.registry import job_registry
from board_jobs.service import EMAIL_BATCH_SIZE, utcnow

DIGEST_TEMPLATE = "weekly_digest"


class EmailBatchPayload(BaseModel):
    job_id: str = Field(min_length=1)
    user_ids: List[str] = Field(min_length=1, max_length=EMAIL_BATCH_SIZE)
    template: str = "featured_job_match"


class WeeklyDigestPayload(BaseModel):
    days: int = Field(default=7, ge=1, le=31)
    limit: int = Field(default=10, ge=1, le=50)


async def _send_once(services, logger, recipient_id, template, context, key) -> str:
    """Send one email unless its key was already delivered; returns the outcome."""
    delivery_log = services.require("delivery_log")
    sender = services.require("email_sender")

    if await delivery_log.was_delivered(key):
        return "skipped"

    try:
        await sender.send(recipient_id, template, context, key)
    except Exception as e:
        logger.error(f"Failed to send {template} email to {recipient_id}: {str(e)}")
        return "failed"

    await delivery_log.record_delivery(key)
    return "sent"


@job_registry.handler(JobType.SEND_EMAIL_BATCH)
async def send_email_batch(ctx: Dict[str, Any], payload: Dict[str, Any]):
    """
    Email one listing to a batch of users.

    Each recipient has the idempotency key ``{job_id}:{template}:{user_id}``;
    recipients already delivered are skipped, so a retried batch only resends
    to the users that failed.
    """
    params = validate_payload(EmailBatchPayload, JobType.SEND_EMAIL_BATCH, payload)
    logger = get_logger(ctx)
    services = get_services(ctx)

    counts = {"sent": 0, "skipped": 0, "failed": 0}
    failed_recipients = []
    for user_id in params.user_ids:
        key = f"{params.job_id}:{params.template}:{user_id}"
        outcome = await _send_once(
            services,
            logger,
            user_id,
            params.template,
            {"job_id": params.job_id},
            key,
        )
        counts[outcome] += 1
        if outcome == "failed":
            failed_recipients.append(user_id)

    logger.info(
        f"Email batch for job {params.job_id}: {counts['sent']} sent, "
        f"{counts['skipped']} already delivered, {counts['failed']} failed"
    )

    data = {"job_id": params.job_id, **counts, "failed_recipients": failed_recipients}
    if failed_recipients:
        return HandlerResult.fail(
            f"{len(failed_recipients)} of {len(params.user_ids)} emails failed", data
        )
    return HandlerResult.ok(data)


@job_registry.handler(JobType.SEND_WEEKLY_DIGEST)
async def send_weekly_digest(ctx: Dict[str, Any], payload: Dict[str, Any]):
    """Send recent listings to every digest subscriber, once per ISO week."""
    params = validate_payload(WeeklyDigestPayload, JobType.SEND_WEEKLY_DIGEST, payload)
    logger = get_logger(ctx)
    services = get_services(ctx)
    listings = services.require("listings")
    subscribers = services.require("subscribers")

    now = utcnow()
    recent = await listings.recent_listings(now - timedelta(days=params.days), params.limit)
    if not recent:
        logger.info("No recent listings, skipping weekly digest")
        return HandlerResult.ok({"sent": 0, "skipped": 0, "failed": 0, "listings": 0})

    year, week, _ = now.isocalendar()
    week_label = f"{year}-W{week:02d}"
    context = {"listings": recent, "week": week_label}

    counts = {"sent": 0, "skipped": 0, "failed": 0}
    for user_id in await subscribers.digest_subscribers():
        key = f"{DIGEST_TEMPLATE}:{week_label}:{user_id}"
        counts[await _send_once(services, logger, user_id, DIGEST_TEMPLATE, context, key)] += 1

    logger.info(
        f"Weekly digest {week_label}: {counts['sent']} sent, "
        f"{counts['skipped']} already delivered, {counts['failed']} failed"
    )

    data = {**counts, "listings": len(recent), "week": week_label}
    if counts["failed"]:
        return HandlerResult.fail(f"{counts['failed']} digest emails failed", data)
    return HandlerResult.ok(data)
