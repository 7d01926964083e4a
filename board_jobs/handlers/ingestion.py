"""Harvest external listings and upsert them into the board."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from board_jobs.handlers.base import get_logger, get_services, validate_payload
from board_jobs.listings import is_quality_listing, normalise_listing
from board_jobs.models import HandlerResult, JobType
from board_jobs.registry import job_registry


class IngestPayload(BaseModel):
    partitions: Optional[List[str]] = None
    results_per_page: Optional[int] = Field(default=None, ge=1, le=50)
    max_records: Optional[int] = Field(default=None, ge=1)
    filter_quality: bool = True
    allow_remote: bool = False


@job_registry.handler(JobType.INGEST_EXTERNAL_LISTINGS)
async def ingest_external_listings(ctx: Dict[str, Any], payload: Dict[str, Any]):
    """
    Fetch listings for every partition, filter them and upsert each one.

    A record that fails to upsert is logged and counted; it never fails the
    job. The job only fails when every partition failed to fetch.
    """
    params = validate_payload(IngestPayload, JobType.INGEST_EXTERNAL_LISTINGS, payload)
    logger = get_logger(ctx)
    services = get_services(ctx)
    fetcher = services.require("fetcher")
    listings = services.require("listings")

    harvest = await fetcher.harvest(params.partitions, params.results_per_page)
    records = harvest.records
    if params.max_records is not None:
        records = records[: params.max_records]

    imported = updated = skipped = errors = 0
    for record in records:
        if params.filter_quality and not is_quality_listing(
            record, allow_remote=params.allow_remote
        ):
            skipped += 1
            continue

        try:
            created = await listings.upsert_listing(normalise_listing(record))
        except Exception as e:
            errors += 1
            logger.error(f"Failed to import listing {record.id}: {str(e)}")
            continue

        if created:
            imported += 1
        else:
            updated += 1

    data = {
        "fetched": len(harvest.records),
        "imported": imported,
        "updated": updated,
        "skipped": skipped,
        "errors": errors,
        "duplicates": harvest.duplicates,
        "malformed": harvest.malformed,
        "partitions": [report.to_dict() for report in harvest.partitions],
    }
    logger.info(
        f"Listing ingest: {data['fetched']} fetched, {imported} imported, "
        f"{updated} updated, {skipped} skipped, {errors} errors"
    )

    all_failed = len(harvest.failed_partitions) == len(harvest.partitions)
    if harvest.partitions and all_failed and not harvest.records:
        return HandlerResult.fail("All partitions failed to fetch", data)

    return HandlerResult.ok(data)
