"""Unit tests for the job queue service."""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from board_jobs.errors import JobNotFoundError
from board_jobs.models import HandlerResult, JobStatus, JobType
from board_jobs.service import calculate_retry_delay


def always_failing(registry, job_type=JobType.GENERATE_EMBEDDING, calls=None):
    @registry.handler(job_type)
    async def handler(ctx, payload):
        if calls is not None:
            calls.append(ctx["job"].id)
        raise RuntimeError("boom")

    return handler


@pytest.mark.asyncio
async def test_enqueue_creates_pending_job(queue, store, clock):
    """Test enqueue stores a pending row scheduled after the delay."""
    job_id = await queue.enqueue(
        JobType.GENERATE_EMBEDDING,
        {"user_id": "user-1", "resume_text": "text"},
        priority=5,
        delay_ms=2_000,
    )

    job = store.jobs[job_id]
    assert job.status == JobStatus.PENDING
    assert job.priority == 5
    assert job.retry_count == 0
    assert job.max_retries == 3
    assert job.user_id == "user-1"
    assert job.job_id is None
    assert job.scheduled_for == clock() + timedelta(seconds=2)
    assert job.created_at == clock()


@pytest.mark.asyncio
async def test_enqueue_accepts_string_job_type(queue, store):
    job_id = await queue.enqueue("send_weekly_digest", {})
    assert store.jobs[job_id].job_type == JobType.SEND_WEEKLY_DIGEST


@pytest.mark.asyncio
async def test_enqueue_rejects_unknown_job_type(queue):
    with pytest.raises(ValueError):
        await queue.enqueue("featured_job_matching", {})


@pytest.mark.asyncio
async def test_enqueue_rejects_negative_delay(queue):
    with pytest.raises(ValueError, match="delay_ms"):
        await queue.enqueue(JobType.SEND_WEEKLY_DIGEST, {}, delay_ms=-1)


@pytest.mark.asyncio
@pytest.mark.parametrize("max_retries", [-1, 11])
async def test_enqueue_rejects_out_of_range_max_retries(queue, max_retries):
    with pytest.raises(ValueError, match="max_retries"):
        await queue.enqueue(JobType.SEND_WEEKLY_DIGEST, {}, max_retries=max_retries)


@pytest.mark.asyncio
async def test_process_next_job_returns_false_when_idle(queue):
    assert await queue.process_next_job() is False


@pytest.mark.asyncio
async def test_never_selects_job_scheduled_in_the_future(queue, registry, store, clock):
    """Test a delayed job is not claimed before its scheduled time."""
    ran = []

    @registry.handler(JobType.SEND_WEEKLY_DIGEST)
    async def digest(ctx, payload):
        ran.append(ctx["job"].id)

    job_id = await queue.enqueue(JobType.SEND_WEEKLY_DIGEST, {}, delay_ms=10_000)

    assert await queue.process_next_job() is False
    clock.advance(seconds=9)
    assert await queue.process_next_job() is False
    assert store.jobs[job_id].status == JobStatus.PENDING

    clock.advance(seconds=1)
    assert await queue.process_next_job() is True
    assert ran == [job_id]


@pytest.mark.asyncio
async def test_higher_priority_runs_first(queue, registry, clock):
    """Test ordering by priority, then earlier scheduled_for."""
    order = []

    @registry.handler(JobType.CLEANUP_EXPIRED_RECORDS)
    async def cleanup(ctx, payload):
        order.append(payload["name"])

    await queue.enqueue(JobType.CLEANUP_EXPIRED_RECORDS, {"name": "low"}, priority=0)
    await queue.enqueue(
        JobType.CLEANUP_EXPIRED_RECORDS, {"name": "high-later"}, priority=10
    )
    await queue.enqueue(
        JobType.CLEANUP_EXPIRED_RECORDS, {"name": "high-earlier"}, priority=10, delay_ms=0
    )

    # Same priority: the earlier scheduled_for wins
    queue_jobs = queue.store.jobs
    later = next(j for j in queue_jobs.values() if j.payload["name"] == "high-later")
    later.scheduled_for += timedelta(microseconds=1)
    clock.advance(seconds=1)

    await queue.process_all_pending_jobs()

    assert order == ["high-earlier", "high-later", "low"]


@pytest.mark.asyncio
async def test_successful_job_is_completed_with_result(queue, registry, store, clock):
    @registry.handler(JobType.GENERATE_EMBEDDING)
    async def embed(ctx, payload):
        return HandlerResult.ok({"dimensions": 1536})

    job_id = await queue.enqueue(JobType.GENERATE_EMBEDDING, {"user_id": "u"})
    clock.advance(seconds=1)
    assert await queue.process_next_job() is True

    job = store.jobs[job_id]
    assert job.status == JobStatus.COMPLETED
    assert job.result == {"dimensions": 1536}
    assert job.completed_at == clock()
    assert job.processed_at == clock()
    assert job.payload == {"user_id": "u"}


@pytest.mark.asyncio
async def test_plain_dict_result_is_stored(queue, registry, store):
    @registry.handler(JobType.SEND_WEEKLY_DIGEST)
    async def digest(ctx, payload):
        return {"sent": 3}

    job_id = await queue.enqueue(JobType.SEND_WEEKLY_DIGEST, {})
    await queue.process_next_job()

    assert store.jobs[job_id].result == {"sent": 3}


def test_retry_delay_ladder():
    """Test the backoff ladder 5s, 15s, 60s with the last step repeating."""
    assert [calculate_retry_delay(n) for n in range(1, 6)] == [5, 15, 60, 60, 60]


@pytest.mark.asyncio
async def test_failure_schedules_retry_with_backoff(queue, registry, store, clock):
    """Test a thrown error reschedules the job on the ladder."""
    always_failing(registry)
    job_id = await queue.enqueue(JobType.GENERATE_EMBEDDING, {}, max_retries=3)

    assert await queue.process_next_job() is True

    job = store.jobs[job_id]
    assert job.status == JobStatus.PENDING
    assert job.retry_count == 1
    assert job.error == "boom"
    assert job.scheduled_for == clock() + timedelta(seconds=5)

    # Not eligible again until the backoff elapses
    assert await queue.process_next_job() is False
    clock.advance(seconds=5)
    assert await queue.process_next_job() is True
    assert store.jobs[job_id].retry_count == 2
    assert store.jobs[job_id].scheduled_for == clock() + timedelta(seconds=15)


@pytest.mark.asyncio
async def test_business_failure_goes_through_retry_policy(queue, registry, store):
    @registry.handler(JobType.SEND_EMAIL_BATCH)
    async def send(ctx, payload):
        return HandlerResult.fail("2 of 3 emails failed")

    job_id = await queue.enqueue(JobType.SEND_EMAIL_BATCH, {"job_id": "listing-9"})
    await queue.process_next_job()

    job = store.jobs[job_id]
    assert job.status == JobStatus.PENDING
    assert job.retry_count == 1
    assert job.error == "2 of 3 emails failed"
    assert job.job_id == "listing-9"


@pytest.mark.asyncio
async def test_retry_count_tracks_failures_until_exhausted(queue, registry, store, clock):
    """Test retry_count == min(failures, max_retries) and failed only when exceeded."""
    always_failing(registry)
    job_id = await queue.enqueue(JobType.GENERATE_EMBEDDING, {}, max_retries=3)

    for failures in range(1, 5):
        assert await queue.process_next_job() is True
        job = store.jobs[job_id]
        assert job.retry_count == min(failures, 3)
        if failures <= 3:
            assert job.status == JobStatus.PENDING
        else:
            assert job.status == JobStatus.FAILED
        clock.advance(seconds=60)


@pytest.mark.asyncio
async def test_always_failing_high_priority_job_ends_failed(queue, registry, store, clock):
    """Priority 10, max_retries 2, handler always throws: failed with retry_count 2."""
    calls = []
    always_failing(registry, calls=calls)
    job_id = await queue.enqueue(JobType.GENERATE_EMBEDDING, {}, priority=10, max_retries=2)

    await queue.process_next_job()
    clock.advance(seconds=5)
    await queue.process_next_job()
    clock.advance(seconds=15)
    await queue.process_next_job()

    job = store.jobs[job_id]
    assert len(calls) == 3
    assert job.status == JobStatus.FAILED
    assert job.retry_count == 2
    assert job.error == "boom"
    assert job.completed_at == clock()


@pytest.mark.asyncio
async def test_zero_retries_fails_on_first_error(queue, registry, store):
    always_failing(registry)
    job_id = await queue.enqueue(JobType.GENERATE_EMBEDDING, {}, max_retries=0)

    await queue.process_next_job()

    assert store.jobs[job_id].status == JobStatus.FAILED
    assert store.jobs[job_id].retry_count == 0


@pytest.mark.asyncio
async def test_missing_handler_fails_immediately(queue, store):
    job_id = await queue.enqueue(JobType.INGEST_EXTERNAL_LISTINGS, {})

    assert await queue.process_next_job() is True

    job = store.jobs[job_id]
    assert job.status == JobStatus.FAILED
    assert "No handler registered" in job.error
    assert job.retry_count == 0


@pytest.mark.asyncio
async def test_handler_context_carries_job_and_services(queue, registry):
    seen = {}

    @registry.handler(JobType.SEND_WEEKLY_DIGEST)
    async def digest(ctx, payload):
        seen.update(ctx)

    job_id = await queue.enqueue(JobType.SEND_WEEKLY_DIGEST, {})
    await queue.process_next_job()

    assert seen["job"].id == job_id
    assert seen["services"] is queue.services
    assert seen["logger"] is queue.logger
    assert seen["queue"] is queue


@pytest.mark.asyncio
async def test_cancelled_execution_leaves_no_job_processing(queue, registry, store):
    """Test a cancelled handler routes the job through the retry policy."""
    started = asyncio.Event()

    @registry.handler(JobType.INGEST_EXTERNAL_LISTINGS)
    async def slow_ingest(ctx, payload):
        started.set()
        await asyncio.Event().wait()

    job_id = await queue.enqueue(JobType.INGEST_EXTERNAL_LISTINGS, {})
    task = asyncio.create_task(queue.process_next_job())
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    job = store.jobs[job_id]
    assert job.status == JobStatus.PENDING
    assert job.retry_count == 1
    assert job.error == "Execution cancelled"


@pytest.mark.asyncio
async def test_process_all_pending_jobs_counts_outcomes(queue, registry):
    @registry.handler(JobType.SEND_WEEKLY_DIGEST)
    async def digest(ctx, payload):
        return None

    always_failing(registry)

    await queue.enqueue(JobType.SEND_WEEKLY_DIGEST, {})
    await queue.enqueue(JobType.SEND_WEEKLY_DIGEST, {})
    await queue.enqueue(JobType.GENERATE_EMBEDDING, {})

    result = await queue.process_all_pending_jobs()

    # The failed job is in backoff, so it is not picked up again in this run
    assert result.to_dict() == {"processed": 3, "successful": 2, "failed": 1}


@pytest.mark.asyncio
async def test_process_all_pending_jobs_respects_max_jobs(queue, registry, store):
    @registry.handler(JobType.CLEANUP_EXPIRED_RECORDS)
    async def cleanup(ctx, payload):
        return None

    for _ in range(5):
        await queue.enqueue(JobType.CLEANUP_EXPIRED_RECORDS, {})

    result = await queue.process_all_pending_jobs(max_jobs=2)

    assert result.processed == 2
    pending = [j for j in store.jobs.values() if j.status == JobStatus.PENDING]
    assert len(pending) == 3


@pytest.mark.asyncio
async def test_cancel_pending_email_batches_leaves_processing_row(queue, store):
    """Cancel three pending email batches while a fourth is processing."""
    ids = [
        await queue.enqueue(JobType.SEND_EMAIL_BATCH, {"job_id": "j", "user_ids": ["u"]})
        for _ in range(4)
    ]
    digest_id = await queue.enqueue(JobType.SEND_WEEKLY_DIGEST, {})

    claimed = await store.claim_next_job(queue.now())
    assert claimed.job_type == JobType.SEND_EMAIL_BATCH

    cancelled = await queue.cancel_pending_jobs(JobType.SEND_EMAIL_BATCH)

    assert cancelled == 3
    assert store.jobs[claimed.id].status == JobStatus.PROCESSING
    for job_id in ids:
        if job_id != claimed.id:
            assert store.jobs[job_id].status == JobStatus.CANCELLED
            assert store.jobs[job_id].completed_at == queue.now()
    assert store.jobs[digest_id].status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_cancel_pending_without_type_cancels_everything_pending(queue, store):
    await queue.enqueue(JobType.SEND_WEEKLY_DIGEST, {})
    await queue.enqueue(JobType.CLEANUP_EXPIRED_RECORDS, {})

    assert await queue.cancel_pending_jobs() == 2
    assert all(job.status == JobStatus.CANCELLED for job in store.jobs.values())


@pytest.mark.asyncio
async def test_get_queue_stats(queue, registry):
    @registry.handler(JobType.SEND_WEEKLY_DIGEST)
    async def digest(ctx, payload):
        return None

    await queue.enqueue(JobType.SEND_WEEKLY_DIGEST, {})
    await queue.enqueue(JobType.SEND_EMAIL_BATCH, {}, delay_ms=60_000)
    await queue.enqueue(JobType.SEND_EMAIL_BATCH, {}, delay_ms=60_000)
    await queue.process_all_pending_jobs()

    stats = (await queue.get_queue_stats()).to_dict()

    assert stats["pending"] == 2
    assert stats["completed"] == 1
    assert stats["failed"] == 0
    assert stats["processing"] == 0
    assert stats["cancelled"] == 0
    assert stats["by_type"]["send_email_batch"] == {"pending": 2}
    assert stats["by_type"]["send_weekly_digest"] == {"completed": 1}


@pytest.mark.asyncio
async def test_queue_email_batch_splits_recipients(queue, store, clock):
    """Test 120 recipients become batches of 50, 50 and 20, staggered by 5s."""
    user_ids = [f"user-{i}" for i in range(120)]

    job_ids = await queue.queue_email_batch("listing-7", user_ids)

    jobs = [store.jobs[job_id] for job_id in job_ids]
    assert [len(job.payload["user_ids"]) for job in jobs] == [50, 50, 20]
    assert [job.scheduled_for - clock() for job in jobs] == [
        timedelta(0),
        timedelta(seconds=5),
        timedelta(seconds=10),
    ]
    assert all(job.priority == 8 for job in jobs)
    assert all(job.job_id == "listing-7" for job in jobs)
    assert all(job.payload["template"] == "featured_job_match" for job in jobs)
    assert jobs[2].payload["user_ids"][-1] == "user-119"


@pytest.mark.asyncio
async def test_convenience_producers(queue, store):
    embedding_id = await queue.queue_embedding("user-3", "resume")
    ingest_id = await queue.queue_listing_ingest(partitions=["Lodi, CA"])
    cleanup_id = await queue.queue_cleanup()
    digest_id = await queue.queue_weekly_digest()

    assert store.jobs[embedding_id].priority == 5
    assert store.jobs[embedding_id].user_id == "user-3"
    assert store.jobs[ingest_id].payload == {"partitions": ["Lodi, CA"]}
    assert store.jobs[ingest_id].priority == 5
    assert store.jobs[cleanup_id].payload == {"days_old": 90}
    assert store.jobs[digest_id].priority == 1


@pytest.mark.asyncio
async def test_purge_finished_jobs(queue, registry, store, clock):
    @registry.handler(JobType.SEND_WEEKLY_DIGEST)
    async def digest(ctx, payload):
        return None

    old_id = await queue.enqueue(JobType.SEND_WEEKLY_DIGEST, {})
    await queue.process_next_job()
    clock.advance(days=100)
    pending_id = await queue.enqueue(JobType.SEND_WEEKLY_DIGEST, {}, delay_ms=60_000)

    purged = await queue.purge_finished_jobs(timedelta(days=90))

    assert purged == 1
    assert old_id not in store.jobs
    assert pending_id in store.jobs


@pytest.mark.asyncio
async def test_get_job_missing_raises(queue):
    with pytest.raises(JobNotFoundError):
        await queue.get_job(uuid4())
