"""Unit tests for FastAPI router."""

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

from fastapi.testclient import TestClient
from fastapi import FastAPI

from board_jobs.config import BoardJobsConfig
from board_jobs.errors import AuthTokenError, JobNotFoundError
from board_jobs.fastapi_router import (
    check_auth_token,
    create_queue_router,
    create_queue_router_from_config,
)
from board_jobs.models import JobStatus, JobType, QueueJob, QueueStats
from board_jobs.service import JobQueueService


@pytest.fixture
def mock_queue_service():
    """Create a mock queue service."""
    service = MagicMock(spec=JobQueueService)
    service.enqueue = AsyncMock()
    service.get_job = AsyncMock()
    service.list_jobs = AsyncMock(return_value=[])
    service.get_queue_stats = AsyncMock(return_value=QueueStats())
    service.cancel_pending_jobs = AsyncMock(return_value=0)
    return service


def make_app(service, auth_token=None):
    router = create_queue_router(lambda: service, auth_token=auth_token)
    app = FastAPI()
    app.include_router(router)
    return app


@pytest.fixture
def client(mock_queue_service):
    """Create test client."""
    return TestClient(make_app(mock_queue_service))


def test_enqueue_job_success(client, mock_queue_service):
    """Test successful job enqueue via HTTP."""
    job_id = uuid4()
    mock_queue_service.enqueue.return_value = job_id

    response = client.post(
        "/queue/jobs",
        json={
            "job_type": "generate_embedding",
            "payload": {"user_id": "u1", "resume_text": "text"},
            "priority": 5,
        },
    )

    assert response.status_code == 200
    assert response.json()["job_id"] == str(job_id)
    mock_queue_service.enqueue.assert_awaited_once_with(
        JobType.GENERATE_EMBEDDING,
        {"user_id": "u1", "resume_text": "text"},
        priority=5,
        delay_ms=0,
        max_retries=3,
    )


def test_enqueue_job_unknown_type(client):
    """Test that an unknown job type returns 422."""
    response = client.post("/queue/jobs", json={"job_type": "featured_job_matching"})

    assert response.status_code == 422


def test_enqueue_job_max_retries_out_of_range(client):
    response = client.post(
        "/queue/jobs", json={"job_type": "send_weekly_digest", "max_retries": 11}
    )

    assert response.status_code == 422


def test_enqueue_job_value_error(client, mock_queue_service):
    mock_queue_service.enqueue.side_effect = ValueError("payload must be a JSON object")

    response = client.post("/queue/jobs", json={"job_type": "send_weekly_digest"})

    assert response.status_code == 400


def test_get_job_success(client, mock_queue_service):
    job_id = uuid4()
    now = datetime(2024, 6, 3, 2, 0, tzinfo=timezone.utc)
    mock_queue_service.get_job.return_value = QueueJob(
        id=job_id,
        job_type=JobType.SEND_EMAIL_BATCH,
        status=JobStatus.FAILED,
        payload={"job_id": "j", "user_ids": ["u1"]},
        scheduled_for=now,
        retry_count=3,
        error="1 of 1 emails failed",
        created_at=now,
        completed_at=now,
    )

    response = client.get(f"/queue/jobs/{job_id}")

    assert response.status_code == 200
    data = response.json()
    assert data["id"] == str(job_id)
    assert data["status"] == "failed"
    assert data["retry_count"] == 3
    assert data["error"] == "1 of 1 emails failed"


def test_get_job_not_found(client, mock_queue_service):
    """Test that non-existent job returns 404."""
    job_id = uuid4()
    mock_queue_service.get_job.side_effect = JobNotFoundError(job_id)

    response = client.get(f"/queue/jobs/{job_id}")

    assert response.status_code == 404


def test_get_job_invalid_id(client):
    response = client.get("/queue/jobs/not-a-uuid")

    assert response.status_code == 400


def test_get_stats(client, mock_queue_service):
    stats = QueueStats()
    stats.add("send_email_batch", "pending", 3)
    mock_queue_service.get_queue_stats.return_value = stats

    response = client.get("/queue/stats")

    assert response.status_code == 200
    data = response.json()
    assert data["pending"] == 3
    assert data["completed"] == 0
    assert data["by_type"] == {"send_email_batch": {"pending": 3}}


def test_cancel_jobs_by_type(client, mock_queue_service):
    mock_queue_service.cancel_pending_jobs.return_value = 3

    response = client.post("/queue/cancel", json={"job_type": "send_email_batch"})

    assert response.status_code == 200
    assert response.json() == {"cancelled": 3}
    mock_queue_service.cancel_pending_jobs.assert_awaited_once_with(JobType.SEND_EMAIL_BATCH)


def test_cancel_all_jobs(client, mock_queue_service):
    response = client.post("/queue/cancel", json={})

    assert response.status_code == 200
    mock_queue_service.cancel_pending_jobs.assert_awaited_once_with(None)


def test_auth_token_required(mock_queue_service):
    """Test that the token header is enforced when configured."""
    client = TestClient(make_app(mock_queue_service, auth_token="secret"))

    assert client.get("/queue/stats").status_code == 401
    assert (
        client.get("/queue/stats", headers={"X-Board-Jobs-Token": "wrong"}).status_code
        == 401
    )
    assert (
        client.get("/queue/stats", headers={"X-Board-Jobs-Token": "secret"}).status_code
        == 200
    )


def test_auth_error_detail_distinguishes_missing_and_invalid(mock_queue_service):
    client = TestClient(make_app(mock_queue_service, auth_token="secret"))

    missing = client.get("/queue/stats")
    invalid = client.get("/queue/stats", headers={"X-Board-Jobs-Token": "wrong"})

    assert missing.json()["detail"] == "Missing auth token"
    assert invalid.json()["detail"] == "Invalid auth token"
    mock_queue_service.get_queue_stats.assert_not_awaited()


def test_check_auth_token_raises_auth_token_error():
    with pytest.raises(AuthTokenError, match="Missing"):
        check_auth_token("secret", None)
    with pytest.raises(AuthTokenError, match="Invalid"):
        check_auth_token("secret", "secre")

    check_auth_token("secret", "secret")
    check_auth_token(None, None)
    check_auth_token("", "anything")


def test_router_from_config_uses_enqueue_auth_token(mock_queue_service):
    config = BoardJobsConfig(db_dsn="postgresql://localhost/test", enqueue_auth_token="tok")
    app = FastAPI()
    app.include_router(create_queue_router_from_config(lambda: mock_queue_service, config))
    client = TestClient(app)

    assert client.get("/queue/stats").status_code == 401
    assert client.get("/queue/stats", headers={"X-Board-Jobs-Token": "tok"}).status_code == 200


def test_router_from_config_without_token_is_open(mock_queue_service):
    config = BoardJobsConfig(db_dsn="postgresql://localhost/test")
    app = FastAPI()
    app.include_router(create_queue_router_from_config(lambda: mock_queue_service, config))

    assert TestClient(app).get("/queue/stats").status_code == 200


def test_internal_error_returns_500(client, mock_queue_service):
    mock_queue_service.get_queue_stats.side_effect = RuntimeError("db down")

    response = client.get("/queue/stats")

    assert response.status_code == 500
    assert response.json()["detail"] == "Internal server error"
