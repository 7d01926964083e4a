"""Unit tests for DDL module."""

from board_jobs.ddl import DELIVERY_LOG_DDL, QUEUE_TABLE_DDL
from board_jobs.models import JobStatus, JobType


def test_queue_table_ddl_contains_create_table():
    """Test that DDL contains CREATE TABLE statement."""
    assert "CREATE TABLE job_processing_queue" in QUEUE_TABLE_DDL


def test_queue_table_ddl_contains_required_columns():
    """Test that DDL contains all required columns."""
    required_columns = [
        "id",
        "job_type",
        "job_id",
        "user_id",
        "status",
        "payload",
        "result",
        "priority",
        "retry_count",
        "max_retries",
        "error",
        "scheduled_for",
        "created_at",
        "processed_at",
        "completed_at",
    ]

    for column in required_columns:
        assert column in QUEUE_TABLE_DDL, f"Column {column} not found in DDL"


def test_queue_table_ddl_constrains_enums():
    """Test every job type and status is allowed by the CHECK constraints."""
    for job_type in JobType:
        assert f"'{job_type.value}'" in QUEUE_TABLE_DDL
    for status in JobStatus:
        assert f"'{status.value}'" in QUEUE_TABLE_DDL


def test_queue_table_ddl_bounds_retry_count():
    assert "CHECK (retry_count <= max_retries)" in QUEUE_TABLE_DDL


def test_queue_table_ddl_contains_candidate_index():
    assert "idx_queue_pending_candidates" in QUEUE_TABLE_DDL
    assert "priority DESC, scheduled_for ASC" in QUEUE_TABLE_DDL


def test_delivery_log_ddl():
    assert "CREATE TABLE email_deliveries" in DELIVERY_LOG_DDL
    assert "idempotency_key  TEXT PRIMARY KEY" in DELIVERY_LOG_DDL
