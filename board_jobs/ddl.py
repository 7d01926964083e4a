"""Database schema DDL for the job processing queue."""

QUEUE_TABLE_DDL = """
CREATE TABLE job_processing_queue (
  id             UUID PRIMARY KEY,
  job_type       TEXT NOT NULL CHECK (job_type IN (
                   'ingest_external_listings',
                   'generate_embedding',
                   'send_email_batch',
                   'send_weekly_digest',
                   'cleanup_expired_records'
                 )),
  job_id         TEXT,
  user_id        TEXT,

  status         TEXT NOT NULL DEFAULT 'pending'
                 CHECK (status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')),
  payload        JSONB NOT NULL,
  result         JSONB,

  priority       INT NOT NULL DEFAULT 0,
  retry_count    INT NOT NULL DEFAULT 0,
  max_retries    INT NOT NULL DEFAULT 3,
  error          TEXT,

  scheduled_for  TIMESTAMPTZ NOT NULL,
  created_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
  processed_at   TIMESTAMPTZ,
  completed_at   TIMESTAMPTZ,

  CHECK (retry_count <= max_retries)
);

-- Candidate selection: priority DESC, scheduled_for ASC among pending rows
CREATE INDEX idx_queue_pending_candidates
ON job_processing_queue (priority DESC, scheduled_for ASC)
WHERE status = 'pending';

CREATE INDEX idx_queue_status_type
ON job_processing_queue (status, job_type);

-- Garbage collection of terminal rows
CREATE INDEX idx_queue_completed_at
ON job_processing_queue (completed_at)
WHERE status IN ('completed', 'failed', 'cancelled');
"""

DELIVERY_LOG_DDL = """
CREATE TABLE email_deliveries (
  idempotency_key  TEXT PRIMARY KEY,
  delivered_at     TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""
