"""
Job handlers. Importing this package registers one handler per JobType on
the global ``job_registry``.
"""

from board_jobs.handlers.email import send_email_batch, send_weekly_digest
from board_jobs.handlers.embeddings import generate_embedding, preprocess_resume_text
from board_jobs.handlers.ingestion import ingest_external_listings
from board_jobs.handlers.maintenance import cleanup_expired_records

__all__ = [
    "cleanup_expired_records",
    "generate_embedding",
    "ingest_external_listings",
    "preprocess_resume_text",
    "send_email_batch",
    "send_weekly_digest",
]
