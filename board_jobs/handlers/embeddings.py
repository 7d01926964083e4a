"""Resume embedding generation."""

import re
from typing import Any, Dict

from pydantic import BaseModel, Field

from board_jobs.errors import PayloadValidationError
from board_jobs.handlers.base import get_logger, get_services, validate_payload
from board_jobs.models import HandlerResult, JobType
from board_jobs.registry import job_registry

# Roughly 8000 tokens at 4 characters per token
MAX_RESUME_CHARS = 32_000

_WHITESPACE_RE = re.compile(r"\s+")
_EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_PHONE_RE = re.compile(r"\b\d{3}[-.\s]?\d{3}[-.\s]?\d{4}\b")


def preprocess_resume_text(text: str) -> str:
    """Collapse whitespace, mask contact details and cap the length."""
    cleaned = _WHITESPACE_RE.sub(" ", text or "").strip()
    cleaned = _EMAIL_RE.sub("[EMAIL]", cleaned)
    cleaned = _PHONE_RE.sub("[PHONE]", cleaned)
    return cleaned[:MAX_RESUME_CHARS]


class EmbeddingPayload(BaseModel):
    user_id: str = Field(min_length=1)
    resume_text: str = Field(min_length=1)


@job_registry.handler(JobType.GENERATE_EMBEDDING)
async def generate_embedding(ctx: Dict[str, Any], payload: Dict[str, Any]):
    """Embed a user's resume and store it as their single current embedding."""
    params = validate_payload(EmbeddingPayload, JobType.GENERATE_EMBEDDING, payload)
    logger = get_logger(ctx)
    services = get_services(ctx)
    client = services.require("embedding_client")
    repository = services.require("embeddings")

    processed = preprocess_resume_text(params.resume_text)
    if not processed:
        raise PayloadValidationError(
            JobType.GENERATE_EMBEDDING.value, "resume_text is empty after preprocessing"
        )

    embedding = await client.embed(processed)
    await repository.upsert_embedding(params.user_id, embedding, client.model, processed)

    logger.info(
        f"Stored {len(embedding)}-dimension embedding for user {params.user_id}"
    )
    return HandlerResult.ok(
        {
            "user_id": params.user_id,
            "model": client.model,
            "dimensions": len(embedding),
            "characters": len(processed),
        }
    )
