"""Helpers shared by the job handlers."""

import logging
from typing import Any, Dict, Type, TypeVar

from pydantic import BaseModel, ValidationError

from board_jobs.collaborators import HandlerServices
from board_jobs.errors import PayloadValidationError
from board_jobs.models import JobType

PayloadModel = TypeVar("PayloadModel", bound=BaseModel)

logger = logging.getLogger("board_jobs.handlers")


def validate_payload(
    model: Type[PayloadModel], job_type: JobType, payload: Dict[str, Any]
) -> PayloadModel:
    """Narrow a raw queue payload to the handler's pydantic model."""
    try:
        return model.model_validate(payload or {})
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'payload'}: {err['msg']}"
            for err in e.errors()
        )
        raise PayloadValidationError(job_type.value, problems) from e


def get_logger(ctx: Dict[str, Any]) -> logging.Logger:
    return ctx.get("logger") or logger


def get_services(ctx: Dict[str, Any]) -> HandlerServices:
    services = ctx.get("services")
    if services is None:
        raise RuntimeError("Handler context has no services")
    return services
