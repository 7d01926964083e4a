"""Job handler registry (the dispatch table)."""

from collections.abc import Awaitable, Callable
from typing import Any, Optional, Union

from board_jobs.errors import ConfigurationError
from board_jobs.models import HandlerResult, JobType

Handler = Callable[[dict, dict], Awaitable[Union[HandlerResult, dict, None]]]


class JobRegistry:
    """Registry mapping each JobType to exactly one handler."""

    def __init__(self):
        self._handlers: dict[JobType, Handler] = {}

    def handler(self, job_type: Union[JobType, str]):
        """
        Decorator to register a job handler.

        Usage:
            @registry.handler(JobType.GENERATE_EMBEDDING)
            async def generate_embedding(ctx, payload):
                ...
        """
        job_type = JobType(job_type)

        def decorator(func: Handler):
            self._handlers[job_type] = func
            return func

        return decorator

    def get_handler(self, job_type: Union[JobType, str]) -> Optional[Handler]:
        """Get the handler registered for a job type."""
        try:
            return self._handlers.get(JobType(job_type))
        except ValueError:
            return None

    def all_handlers(self) -> dict[JobType, Handler]:
        """Get all registered handlers."""
        return self._handlers.copy()

    def missing_job_types(self) -> list[JobType]:
        """Job types that have no handler yet."""
        return [job_type for job_type in JobType if job_type not in self._handlers]

    def require_complete(self) -> None:
        """Raise ConfigurationError unless every JobType has a handler."""
        missing = self.missing_job_types()
        if missing:
            names = ", ".join(job_type.value for job_type in missing)
            raise ConfigurationError(f"No handler registered for job types: {names}")


def coerce_result(value: Any) -> HandlerResult:
    """Normalise whatever a handler returned into a HandlerResult."""
    if isinstance(value, HandlerResult):
        return value
    if value is None:
        return HandlerResult.ok()
    if isinstance(value, dict):
        if "success" in value:
            data = {k: v for k, v in value.items() if k not in ("success", "error")}
            return HandlerResult(
                success=bool(value["success"]),
                data=data or None,
                error=value.get("error"),
            )
        return HandlerResult.ok(value)
    raise TypeError(f"Unsupported handler result type: {type(value).__name__}")


# Global registry instance
job_registry = JobRegistry()
