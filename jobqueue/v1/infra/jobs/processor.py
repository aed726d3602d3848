"""
Job processor: a closed dispatch table from job type to handler.
"""

from dataclasses import dataclass
from typing import Any
from uuid import UUID

import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from jobqueue.config.logging import get_logger
from jobqueue.v1.core.exceptions import HandlerError, UnsupportedJobTypeError
from jobqueue.v1.core.registries import JobRegistry, job_registry
from jobqueue.v1.infra.jobs.models import Job, JobType
from jobqueue.v1.infra.jobs.schemas import PAYLOAD_MODELS


@dataclass(frozen=True)
class JobContext:
    """Everything a handler gets to see about the job it runs."""

    job_id: UUID
    job_type: JobType
    user_id: str
    payload: BaseModel
    correlation_id: str
    attempts: int
    max_attempts: int
    logger: structlog.BoundLogger


class JobProcessor:
    """Dispatches a claimed job to the handler registered for its type."""

    def __init__(self, registry: JobRegistry | None = None):
        self.registry = registry if registry is not None else job_registry

    def resolve(self, job_type: str) -> tuple[JobType, Any]:
        """Look up the handler for a type tag, failing fast when there is none."""
        try:
            resolved = JobType(job_type)
            return resolved, self.registry.get(resolved)
        except (ValueError, KeyError):
            raise UnsupportedJobTypeError(job_type) from None

    async def process(
        self, job: Job, logger: structlog.BoundLogger | None = None
    ) -> dict[str, Any] | None:
        job_type, handler = self.resolve(job.type)

        try:
            payload = PAYLOAD_MODELS[job_type].model_validate(job.payload)
        except PydanticValidationError as e:
            raise HandlerError(
                f"Stored payload is invalid for job type {job_type.value}",
                retryable=False,
                details={"errors": e.errors(include_url=False, include_context=False)},
            ) from e

        context = JobContext(
            job_id=job.id,
            job_type=job_type,
            user_id=job.user_id,
            payload=payload,
            correlation_id=job.correlation_id,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            logger=logger or get_logger(__name__).bind(job_id=str(job.id)),
        )

        result = await handler.handle(context)

        if result is None or isinstance(result, dict):
            return result
        if isinstance(result, BaseModel):
            return result.model_dump(mode="json", by_alias=True)
        return {"value": result}
