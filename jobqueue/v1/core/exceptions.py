import re
import uuid
from datetime import UTC, datetime
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from jobqueue.config.logging import get_logger

logger = get_logger(__name__)

CORRELATION_ID_HEADER = "X-Correlation-ID"
CORRELATION_ID_ALIASES = (CORRELATION_ID_HEADER, "X-Request-ID")
CORRELATION_ID_MAX_LENGTH = 128
CORRELATION_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]+$")


class JobQueueException(Exception):
    """Base exception for the job queue service."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(JobQueueException):
    """Raised when enqueue input is malformed. Never stored."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_422_UNPROCESSABLE_ENTITY, details)


class NotFoundError(JobQueueException):
    """Raised when a job does not exist (or is not visible to the caller)."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_404_NOT_FOUND, details)


class ConnectivityError(JobQueueException):
    """Raised when the job store cannot be reached."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_503_SERVICE_UNAVAILABLE, details)


class HandlerError(JobQueueException):
    """
    Raised by a job handler during execution.

    The worker records the message on the job. ``retryable=False`` sends the
    job straight to ``failed`` regardless of remaining attempts.
    """

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, status.HTTP_500_INTERNAL_SERVER_ERROR, details)
        self.retryable = retryable


class UnsupportedJobTypeError(HandlerError):
    """No handler is registered for the job's type. Retrying cannot help."""

    def __init__(self, job_type: str):
        super().__init__(
            f"Unsupported job type: {job_type}",
            retryable=False,
            details={"type": job_type},
        )
        self.job_type = job_type


class JobFailedError(JobQueueException):
    """Raised by the client poller when a job reaches ``failed``."""

    def __init__(self, message: str, job: Any = None):
        super().__init__(message, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.job = job


class JobTimeoutError(JobQueueException):
    """Raised by the client poller when a job is not terminal within budget."""

    def __init__(self, message: str = "Job timed out.", job_id: Any = None):
        super().__init__(
            message,
            status.HTTP_504_GATEWAY_TIMEOUT,
            {"job_id": str(job_id)} if job_id else None,
        )
        self.job_id = job_id


def normalize_correlation_id(value: str | None) -> str | None:
    """Return a trimmed correlation id, or None when it is unusable."""
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed or len(trimmed) > CORRELATION_ID_MAX_LENGTH:
        return None
    if not CORRELATION_ID_PATTERN.match(trimmed):
        return None
    return trimmed


def ensure_correlation_id(candidate: str | None = None) -> str:
    return normalize_correlation_id(candidate) or str(uuid.uuid4())


def serialize_error(error: BaseException) -> dict[str, Any]:
    """Structured, user-safe failure info stored on the job."""
    info: dict[str, Any] = {
        "message": str(getattr(error, "message", None) or error) or error.__class__.__name__,
        "name": error.__class__.__name__,
    }
    cause = error.__cause__
    if cause is not None:
        info["cause"] = str(cause) or cause.__class__.__name__
    return info


def create_error_response(
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Create standardized error response envelope."""
    return {
        "ok": False,
        "error": {
            "message": message,
            "code": status_code,
            "details": details or {},
        },
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def create_success_response(
    data: Any, message: str | None = None, request_id: str | None = None
) -> dict[str, Any]:
    """Create standardized success response envelope."""
    return {
        "ok": True,
        "data": data,
        "message": message,
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


async def job_queue_exception_handler(
    request: Request, exc: JobQueueException
) -> JSONResponse:
    """Handle job queue specific exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "Application exception",
        exception=exc.__class__.__name__,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            status_code=exc.status_code,
            message=exc.message,
            details=exc.details,
            request_id=request_id,
        ),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            status_code=exc.status_code,
            message=str(exc.detail),
            request_id=request_id,
        ),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.error(
        "Unhandled exception",
        exception=exc.__class__.__name__,
        message=str(exc),
        request_id=request_id,
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=create_error_response(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            message="Internal server error",
            request_id=request_id,
        ),
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Middleware to add request context and correlation IDs."""

    async def dispatch(self, request: Request, call_next):
        # Reuse the caller's correlation ID when it is well-formed
        inbound = None
        for header in CORRELATION_ID_ALIASES:
            inbound = normalize_correlation_id(request.headers.get(header))
            if inbound:
                break
        request_id = inbound or str(uuid.uuid4())
        request.state.request_id = request_id

        # Add to log context
        from jobqueue.config.logging import add_request_context

        add_request_context(
            request_id=request_id,
            correlation_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        response.headers[CORRELATION_ID_HEADER] = request_id

        return response
