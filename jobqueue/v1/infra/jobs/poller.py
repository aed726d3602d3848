"""
Client-side poller: wait for a job to finish and hand back a synchronous-looking
result.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any
from uuid import UUID

import httpx

from jobqueue.config.logging import get_logger
from jobqueue.v1.core.exceptions import (
    CORRELATION_ID_HEADER,
    ConnectivityError,
    JobFailedError,
    JobTimeoutError,
    NotFoundError,
)
from jobqueue.v1.infra.jobs.models import JobStatus
from jobqueue.v1.infra.jobs.schemas import JobResponse
from jobqueue.v1.infra.jobs.store import JobStore

logger = get_logger(__name__)

DEFAULT_INTERVAL_S = 1.2
DEFAULT_TIMEOUT_S = 300.0

JobFetcher = Callable[[UUID | str], Awaitable[JobResponse]]


class StoreJobFetcher:
    """Reads job status straight from the store (same-process producers)."""

    def __init__(self, store: JobStore, user_id: str | None = None):
        self.store = store
        self.user_id = user_id

    async def __call__(self, job_id: UUID | str) -> JobResponse:
        job = await self.store.get_by_id(job_id, user_id=self.user_id)
        return JobResponse.model_validate(job)


class HttpJobFetcher:
    """Reads job status from ``GET /v1/jobs/{id}``."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        headers: dict[str, str] | None = None,
        correlation_id: str | None = None,
    ):
        self.client = client
        self.headers = dict(headers or {})
        if correlation_id:
            self.headers[CORRELATION_ID_HEADER] = correlation_id

    async def __call__(self, job_id: UUID | str) -> JobResponse:
        try:
            response = await self.client.get(f"/v1/jobs/{job_id}", headers=self.headers)
        except httpx.RequestError as e:
            raise ConnectivityError(f"Failed to load job status: {e}") from e

        try:
            body: dict[str, Any] = response.json()
        except ValueError:
            body = {}

        if response.status_code == 404:
            raise NotFoundError(f"Job not found: {job_id}", details={"job_id": str(job_id)})
        if response.status_code >= 400:
            message = (body.get("error") or {}).get("message") or "Failed to load job status."
            raise ConnectivityError(message, details={"status_code": response.status_code})

        job = (body.get("data") or {}).get("job")
        if not job:
            raise ConnectivityError("Job status response is missing job data.")
        return JobResponse.model_validate(job)


async def poll_job_until_done(
    fetch_job: JobFetcher,
    job_id: UUID | str,
    interval_s: float = DEFAULT_INTERVAL_S,
    timeout_s: float = DEFAULT_TIMEOUT_S,
) -> JobResponse:
    """
    Fetch the job every ``interval_s`` until it is terminal.

    Returns the job once ``succeeded``.

    Raises:
        JobFailedError: the job ended ``failed``; carries the stored message.
        JobTimeoutError: not terminal within ``timeout_s``. The job itself
            keeps running server-side.
        NotFoundError: the job does not exist.
    """
    started_at = time.monotonic()

    while True:
        job = await fetch_job(job_id)

        if job.status == JobStatus.SUCCEEDED.value:
            return job

        if job.status == JobStatus.FAILED.value:
            message = (job.error.message if job.error else None) or "Background job failed."
            raise JobFailedError(message, job=job)

        elapsed = time.monotonic() - started_at
        if elapsed >= timeout_s:
            logger.warning(
                "jobs.poller.timeout",
                job_id=str(job_id),
                status=job.status,
                timeout_s=timeout_s,
            )
            raise JobTimeoutError(job_id=job_id)

        await asyncio.sleep(min(interval_s, max(0.0, timeout_s - elapsed)))
