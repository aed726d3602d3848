"""
Job API endpoints: enqueue, status read and backlog report.
"""

from typing import Any

from fastapi import APIRouter, Depends, Request, status

from jobqueue.config.logging import get_logger
from jobqueue.config.settings import Settings, SettingsDep
from jobqueue.infra.database import Database, get_database
from jobqueue.v1.core.exceptions import create_success_response
from jobqueue.v1.core.security import Principal, PrincipalDep
from jobqueue.v1.infra.jobs.monitor import BacklogMonitor
from jobqueue.v1.infra.jobs.schemas import (
    JobEnqueueRequest,
    JobEnqueueResponse,
    JobResponse,
)
from jobqueue.v1.infra.jobs.store import JobStore
from jobqueue.v1.infra.jobs.worker import kick_job_worker

logger = get_logger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_job_store(
    database: Database = Depends(get_database), settings: Settings = SettingsDep
) -> JobStore:
    return JobStore(database.SessionLocal, settings)


JobStoreDep = Depends(get_job_store)


@router.post("", status_code=status.HTTP_201_CREATED, response_model=dict)
async def enqueue_job(
    job_request: JobEnqueueRequest,
    request: Request,
    principal: Principal = PrincipalDep,
    store: JobStore = JobStoreDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Enqueue a new background job for the calling user."""
    request_id = getattr(request.state, "request_id", None)
    job = await store.enqueue(
        job_request.type,
        job_request.payload,
        principal.user_id,
        max_attempts=job_request.max_attempts,
        correlation_id=job_request.correlation_id or request_id,
    )
    kick_job_worker(settings)

    result = JobEnqueueResponse(
        job_id=job.id, status=job.status, correlation_id=job.correlation_id
    )
    return create_success_response(
        data=result.model_dump(mode="json", by_alias=True), request_id=request_id
    )


@router.get("/backlog", response_model=dict)
async def get_backlog(
    request: Request,
    store: JobStore = JobStoreDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Current backlog level and the counts behind it."""
    report = await BacklogMonitor(store, settings).check()
    return create_success_response(
        data=report.model_dump(mode="json", by_alias=True),
        request_id=getattr(request.state, "request_id", None),
    )


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: str,
    request: Request,
    principal: Principal = PrincipalDep,
    store: JobStore = JobStoreDep,
) -> dict[str, Any]:
    """Status snapshot of one of the caller's jobs."""
    job = await store.get_by_id(job_id, user_id=principal.user_id)
    data = JobResponse.model_validate(job).model_dump(mode="json", by_alias=True)
    return create_success_response(
        data={"job": data}, request_id=getattr(request.state, "request_id", None)
    )
