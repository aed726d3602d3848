from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text

from jobqueue.config.settings import Settings, SettingsDep
from jobqueue.infra.database import Database, get_database
from jobqueue.v1.core.exceptions import create_success_response
from jobqueue.v1.infra.jobs.monitor import BacklogMonitor
from jobqueue.v1.infra.jobs.routes import JobStoreDep
from jobqueue.v1.infra.jobs.store import JobStore
from jobqueue.v1.infra.jobs.worker import get_worker

router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class QueueHealth(BaseModel):
    """Job queue health as seen from this process."""

    backlog_level: str | None = None
    queued_total: int | None = None
    running_expired: int | None = None
    embedded_worker: bool = False
    error: str | None = None


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep,
    database: Database = Depends(get_database),
    store: JobStore = JobStoreDep,
):
    """Health check with database connectivity and backlog level."""

    timestamp = datetime.now(UTC).isoformat()

    db_health = await _check_database_health(database)
    queue_health = QueueHealth(embedded_worker=get_worker() is not None)

    if db_health.connected:
        try:
            report = await BacklogMonitor(store, settings).check()
            queue_health.backlog_level = report.status.value
            queue_health.queued_total = report.queued_total
            queue_health.running_expired = report.snapshot.running_expired
        except Exception as e:
            # Backlog is advisory; it never fails the health check
            queue_health.error = str(e)

    health_data = {
        "ok": db_health.connected,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "database": db_health.model_dump(),
        "queue": queue_health.model_dump(),
    }

    return create_success_response(data=health_data)


async def _check_database_health(database: Database) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        async with database.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        return DatabaseHealth(connected=False, error=str(e))
