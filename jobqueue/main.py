import asyncio
import contextlib
from collections.abc import AsyncIterator

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from jobqueue.config.logging import get_logger, setup_logging
from jobqueue.config.settings import settings
from jobqueue.infra.database import get_database
from jobqueue.v1.core.exceptions import (
    JobQueueException,
    RequestContextMiddleware,
    general_exception_handler,
    http_exception_handler,
    job_queue_exception_handler,
)
from jobqueue.v1.core.registries import job_registry
from jobqueue.v1.healthz import router as health_router
from jobqueue.v1.infra.jobs.monitor import BacklogMonitor
from jobqueue.v1.infra.jobs.registry_init import register_job_handlers
from jobqueue.v1.infra.jobs.routes import router as jobs_router
from jobqueue.v1.infra.jobs.shutdown import ShutdownToken
from jobqueue.v1.infra.jobs.store import JobStore
from jobqueue.v1.infra.jobs.worker import JobWorker

logger = get_logger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the schema in development and optionally run an in-process worker."""
    database = get_database(settings)
    if settings.environment == "development":
        await database.create_all()

    if not settings.job_worker_embedded:
        yield
        await database.close()
        return

    store = JobStore(database.SessionLocal, settings)
    worker = JobWorker(store, settings, monitor=BacklogMonitor(store, settings))
    token = ShutdownToken()
    task = asyncio.create_task(worker.run(token))
    logger.info("Embedded job worker started", worker_id=worker.worker_id)

    try:
        yield
    finally:
        token.cancel(reason="app shutdown")
        await task
        await database.close()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    # Initialize structured logging
    setup_logging()

    register_job_handlers(job_registry, settings)

    app = FastAPI(
        title=settings.app_name,
        description="Durable background job queue",
        version=settings.version,
        debug=settings.debug,
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Add exception handlers
    app.add_exception_handler(JobQueueException, job_queue_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")

    # Freeze registries in non-development environments to prevent runtime modifications
    if settings.environment != "development":
        job_registry.freeze()

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "jobqueue.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )
