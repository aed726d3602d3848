import logging
import sys
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import structlog
from httpx import ASGITransport, AsyncClient

from jobqueue.config.settings import Settings, get_settings
from jobqueue.infra.database import Database, get_database
from jobqueue.v1.core.registries import JobRegistry
from jobqueue.v1.infra.jobs.models import Job, JobStatus, JobType
from jobqueue.v1.infra.jobs.processor import JobProcessor
from jobqueue.v1.infra.jobs.store import JobStore
from jobqueue.v1.infra.jobs.worker import JobWorker

DEFAULT_PAYLOADS: dict[JobType, dict[str, Any]] = {
    JobType.MEETING_RESCAN: {"meetingId": "m-1", "mode": "both"},
    JobType.FATHOM_SYNC: {"range": "today"},
    JobType.SLACK_USERS_SYNC: {"selectedIds": ["U1", "U2"]},
    JobType.FATHOM_WEBHOOK_INGEST: {"recordingId": "rec-1", "data": {"title": "Sync"}},
    JobType.DOMAIN_EVENT_DISPATCH: {"eventId": "evt-1"},
}


@pytest.fixture(scope="session", autouse=True)
def configure_test_logging():
    """Plain-text logs to stderr without logger caching, so capture_logs works."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
        logger_factory=structlog.WriteLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
    yield
    structlog.reset_defaults()


class FakeClock:
    """Deterministic wall clock for the store."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class StubHandler:
    """Records every context it sees; raises ``error`` or returns ``result``."""

    def __init__(self, result: dict[str, Any] | None = None):
        self.result = result if result is not None else {"done": True}
        self.error: BaseException | None = None
        self.calls = []

    async def handle(self, context):
        self.calls.append(context)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings pointing at a file-backed SQLite database per test."""
    return Settings(
        _env_file=None,
        environment="development",
        debug=True,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}",
        job_worker_poll_ms=100,
        job_worker_batch=5,
        job_backoff_base_ms=10_000,
        job_default_max_attempts=2,
        job_lease_timeout_ms=60_000,
        job_reap_interval_ms=60_000,
        job_backlog_warn_threshold=100,
        job_backlog_critical_threshold=500,
        job_handler_base_url="http://handlers.test/jobs",
    )


@pytest.fixture
async def database(test_settings) -> AsyncGenerator[Database, None]:
    """Create a test database with the jobs table."""
    db = Database(test_settings)
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime.now(UTC).replace(microsecond=0))


@pytest.fixture
def store(database, test_settings, clock) -> JobStore:
    return JobStore(database.SessionLocal, test_settings, clock=clock)


@pytest.fixture
def payloads() -> dict[JobType, dict[str, Any]]:
    """A valid payload per job type."""
    return {job_type: dict(payload) for job_type, payload in DEFAULT_PAYLOADS.items()}


@pytest.fixture
def make_job(store):
    """Enqueue a job with a valid payload for its type."""

    async def _make(
        job_type: JobType = JobType.FATHOM_SYNC, user_id: str = "user-1", **kwargs: Any
    ) -> Job:
        return await store.enqueue(job_type, DEFAULT_PAYLOADS[job_type], user_id, **kwargs)

    return _make


@pytest.fixture
def stub_handlers() -> dict[JobType, StubHandler]:
    return {job_type: StubHandler() for job_type in JobType}


@pytest.fixture
def registry(stub_handlers) -> JobRegistry:
    """A complete registry backed by stub handlers."""
    registry = JobRegistry()
    for job_type, handler in stub_handlers.items():
        registry.register(job_type, handler)
    return registry


@pytest.fixture
def processor(registry) -> JobProcessor:
    return JobProcessor(registry)


@pytest.fixture
def worker(store, test_settings, processor) -> JobWorker:
    return JobWorker(
        store,
        test_settings,
        processor=processor,
        worker_id="worker-test",
        poll_interval_ms=100,
        batch_size=5,
    )


@pytest.fixture
def insert_jobs(database, clock):
    """Bulk-insert job rows directly, bypassing enqueue validation."""

    async def _insert(count: int, **fields: Any) -> list[Job]:
        now = clock()
        values = {
            "type": JobType.FATHOM_SYNC.value,
            "user_id": "user-1",
            "payload": DEFAULT_PAYLOADS[JobType.FATHOM_SYNC],
            "status": JobStatus.QUEUED.value,
            "attempts": 0,
            "max_attempts": 2,
            "next_run_at": now,
            "created_at": now,
            "updated_at": now,
        }
        values.update(fields)
        jobs = [
            Job(correlation_id=f"bulk-{i}", **values) for i in range(count)
        ]
        async with database.SessionLocal() as session:
            session.add_all(jobs)
            await session.commit()
        return jobs

    return _insert


@pytest.fixture
def app(database, test_settings, monkeypatch):
    """Create a test FastAPI application with the test database."""
    from jobqueue.main import create_app

    monkeypatch.setattr("jobqueue.main.setup_logging", lambda *args, **kwargs: None)
    app = create_app()

    app.dependency_overrides[get_database] = lambda: database
    app.dependency_overrides[get_settings] = lambda: test_settings

    yield app

    # Clean up
    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
