"""
Durable job store: enqueue, atomic claim, finalize, lease recovery and counts.

Every state transition is a single conditional UPDATE filtered on the current
status, so concurrent workers and producers coordinate through the database
alone.
"""

from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from pydantic import ValidationError as PydanticValidationError
from pydantic_core import PydanticSerializationError
from sqlalchemy import func, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobqueue.config.logging import get_logger
from jobqueue.config.settings import Settings
from jobqueue.infra.database import Base
from jobqueue.v1.core.exceptions import (
    ConnectivityError,
    NotFoundError,
    ValidationError,
    ensure_correlation_id,
    serialize_error,
)
from jobqueue.v1.infra.jobs.models import (
    MAX_ATTEMPTS_LIMIT,
    Job,
    JobStatus,
    JobType,
    utcnow,
)
from jobqueue.v1.infra.jobs.schemas import PAYLOAD_MODELS, BacklogSnapshot

logger = get_logger(__name__)

LEASE_EXPIRED_ERROR = {
    "message": "Worker lease expired before the job finished",
    "name": "LeaseExpired",
}


def validate_job_type(job_type: Any) -> JobType:
    """Coerce a type tag into JobType or raise ValidationError."""
    try:
        return JobType(job_type)
    except ValueError:
        raise ValidationError(
            f"Unknown job type: {job_type}",
            details={"type": job_type, "allowed": [jt.value for jt in JobType]},
        ) from None


def validate_payload(job_type: JobType, payload: Any) -> dict[str, Any]:
    """Validate a payload against its type's model and return the normalized form."""
    if not isinstance(payload, dict):
        raise ValidationError(
            "Job payload must be an object", details={"type": job_type.value}
        )
    model = PAYLOAD_MODELS[job_type]
    try:
        parsed = model.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid payload for job type {job_type.value}",
            details={
                "type": job_type.value,
                "errors": e.errors(include_url=False, include_context=False),
            },
        ) from None
    try:
        return parsed.model_dump(mode="json", by_alias=True, exclude_none=True)
    except PydanticSerializationError as e:
        raise ValidationError(
            f"Job payload for {job_type.value} is not JSON serializable",
            details={"type": job_type.value, "error": str(e)},
        ) from None


class JobStore:
    """
    The only writer of job rows.

    Each operation runs in its own short session/transaction so callers on
    different processes never share state except through the table.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.settings = settings
        self._clock = clock

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except (OperationalError, InterfaceError, PoolTimeoutError, OSError) as e:
            raise ConnectivityError(
                "Job store is unreachable", details={"error": str(e)}
            ) from e

    async def ensure_schema(self) -> None:
        """Create the jobs table and its indexes if missing (dev and tests)."""
        async with self._session() as session:
            connection = await session.connection()
            await connection.run_sync(Base.metadata.create_all)
            await session.commit()

    def backoff_delay(self, attempts: int) -> timedelta:
        """Linear backoff: base delay times the attempts already made."""
        return timedelta(milliseconds=self.settings.job_backoff_base_ms * attempts)

    @property
    def lease_timeout(self) -> timedelta:
        return timedelta(milliseconds=self.settings.job_lease_timeout_ms)

    async def enqueue(
        self,
        type: str | JobType,
        payload: dict[str, Any],
        user_id: str,
        max_attempts: int | None = None,
        correlation_id: str | None = None,
    ) -> Job:
        """
        Create a ``queued`` job that is eligible immediately.

        Raises:
            ValidationError: unknown type, malformed payload, missing user or
                a non-positive attempt ceiling. Nothing is stored.
        """
        job_type = validate_job_type(type)
        normalized = validate_payload(job_type, payload)

        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("user_id is required for job enqueueing")

        if max_attempts is None:
            max_attempts = self.settings.job_default_max_attempts
        if (
            isinstance(max_attempts, bool)
            or not isinstance(max_attempts, int)
            or not 1 <= max_attempts <= MAX_ATTEMPTS_LIMIT
        ):
            raise ValidationError(
                f"max_attempts must be an integer between 1 and {MAX_ATTEMPTS_LIMIT}",
                details={"max_attempts": max_attempts},
            )

        now = self._clock()
        job = Job(
            id=uuid4(),
            type=job_type.value,
            user_id=user_id,
            correlation_id=ensure_correlation_id(correlation_id),
            payload=normalized,
            status=JobStatus.QUEUED.value,
            attempts=0,
            max_attempts=max_attempts,
            next_run_at=now,
            created_at=now,
            updated_at=now,
        )

        async with self._session() as session:
            session.add(job)
            await session.commit()

        logger.info(
            "jobs.enqueued",
            job_id=str(job.id),
            job_type=job.type,
            user_id=user_id,
            correlation_id=job.correlation_id,
            max_attempts=max_attempts,
        )
        return job

    async def claim_batch(self, limit: int, worker_id: str | None = None) -> list[Job]:
        """
        Atomically move up to ``limit`` due jobs from ``queued`` to ``running``.

        Oldest ``next_run_at`` first, then oldest ``created_at``. Never blocks
        on rows another worker is claiming (SKIP LOCKED); returns an empty list
        when nothing is due.
        """
        if limit <= 0:
            return []

        now = self._clock()
        eligible = (
            select(Job.id)
            .where(Job.status == JobStatus.QUEUED.value, Job.next_run_at <= now)
            .order_by(Job.next_run_at, Job.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        claim = (
            update(Job)
            .where(Job.id.in_(eligible))
            .where(Job.status == JobStatus.QUEUED.value)
            .values(
                status=JobStatus.RUNNING.value,
                attempts=Job.attempts + 1,
                locked_by=worker_id,
                lease_expires_at=now + self.lease_timeout,
                started_at=now,
                updated_at=now,
            )
            .returning(Job)
            .execution_options(synchronize_session=False)
        )

        async with self._session() as session:
            result = await session.execute(claim)
            jobs = list(result.scalars().all())
            await session.commit()

        jobs.sort(key=lambda job: (job.next_run_at, job.created_at))
        return jobs

    async def mark_succeeded(
        self,
        job_id: UUID,
        result: dict[str, Any] | None,
        worker_id: str | None = None,
    ) -> Job:
        """
        Transition ``running`` -> ``succeeded`` and store the result.

        Idempotent: a job that is already terminal (or no longer held by
        ``worker_id``) is returned unchanged.
        """
        now = self._clock()
        conditions = [Job.id == job_id, Job.status == JobStatus.RUNNING.value]
        if worker_id is not None:
            conditions.append(Job.locked_by == worker_id)

        stmt = (
            update(Job)
            .where(*conditions)
            .values(
                status=JobStatus.SUCCEEDED.value,
                result=result,
                error=None,
                locked_by=None,
                lease_expires_at=None,
                finished_at=now,
                updated_at=now,
            )
            .returning(Job)
            .execution_options(synchronize_session=False)
        )

        async with self._session() as session:
            updated = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()

        if updated is not None:
            return updated

        current = await self.get_by_id(job_id)
        logger.info(
            "jobs.finalize.skipped",
            job_id=str(job_id),
            status=current.status,
            outcome="succeeded",
        )
        return current

    async def mark_failed_or_retry(
        self,
        job_id: UUID,
        error: BaseException | dict[str, Any] | str,
        retryable: bool = True,
        worker_id: str | None = None,
    ) -> Job:
        """
        Record a failed attempt.

        Requeues with ``next_run_at = now + backoff_delay(attempts)`` while
        attempts remain and the error is retryable; otherwise the job becomes
        ``failed`` for good. Jobs that are not ``running`` are left untouched.
        """
        if isinstance(error, BaseException):
            error_info = serialize_error(error)
        elif isinstance(error, dict):
            error_info = {**error, "message": str(error.get("message") or "Job failed")}
        else:
            error_info = {"message": str(error) or "Job failed"}

        now = self._clock()

        async with self._session() as session:
            row = (
                await session.execute(
                    select(
                        Job.status, Job.attempts, Job.max_attempts, Job.locked_by
                    )
                    .where(Job.id == job_id)
                    .with_for_update()
                )
            ).one_or_none()

            if row is None:
                raise NotFoundError(
                    f"Job not found: {job_id}", details={"job_id": str(job_id)}
                )

            held = worker_id is None or row.locked_by == worker_id
            if row.status != JobStatus.RUNNING.value or not held:
                await session.rollback()
                updated = None
            else:
                will_retry = retryable and row.attempts < row.max_attempts
                values: dict[str, Any] = {
                    "error": error_info,
                    "locked_by": None,
                    "lease_expires_at": None,
                    "updated_at": now,
                }
                if will_retry:
                    values["status"] = JobStatus.QUEUED.value
                    values["next_run_at"] = now + self.backoff_delay(row.attempts)
                else:
                    values["status"] = JobStatus.FAILED.value
                    values["finished_at"] = now

                stmt = (
                    update(Job)
                    .where(
                        Job.id == job_id,
                        Job.status == JobStatus.RUNNING.value,
                        Job.attempts == row.attempts,
                    )
                    .values(**values)
                    .returning(Job)
                    .execution_options(synchronize_session=False)
                )
                updated = (await session.execute(stmt)).scalar_one_or_none()
                await session.commit()

        if updated is not None:
            return updated

        current = await self.get_by_id(job_id)
        logger.info(
            "jobs.finalize.skipped",
            job_id=str(job_id),
            status=current.status,
            outcome="failed",
        )
        return current

    async def get_by_id(self, job_id: UUID | str, user_id: str | None = None) -> Job:
        """Current snapshot of a job, optionally scoped to its owner."""
        if not isinstance(job_id, UUID):
            try:
                job_id = UUID(str(job_id))
            except ValueError:
                raise NotFoundError(
                    f"Job not found: {job_id}", details={"job_id": str(job_id)}
                ) from None

        query = select(Job).where(Job.id == job_id)
        if user_id is not None:
            query = query.where(Job.user_id == user_id)

        async with self._session() as session:
            job = (await session.execute(query)).scalar_one_or_none()

        if job is None:
            raise NotFoundError(
                f"Job not found: {job_id}", details={"job_id": str(job_id)}
            )
        return job

    async def extend_leases(self, job_ids: Iterable[UUID], worker_id: str) -> int:
        """Heartbeat: push out the lease of running jobs this worker holds."""
        ids = list(job_ids)
        if not ids:
            return 0

        now = self._clock()
        stmt = (
            update(Job)
            .where(
                Job.id.in_(ids),
                Job.status == JobStatus.RUNNING.value,
                Job.locked_by == worker_id,
            )
            .values(lease_expires_at=now + self.lease_timeout, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount or 0

    async def reclaim_expired_leases(self) -> int:
        """
        Recover jobs orphaned by a dead worker.

        Running jobs whose lease lapsed go back to ``queued`` (eligible now)
        when attempts remain, else to ``failed``.
        """
        now = self._clock()
        expired = [
            Job.status == JobStatus.RUNNING.value,
            Job.lease_expires_at.is_not(None),
            Job.lease_expires_at <= now,
        ]
        requeue = (
            update(Job)
            .where(*expired, Job.attempts < Job.max_attempts)
            .values(
                status=JobStatus.QUEUED.value,
                next_run_at=now,
                error=LEASE_EXPIRED_ERROR,
                locked_by=None,
                lease_expires_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        fail = (
            update(Job)
            .where(*expired, Job.attempts >= Job.max_attempts)
            .values(
                status=JobStatus.FAILED.value,
                error=LEASE_EXPIRED_ERROR,
                locked_by=None,
                lease_expires_at=None,
                finished_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        async with self._session() as session:
            requeued = (await session.execute(requeue)).rowcount or 0
            failed = (await session.execute(fail)).rowcount or 0
            await session.commit()

        if requeued or failed:
            logger.warning(
                "jobs.worker.lease.reclaimed",
                requeued=requeued,
                failed=failed,
                lease_timeout_ms=self.settings.job_lease_timeout_ms,
            )
        return requeued + failed

    async def count_by_status_and_age(
        self, stale_after: timedelta | None = None
    ) -> BacklogSnapshot:
        """Aggregate counts used by the backlog monitor. Read-only."""
        now = self._clock()
        if stale_after is None:
            stale_after = timedelta(milliseconds=self.settings.job_backlog_stale_after_ms)
        unfinished = [JobStatus.QUEUED.value, JobStatus.RUNNING.value]

        async with self._session() as session:
            by_status = {status.value: 0 for status in JobStatus}
            rows = await session.execute(
                select(Job.status, func.count(Job.id)).group_by(Job.status)
            )
            for status, count in rows.all():
                by_status[status] = count

            queued_ready = (
                await session.execute(
                    select(func.count(Job.id)).where(
                        Job.status == JobStatus.QUEUED.value, Job.next_run_at <= now
                    )
                )
            ).scalar() or 0

            running_expired = (
                await session.execute(
                    select(func.count(Job.id)).where(
                        Job.status == JobStatus.RUNNING.value,
                        Job.lease_expires_at <= now,
                    )
                )
            ).scalar() or 0

            failed_last_24h = (
                await session.execute(
                    select(func.count(Job.id)).where(
                        Job.status == JobStatus.FAILED.value,
                        Job.updated_at >= now - timedelta(hours=24),
                    )
                )
            ).scalar() or 0

            stale = (
                await session.execute(
                    select(func.count(Job.id)).where(
                        Job.status.in_(unfinished),
                        Job.created_at < now - stale_after,
                    )
                )
            ).scalar() or 0

            oldest_queued = (
                await session.execute(
                    select(func.min(Job.created_at)).where(
                        Job.status == JobStatus.QUEUED.value
                    )
                )
            ).scalar()

        queued_total = by_status[JobStatus.QUEUED.value]
        return BacklogSnapshot(
            by_status=by_status,
            queued_ready=queued_ready,
            queued_delayed=max(0, queued_total - queued_ready),
            running=by_status[JobStatus.RUNNING.value],
            running_expired=running_expired,
            failed_last_24h=failed_last_24h,
            stale=stale,
            oldest_queued_age_s=(
                round((now - oldest_queued).total_seconds(), 3)
                if oldest_queued is not None
                else None
            ),
            checked_at=now,
        )
