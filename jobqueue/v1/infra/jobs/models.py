"""
Job queue models.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Text,
    TypeDecorator,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from jobqueue.infra.database import Base


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always comes back as UTC (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(UTC)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


class JobStatus(str, Enum):
    """Job status enumeration."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class JobType(str, Enum):
    """Closed set of job types; each needs a registered handler."""

    MEETING_RESCAN = "meeting-rescan"
    FATHOM_SYNC = "fathom-sync"
    SLACK_USERS_SYNC = "slack-users-sync"
    FATHOM_WEBHOOK_INGEST = "fathom-webhook-ingest"
    DOMAIN_EVENT_DISPATCH = "domain-event-dispatch"


# Largest attempt ceiling the INTEGER columns hold
MAX_ATTEMPTS_LIMIT = 2_147_483_647


def utcnow() -> datetime:
    return datetime.now(UTC)


class Job(Base):
    """
    One unit of durable background work.

    Mutated only through JobStore: enqueue creates it ``queued``; claim moves it
    to ``running`` under a lease; finalize moves it to ``succeeded``/``failed``
    or back to ``queued`` with a backoff delay.
    """

    __tablename__ = "jobs"

    # Core fields
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Job type identifier"
    )
    user_id: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Owning principal"
    )
    correlation_id: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Trace identifier"
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict, comment="Type-specific parameters"
    )

    # Job state
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.QUEUED.value,
        comment="Job status: queued|running|succeeded|failed",
    )
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Number of attempts made"
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, comment="Attempt ceiling"
    )
    next_run_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, comment="Earliest time to claim"
    )

    # Worker coordination
    locked_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker ID holding the claim"
    )
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Claim is reclaimable after this"
    )

    # Outcome
    result: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Handler result, set on success"
    )
    error: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Last failure {message, name, cause}"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'running', 'succeeded', 'failed')",
            name="jobs_status_check",
        ),
        CheckConstraint("max_attempts >= 1", name="jobs_max_attempts_check"),
        CheckConstraint(
            "attempts >= 0 AND attempts <= max_attempts", name="jobs_attempts_check"
        ),
        Index("ix_jobs_status_next_run_at", "status", "next_run_at", "created_at"),
        Index("ix_jobs_user_id_created_at", "user_id", "created_at"),
        Index("ix_jobs_type_status", "type", "status"),
        Index("ix_jobs_correlation_id_created_at", "correlation_id", "created_at"),
        Index("ix_jobs_status_lease_expires_at", "status", "lease_expires_at"),
    )
