"""
Job queue Pydantic schemas: per-type payloads, API bodies and backlog reports.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from jobqueue.v1.infra.jobs.models import MAX_ATTEMPTS_LIMIT, JobType


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys, matching the producers' wire format."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


# Payloads, one per job type


class MeetingRescanPayload(CamelModel):
    model_config = ConfigDict(extra="forbid")

    meeting_id: str = Field(..., min_length=1)
    mode: Literal["completed", "new", "both"]


class FathomSyncPayload(CamelModel):
    model_config = ConfigDict(extra="forbid")

    range: Literal["today", "this_week", "last_week", "this_month", "all"]


class SlackUsersSyncPayload(CamelModel):
    model_config = ConfigDict(extra="forbid")

    selected_ids: list[str] | None = None


class FathomWebhookIngestPayload(CamelModel):
    model_config = ConfigDict(extra="forbid")

    recording_id: str = Field(..., min_length=1)
    data: dict[str, Any] | None = None


class DomainEventDispatchPayload(CamelModel):
    model_config = ConfigDict(extra="forbid")

    event_id: str = Field(..., min_length=1)


PAYLOAD_MODELS: dict[JobType, type[CamelModel]] = {
    JobType.MEETING_RESCAN: MeetingRescanPayload,
    JobType.FATHOM_SYNC: FathomSyncPayload,
    JobType.SLACK_USERS_SYNC: SlackUsersSyncPayload,
    JobType.FATHOM_WEBHOOK_INGEST: FathomWebhookIngestPayload,
    JobType.DOMAIN_EVENT_DISPATCH: DomainEventDispatchPayload,
}


# API bodies


class JobEnqueueRequest(CamelModel):
    """Schema for enqueueing jobs via API."""

    type: str = Field(..., description="Job type")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job payload")
    max_attempts: int | None = Field(
        default=None, le=MAX_ATTEMPTS_LIMIT, description="Attempt ceiling"
    )
    correlation_id: str | None = Field(default=None, description="Trace identifier")


class JobEnqueueResponse(CamelModel):
    """Schema for job enqueue response."""

    job_id: UUID
    status: str
    correlation_id: str


class JobError(BaseModel):
    message: str
    name: str | None = None
    cause: str | None = None


class JobResponse(CamelModel):
    """Schema for job API responses."""

    id: UUID
    type: str
    status: str
    user_id: str
    correlation_id: str | None = None
    attempts: int
    max_attempts: int
    payload: dict[str, Any]
    result: dict[str, Any] | None = None
    error: JobError | None = None
    next_run_at: datetime
    lease_expires_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None


# Backlog


class BacklogLevel(str, Enum):
    OK = "ok"
    WARN = "warn"
    CRITICAL = "critical"


class BacklogSnapshot(CamelModel):
    """Counts by status and age at one instant."""

    by_status: dict[str, int]
    queued_ready: int
    queued_delayed: int
    running: int
    running_expired: int
    failed_last_24h: int
    stale: int
    oldest_queued_age_s: float | None = None
    checked_at: datetime

    @property
    def queued_total(self) -> int:
        return self.queued_ready + self.queued_delayed


class BacklogThresholds(BaseModel):
    warn: int
    critical: int


class BacklogReport(CamelModel):
    """Health level computed from a snapshot."""

    status: BacklogLevel
    queued_total: int
    thresholds: BacklogThresholds
    snapshot: BacklogSnapshot
