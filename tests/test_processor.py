from uuid import uuid4

import pytest
from pydantic import BaseModel

from jobqueue.v1.core.exceptions import HandlerError, UnsupportedJobTypeError
from jobqueue.v1.core.registries import JobRegistry
from jobqueue.v1.infra.jobs.models import Job, JobType
from jobqueue.v1.infra.jobs.processor import JobProcessor
from jobqueue.v1.infra.jobs.schemas import MeetingRescanPayload


def build_job(job_type: str = "meeting-rescan", payload=None) -> Job:
    return Job(
        id=uuid4(),
        type=job_type,
        user_id="user-1",
        correlation_id="corr-1",
        payload=payload if payload is not None else {"meetingId": "m-1", "mode": "new"},
        status="running",
        attempts=1,
        max_attempts=3,
    )


class SummaryResult(BaseModel):
    tasks_found: int


class ReturningHandler:
    def __init__(self, value):
        self.value = value

    async def handle(self, context):
        return self.value


async def test_dispatches_to_registered_handler(processor, stub_handlers):
    job = build_job()

    result = await processor.process(job)

    assert result == {"done": True}
    [context] = stub_handlers[JobType.MEETING_RESCAN].calls
    assert context.job_id == job.id
    assert context.job_type == JobType.MEETING_RESCAN
    assert context.user_id == "user-1"
    assert context.correlation_id == "corr-1"
    assert context.attempts == 1
    assert context.max_attempts == 3
    assert isinstance(context.payload, MeetingRescanPayload)
    assert context.payload.meeting_id == "m-1"
    assert context.payload.mode == "new"
    assert context.logger is not None

    for job_type, handler in stub_handlers.items():
        if job_type != JobType.MEETING_RESCAN:
            assert handler.calls == []


async def test_unknown_type_is_unsupported(processor):
    with pytest.raises(UnsupportedJobTypeError) as exc_info:
        await processor.process(build_job("legacy-export"))

    assert exc_info.value.retryable is False
    assert exc_info.value.job_type == "legacy-export"


async def test_missing_handler_is_unsupported():
    processor = JobProcessor(JobRegistry())

    with pytest.raises(UnsupportedJobTypeError, match="meeting-rescan"):
        await processor.process(build_job())


async def test_invalid_stored_payload_is_not_retryable(processor, stub_handlers):
    with pytest.raises(HandlerError) as exc_info:
        await processor.process(build_job(payload={"mode": "new"}))

    assert exc_info.value.retryable is False
    assert stub_handlers[JobType.MEETING_RESCAN].calls == []


async def test_handler_errors_propagate(processor, stub_handlers):
    stub_handlers[JobType.MEETING_RESCAN].error = HandlerError("Fathom API down")

    with pytest.raises(HandlerError, match="Fathom API down"):
        await processor.process(build_job())


@pytest.mark.parametrize(
    "value,expected",
    [
        (None, None),
        ({"count": 2}, {"count": 2}),
        (SummaryResult(tasks_found=4), {"tasks_found": 4}),
        (7, {"value": 7}),
    ],
)
async def test_result_normalization(value, expected):
    registry = JobRegistry()
    registry.register(JobType.MEETING_RESCAN, ReturningHandler(value))

    result = await JobProcessor(registry).process(build_job())

    assert result == expected
