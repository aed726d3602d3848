"""
Default job handlers.

The business logic behind every job type (Slack/Fathom sync, meeting rescans,
domain event fan-out) lives in the product service. These handlers implement
the JobHandler protocol by delegating one attempt to that service over HTTP
and translating its answer into a result or a HandlerError.
"""

from typing import Any

import httpx

from jobqueue.config.settings import Settings
from jobqueue.v1.core.exceptions import CORRELATION_ID_HEADER, HandlerError
from jobqueue.v1.infra.jobs.models import JobType
from jobqueue.v1.infra.jobs.processor import JobContext


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
    return f"Handler endpoint returned HTTP {response.status_code}"


class DelegatingJobHandler:
    """
    Runs one attempt by POSTing the job to ``{base_url}/{job_type}``.

    Request body: {"jobId", "userId", "attempts", "payload"}; the correlation id
    travels in the X-Correlation-ID header. A 2xx JSON body (unwrapped from an
    ``{"ok": true, "data": ...}`` envelope when present) is the result; 4xx is a
    permanent failure, 5xx and transport errors are retryable.
    """

    job_type: JobType

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self._transport = transport

    @property
    def endpoint(self) -> str:
        return f"{self.settings.job_handler_base_url.rstrip('/')}/{self.job_type.value}"

    def describe(self, context: JobContext) -> dict[str, Any]:
        """Log fields identifying what this attempt works on."""
        return {}

    async def handle(self, context: JobContext) -> dict[str, Any] | None:
        log = context.logger.bind(endpoint=self.endpoint, **self.describe(context))
        log.debug("jobs.handler.delegating")

        body = {
            "jobId": str(context.job_id),
            "userId": context.user_id,
            "attempts": context.attempts,
            "payload": context.payload.model_dump(
                mode="json", by_alias=True, exclude_none=True
            ),
        }

        try:
            async with httpx.AsyncClient(
                timeout=self.settings.job_handler_timeout_s,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    self.endpoint,
                    json=body,
                    headers={CORRELATION_ID_HEADER: context.correlation_id},
                )
        except httpx.HTTPError as e:
            raise HandlerError(
                f"Handler endpoint unreachable: {e}", retryable=True
            ) from e

        if response.status_code >= 400:
            raise HandlerError(
                _error_message(response),
                retryable=response.status_code >= 500,
                details={"status_code": response.status_code},
            )

        if not response.content:
            return None

        try:
            data = response.json()
        except ValueError:
            raise HandlerError(
                "Handler endpoint returned a non-JSON response", retryable=False
            ) from None

        if isinstance(data, dict) and "ok" in data:
            if not data.get("ok"):
                raise HandlerError(_error_message(response), retryable=False)
            data = data.get("data")

        if data is None or isinstance(data, dict):
            return data
        return {"value": data}


class MeetingRescanHandler(DelegatingJobHandler):
    """
    Re-run task extraction for one meeting.

    Payload: {"meetingId": str, "mode": "completed" | "new" | "both"}
    """

    job_type = JobType.MEETING_RESCAN

    def describe(self, context: JobContext) -> dict[str, Any]:
        return {"meeting_id": context.payload.meeting_id, "mode": context.payload.mode}


class FathomSyncHandler(DelegatingJobHandler):
    """
    Import Fathom recordings for a date range.

    Payload: {"range": "today" | "this_week" | "last_week" | "this_month" | "all"}
    """

    job_type = JobType.FATHOM_SYNC

    def describe(self, context: JobContext) -> dict[str, Any]:
        return {"range": context.payload.range}


class SlackUsersSyncHandler(DelegatingJobHandler):
    """
    Sync workspace members from Slack.

    Payload: {"selectedIds": [str]}  # optional, all members when absent
    """

    job_type = JobType.SLACK_USERS_SYNC

    def describe(self, context: JobContext) -> dict[str, Any]:
        selected = context.payload.selected_ids
        return {"selected_count": len(selected) if selected is not None else None}


class FathomWebhookIngestHandler(DelegatingJobHandler):
    """Payload: {"recordingId": str, "data": {...}}"""

    job_type = JobType.FATHOM_WEBHOOK_INGEST

    def describe(self, context: JobContext) -> dict[str, Any]:
        return {"recording_id": context.payload.recording_id}


class DomainEventDispatchHandler(DelegatingJobHandler):
    """Payload: {"eventId": str}"""

    job_type = JobType.DOMAIN_EVENT_DISPATCH

    def describe(self, context: JobContext) -> dict[str, Any]:
        return {"event_id": context.payload.event_id}


DEFAULT_HANDLERS: tuple[type[DelegatingJobHandler], ...] = (
    MeetingRescanHandler,
    FathomSyncHandler,
    SlackUsersSyncHandler,
    FathomWebhookIngestHandler,
    DomainEventDispatchHandler,
)
