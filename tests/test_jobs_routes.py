"""Job HTTP API: enqueue, status read and backlog report."""

from unittest.mock import Mock
from uuid import uuid4

import pytest
from httpx import AsyncClient

from jobqueue.config.settings import AuthMode
from jobqueue.v1.infra.jobs.models import JobType


@pytest.fixture
def dev_auth(monkeypatch):
    """Trust X-User-ID like the fronting service does."""
    from jobqueue.v1.core import security

    monkeypatch.setattr(security.settings, "auth_mode", AuthMode.DEV)


class TestEnqueueEndpoint:
    async def test_enqueue_job(self, async_client: AsyncClient, payloads, store):
        response = await async_client.post(
            "/v1/jobs",
            json={
                "type": "meeting-rescan",
                "payload": payloads[JobType.MEETING_RESCAN],
                "maxAttempts": 4,
            },
        )

        assert response.status_code == 201
        body = response.json()
        assert body["ok"] is True
        data = body["data"]
        assert data["status"] == "queued"
        assert data["correlationId"] == body["request_id"]

        job = await store.get_by_id(data["jobId"])
        assert job.max_attempts == 4
        assert job.user_id == "DEV_USER"
        assert job.payload == payloads[JobType.MEETING_RESCAN]

    async def test_enqueue_uses_inbound_correlation_id(self, async_client, payloads):
        response = await async_client.post(
            "/v1/jobs",
            json={"type": "fathom-sync", "payload": payloads[JobType.FATHOM_SYNC]},
            headers={"X-Correlation-ID": "trace-abc"},
        )

        assert response.status_code == 201
        assert response.json()["data"]["correlationId"] == "trace-abc"
        assert response.headers["X-Correlation-ID"] == "trace-abc"

    async def test_body_correlation_id_wins(self, async_client, payloads):
        response = await async_client.post(
            "/v1/jobs",
            json={
                "type": "fathom-sync",
                "payload": payloads[JobType.FATHOM_SYNC],
                "correlationId": "from-body",
            },
            headers={"X-Correlation-ID": "from-header"},
        )

        assert response.json()["data"]["correlationId"] == "from-body"

    async def test_unknown_type_is_422(self, async_client):
        response = await async_client.post(
            "/v1/jobs", json={"type": "send-newsletter", "payload": {}}
        )

        assert response.status_code == 422
        body = response.json()
        assert body["ok"] is False
        assert body["error"]["code"] == 422
        assert "Unknown job type" in body["error"]["message"]

    async def test_invalid_payload_is_422(self, async_client):
        response = await async_client.post(
            "/v1/jobs",
            json={"type": "meeting-rescan", "payload": {"meetingId": "m-1"}},
        )

        assert response.status_code == 422
        errors = response.json()["error"]["details"]["errors"]
        assert any(err["loc"] == ["mode"] for err in errors)

    async def test_missing_type_is_422(self, async_client):
        response = await async_client.post("/v1/jobs", json={"payload": {}})
        assert response.status_code == 422

    @pytest.mark.parametrize("max_attempts", [0, 10**30])
    async def test_out_of_range_max_attempts_is_422(
        self, async_client, payloads, store, max_attempts
    ):
        response = await async_client.post(
            "/v1/jobs",
            json={
                "type": "fathom-sync",
                "payload": payloads[JobType.FATHOM_SYNC],
                "maxAttempts": max_attempts,
            },
        )

        assert response.status_code == 422
        snapshot = await store.count_by_status_and_age()
        assert sum(snapshot.by_status.values()) == 0

    async def test_enqueue_kicks_local_worker(self, async_client, payloads, monkeypatch):
        kick = Mock(return_value=False)
        monkeypatch.setattr("jobqueue.v1.infra.jobs.routes.kick_job_worker", kick)

        await async_client.post(
            "/v1/jobs",
            json={"type": "fathom-sync", "payload": payloads[JobType.FATHOM_SYNC]},
        )

        kick.assert_called_once()


class TestGetJobEndpoint:
    async def test_get_job(self, async_client, payloads):
        created = await async_client.post(
            "/v1/jobs",
            json={"type": "fathom-sync", "payload": payloads[JobType.FATHOM_SYNC]},
        )
        job_id = created.json()["data"]["jobId"]

        response = await async_client.get(f"/v1/jobs/{job_id}")

        assert response.status_code == 200
        job = response.json()["data"]["job"]
        assert job["id"] == job_id
        assert job["status"] == "queued"
        assert job["type"] == "fathom-sync"
        assert job["userId"] == "DEV_USER"
        assert job["attempts"] == 0
        assert job["maxAttempts"] == 2
        assert job["payload"] == {"range": "today"}
        assert job["result"] is None
        assert job["error"] is None

    async def test_get_job_shows_outcome(self, async_client, make_job, worker):
        job = await make_job(JobType.SLACK_USERS_SYNC, user_id="DEV_USER")
        await worker.run_cycle()

        response = await async_client.get(f"/v1/jobs/{job.id}")

        data = response.json()["data"]["job"]
        assert data["status"] == "succeeded"
        assert data["result"] == {"done": True}
        assert data["finishedAt"] is not None

    async def test_unknown_job_is_404(self, async_client):
        response = await async_client.get(f"/v1/jobs/{uuid4()}")

        assert response.status_code == 404
        assert response.json()["ok"] is False

    async def test_malformed_job_id_is_404(self, async_client):
        response = await async_client.get("/v1/jobs/not-a-uuid")
        assert response.status_code == 404

    async def test_jobs_are_scoped_to_owner(self, async_client, payloads, dev_auth):
        created = await async_client.post(
            "/v1/jobs",
            json={"type": "fathom-sync", "payload": payloads[JobType.FATHOM_SYNC]},
            headers={"X-User-ID": "alice"},
        )
        assert created.status_code == 201
        job_id = created.json()["data"]["jobId"]

        mine = await async_client.get(f"/v1/jobs/{job_id}", headers={"X-User-ID": "alice"})
        theirs = await async_client.get(f"/v1/jobs/{job_id}", headers={"X-User-ID": "bob"})

        assert mine.status_code == 200
        assert mine.json()["data"]["job"]["userId"] == "alice"
        assert theirs.status_code == 404

    async def test_dev_auth_requires_user_header(self, async_client, dev_auth):
        response = await async_client.get(f"/v1/jobs/{uuid4()}")

        assert response.status_code == 401
        assert "X-User-ID" in response.json()["error"]["message"]


class TestBacklogEndpoint:
    async def test_backlog_report(self, async_client, insert_jobs):
        await insert_jobs(120)

        response = await async_client.get("/v1/jobs/backlog")

        assert response.status_code == 200
        report = response.json()["data"]
        assert report["status"] == "warn"
        assert report["queuedTotal"] == 120
        assert report["thresholds"] == {"warn": 100, "critical": 500}
        assert report["snapshot"]["byStatus"]["queued"] == 120
        assert report["snapshot"]["queuedReady"] == 120
