from datetime import timedelta

import pytest
from structlog.testing import capture_logs

from jobqueue.v1.infra.jobs.monitor import (
    BacklogMonitor,
    classify_backlog,
    exit_code_for,
    run_health_check,
)
from jobqueue.v1.infra.jobs.schemas import BacklogLevel
from jobqueue.v1.infra.jobs.shutdown import ShutdownToken


class FakeMonotonic:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.parametrize(
    "queued,expected",
    [
        (0, BacklogLevel.OK),
        (99, BacklogLevel.OK),
        (100, BacklogLevel.WARN),
        (499, BacklogLevel.WARN),
        (500, BacklogLevel.CRITICAL),
        (10_000, BacklogLevel.CRITICAL),
    ],
)
def test_classify_backlog(queued, expected):
    assert classify_backlog(queued, warn=100, critical=500) == expected


def test_only_critical_fails_the_health_check():
    assert exit_code_for(BacklogLevel.OK) == 0
    assert exit_code_for(BacklogLevel.WARN) == 0
    assert exit_code_for(BacklogLevel.CRITICAL) != 0


async def test_warn_backlog_exits_zero(store, test_settings, insert_jobs):
    await insert_jobs(150)

    with capture_logs() as logs:
        report, exit_code = await run_health_check(BacklogMonitor(store, test_settings))

    assert report.status == BacklogLevel.WARN
    assert report.queued_total == 150
    assert exit_code == 0
    assert [e["event"] for e in logs] == ["jobs.backlog.warn"]
    assert logs[0]["log_level"] == "warning"


async def test_critical_backlog_exits_nonzero(store, test_settings, insert_jobs):
    await insert_jobs(600)

    with capture_logs() as logs:
        report, exit_code = await run_health_check(BacklogMonitor(store, test_settings))

    assert report.status == BacklogLevel.CRITICAL
    assert report.thresholds.warn == 100
    assert report.thresholds.critical == 500
    assert exit_code != 0
    assert logs[0]["event"] == "jobs.backlog.critical"
    assert logs[0]["log_level"] == "error"
    assert logs[0]["queued_total"] == 600


async def test_delayed_retries_count_toward_backlog(
    store, test_settings, insert_jobs, clock
):
    await insert_jobs(60)
    await insert_jobs(60, attempts=1, next_run_at=clock() + timedelta(minutes=1))
    await insert_jobs(300, status="succeeded", attempts=1)

    report = await BacklogMonitor(store, test_settings).check()

    assert report.queued_total == 120
    assert report.snapshot.queued_delayed == 60
    assert report.status == BacklogLevel.WARN


async def test_maybe_emit_respects_interval(store, test_settings):
    monotonic = FakeMonotonic()
    monitor = BacklogMonitor(store, test_settings, monotonic=monotonic)

    with capture_logs() as logs:
        assert await monitor.maybe_emit() is not None
        monotonic.now += 30
        assert await monitor.maybe_emit() is None
        monotonic.now += 30
        assert await monitor.maybe_emit() is not None

    assert [e["event"] for e in logs] == ["jobs.backlog.ok", "jobs.backlog.ok"]


async def test_run_stops_when_cancelled(store, test_settings):
    monitor = BacklogMonitor(store, test_settings)
    token = ShutdownToken()
    token.cancel()

    with capture_logs() as logs:
        await monitor.run(token)

    assert logs == []
