"""
Backlog monitor: turns queue counts into an ok/warn/critical health level.

Advisory only; it reads the store and never changes job state.
"""

import time
from collections.abc import Callable

from jobqueue.config.logging import get_logger
from jobqueue.config.settings import Settings
from jobqueue.v1.infra.jobs.schemas import (
    BacklogLevel,
    BacklogReport,
    BacklogThresholds,
)
from jobqueue.v1.infra.jobs.store import JobStore

logger = get_logger(__name__)

EXIT_CODES = {
    BacklogLevel.OK: 0,
    BacklogLevel.WARN: 0,
    BacklogLevel.CRITICAL: 1,
}


def classify_backlog(queued_total: int, warn: int, critical: int) -> BacklogLevel:
    if queued_total >= critical:
        return BacklogLevel.CRITICAL
    if queued_total >= warn:
        return BacklogLevel.WARN
    return BacklogLevel.OK


def exit_code_for(level: BacklogLevel) -> int:
    """Process exit code for the standalone health check."""
    return EXIT_CODES[level]


class BacklogMonitor:
    """Computes and publishes backlog health at a fixed interval."""

    def __init__(
        self,
        store: JobStore,
        settings: Settings,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.settings = settings
        self._monotonic = monotonic
        self._last_emitted_at: float | None = None

    @property
    def thresholds(self) -> BacklogThresholds:
        return BacklogThresholds(
            warn=self.settings.job_backlog_warn_threshold,
            critical=self.settings.job_backlog_critical_threshold,
        )

    @property
    def interval_s(self) -> float:
        return self.settings.job_worker_backlog_log_interval_ms / 1000

    async def check(self) -> BacklogReport:
        """Take a snapshot and compute its level."""
        snapshot = await self.store.count_by_status_and_age()
        thresholds = self.thresholds
        queued_total = snapshot.queued_total
        return BacklogReport(
            status=classify_backlog(queued_total, thresholds.warn, thresholds.critical),
            queued_total=queued_total,
            thresholds=thresholds,
            snapshot=snapshot,
        )

    def emit(self, report: BacklogReport) -> None:
        """Publish the report as a structured log event at the matching level."""
        log = {
            BacklogLevel.OK: logger.info,
            BacklogLevel.WARN: logger.warning,
            BacklogLevel.CRITICAL: logger.error,
        }[report.status]
        log(
            f"jobs.backlog.{report.status.value}",
            queued_total=report.queued_total,
            thresholds=report.thresholds.model_dump(),
            snapshot=report.snapshot.model_dump(mode="json"),
        )

    async def maybe_emit(self) -> BacklogReport | None:
        """Check and emit only if a full interval passed since the last event."""
        now = self._monotonic()
        if (
            self._last_emitted_at is not None
            and now - self._last_emitted_at < self.interval_s
        ):
            return None
        self._last_emitted_at = now
        report = await self.check()
        self.emit(report)
        return report

    async def run(self, token) -> None:
        """Emit every interval until the shutdown token is cancelled."""
        while not token.cancelled:
            try:
                self.emit(await self.check())
            except Exception:
                logger.exception("jobs.backlog.check.failed")
            await token.wait(timeout=self.interval_s)


async def run_health_check(monitor: BacklogMonitor) -> tuple[BacklogReport, int]:
    """One-shot check for external alerting: the report and its exit code."""
    report = await monitor.check()
    monitor.emit(report)
    return report, exit_code_for(report.status)

