"""
Polling job worker: claim a batch, run it with bounded concurrency, record
outcomes, repeat until the shutdown token is cancelled.
"""

import asyncio
import contextlib
import os
import socket
import time
from collections.abc import Callable
from uuid import UUID

from jobqueue.config.logging import get_logger
from jobqueue.config.settings import Settings, settings as default_settings
from jobqueue.v1.core.exceptions import (
    ConnectivityError,
    HandlerError,
    UnsupportedJobTypeError,
    serialize_error,
)
from jobqueue.v1.infra.jobs.models import Job
from jobqueue.v1.infra.jobs.monitor import BacklogMonitor
from jobqueue.v1.infra.jobs.processor import JobProcessor
from jobqueue.v1.infra.jobs.shutdown import ShutdownToken
from jobqueue.v1.infra.jobs.store import JobStore

logger = get_logger(__name__)


class JobWorker:
    """
    Database-backed job worker.

    Features:
    - Atomic batch claims (the batch size is the concurrency bound)
    - No sleep between non-empty cycles, so bursts drain quickly
    - Claim leases renewed by heartbeat; expired leases reclaimed periodically
    - Graceful shutdown: a claimed batch always runs to a terminal or retry state
    """

    def __init__(
        self,
        store: JobStore,
        settings: Settings,
        processor: JobProcessor | None = None,
        monitor: BacklogMonitor | None = None,
        worker_id: str | None = None,
        poll_interval_ms: int | None = None,
        batch_size: int | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.settings = settings
        self.processor = processor or JobProcessor()
        self.monitor = monitor
        self.worker_id = worker_id or f"{socket.gethostname()}-{os.getpid()}-{id(self)}"
        self.poll_interval_ms = poll_interval_ms or settings.job_worker_poll_ms
        self.batch_size = batch_size or settings.job_worker_batch
        self._monotonic = monotonic
        self._kicked = asyncio.Event()
        self._last_reap_at: float | None = None
        self.active_jobs: set[UUID] = set()
        self.running = False
        self.cycles = 0

    @property
    def poll_interval_s(self) -> float:
        return self.poll_interval_ms / 1000

    @property
    def heartbeat_interval_s(self) -> float:
        return self.settings.job_lease_timeout_ms / 3000

    async def run(self, token: ShutdownToken) -> None:
        """Loop until ``token`` is cancelled. Never claims after cancellation."""
        if self.running:
            raise RuntimeError("Worker is already running")

        self.processor.registry.ensure_complete()
        self.running = True
        _register_worker(self)
        logger.info(
            "jobs.worker.started",
            worker_id=self.worker_id,
            poll_interval_ms=self.poll_interval_ms,
            batch_size=self.batch_size,
        )

        try:
            while not token.cancelled:
                try:
                    processed = await self.run_cycle()
                except ConnectivityError as e:
                    logger.error(
                        "jobs.worker.cycle.failed",
                        worker_id=self.worker_id,
                        error=e.message,
                        details=e.details,
                    )
                    processed = 0
                except Exception:
                    logger.exception(
                        "jobs.worker.cycle.failed", worker_id=self.worker_id
                    )
                    processed = 0

                if processed == 0 and not token.cancelled:
                    await self._idle(token)

            logger.info(
                "jobs.worker.stopping", worker_id=self.worker_id, reason=token.reason
            )
        finally:
            self.running = False
            _unregister_worker(self)
            logger.info(
                "jobs.worker.stopped",
                worker_id=self.worker_id,
                cycles=self.cycles,
                reason=token.reason,
            )

    async def run_cycle(self) -> int:
        """Claim and execute one batch. Returns the number of jobs processed."""
        await self._maybe_reap()

        jobs = await self.store.claim_batch(self.batch_size, worker_id=self.worker_id)
        if jobs:
            await self._execute_batch(jobs)

        if self.monitor is not None:
            try:
                await self.monitor.maybe_emit()
            except Exception:
                logger.exception("jobs.backlog.check.failed", worker_id=self.worker_id)

        self.cycles += 1
        return len(jobs)

    def kick(self) -> None:
        """Wake an idle worker so it polls now instead of after the interval."""
        self._kicked.set()

    async def _idle(self, token: ShutdownToken) -> None:
        kicked = asyncio.ensure_future(self._kicked.wait())
        stopped = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait(
                {kicked, stopped},
                timeout=self.poll_interval_s,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            kicked.cancel()
            stopped.cancel()
        self._kicked.clear()

    async def _maybe_reap(self) -> None:
        now = self._monotonic()
        interval_s = self.settings.job_reap_interval_ms / 1000
        if self._last_reap_at is not None and now - self._last_reap_at < interval_s:
            return
        self._last_reap_at = now
        await self.store.reclaim_expired_leases()

    async def _execute_batch(self, jobs: list[Job]) -> None:
        job_ids = [job.id for job in jobs]
        self.active_jobs.update(job_ids)
        heartbeat = asyncio.create_task(self._heartbeat_loop(job_ids))

        try:
            outcomes = await asyncio.gather(
                *(self._execute_job(job) for job in jobs), return_exceptions=True
            )
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
            self.active_jobs.difference_update(job_ids)

        # Only store failures reach here; handler errors are recorded on the job
        failures = [o for o in outcomes if isinstance(o, BaseException)]
        if failures:
            raise failures[0]

    async def _execute_job(self, job: Job) -> None:
        log = logger.bind(
            correlation_id=job.correlation_id or str(job.id),
            job_id=str(job.id),
            job_type=job.type,
            user_id=job.user_id,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            worker_id=self.worker_id,
        )
        started_at = self._monotonic()
        log.info("jobs.worker.job.claimed")

        try:
            result = await self.processor.process(job, logger=log)
        except Exception as e:
            retryable = getattr(e, "retryable", True)
            will_retry = retryable and job.attempts < job.max_attempts
            duration_ms = round((self._monotonic() - started_at) * 1000)

            if isinstance(e, UnsupportedJobTypeError):
                log.error(
                    "jobs.worker.job.unsupported_type",
                    duration_ms=duration_ms,
                    error=serialize_error(e),
                )
            else:
                log.error(
                    "jobs.worker.job.failed",
                    duration_ms=duration_ms,
                    will_retry=will_retry,
                    error=serialize_error(e),
                    exc_info=not isinstance(e, HandlerError),
                )

            await self.store.mark_failed_or_retry(
                job.id, e, retryable=retryable, worker_id=self.worker_id
            )
            return

        await self.store.mark_succeeded(job.id, result, worker_id=self.worker_id)
        log.info(
            "jobs.worker.job.succeeded",
            duration_ms=round((self._monotonic() - started_at) * 1000),
        )

    async def _heartbeat_loop(self, job_ids: list[UUID]) -> None:
        """Renew leases for the running batch until it finishes."""
        while True:
            await asyncio.sleep(self.heartbeat_interval_s)
            try:
                await self.store.extend_leases(job_ids, self.worker_id)
            except Exception as e:
                logger.warning(
                    "jobs.worker.heartbeat.failed",
                    worker_id=self.worker_id,
                    error=str(e),
                )


# Worker instance management
_current_worker: JobWorker | None = None


def _register_worker(worker: JobWorker) -> None:
    global _current_worker
    _current_worker = worker


def _unregister_worker(worker: JobWorker) -> None:
    global _current_worker
    if _current_worker is worker:
        _current_worker = None


def get_worker() -> JobWorker | None:
    """The worker running in this process, if any."""
    return _current_worker


def kick_job_worker(settings: Settings | None = None) -> bool:
    """
    Hint the in-process worker to poll immediately after an enqueue.

    An optimization only: without it the job is still claimed within one poll
    interval. Returns True when a worker was woken.
    """
    settings = settings or default_settings
    if settings.job_worker_disable_kick:
        return False

    worker = _current_worker
    if worker is None:
        return False

    try:
        worker.kick()
    except Exception:
        logger.exception("jobs.worker.kick.failed")
        return False
    return True
