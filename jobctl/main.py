"""Job Queue CLI - worker process, backlog health check and job operations"""

import asyncio
import contextlib
import json
import sys
from collections.abc import AsyncIterator

import typer
from rich.console import Console

from jobqueue.config.logging import setup_logging
from jobqueue.config.settings import Settings, settings
from jobqueue.infra.database import Database
from jobqueue.v1.core.exceptions import (
    ConnectivityError,
    JobFailedError,
    JobTimeoutError,
    NotFoundError,
    ValidationError,
)
from jobqueue.v1.core.registries import job_registry
from jobqueue.v1.infra.jobs.models import JobType
from jobqueue.v1.infra.jobs.monitor import BacklogMonitor, run_health_check
from jobqueue.v1.infra.jobs.poller import StoreJobFetcher, poll_job_until_done
from jobqueue.v1.infra.jobs.registry_init import register_job_handlers
from jobqueue.v1.infra.jobs.schemas import JobResponse
from jobqueue.v1.infra.jobs.shutdown import ShutdownToken, install_signal_handlers
from jobqueue.v1.infra.jobs.store import JobStore
from jobqueue.v1.infra.jobs.worker import JobWorker

from .utils.formatting import (
    create_backlog_table,
    create_job_panel,
    print_error,
    print_success,
    print_warning,
)

console = Console()

app = typer.Typer(
    name="jobctl",
    help="⚙️ Job Queue - worker and operations CLI",
    rich_markup_mode="rich",
)


@contextlib.asynccontextmanager
async def open_store(settings: Settings) -> AsyncIterator[JobStore]:
    """Job store on a short-lived engine; creates the schema in development."""
    database = Database(settings)
    store = JobStore(database.SessionLocal, settings)
    try:
        if settings.environment == "development":
            await store.ensure_schema()
        yield store
    finally:
        await database.close()


def _job_data(job) -> dict:
    return JobResponse.model_validate(job).model_dump(mode="json", by_alias=True)


@app.command()
def worker(
    poll_ms: int | None = typer.Option(None, "--poll-ms", help="Idle poll interval (ms)"),
    batch: int | None = typer.Option(None, "--batch", "-b", help="Jobs claimed per cycle"),
):
    """🏃 Run the job worker until SIGINT/SIGTERM"""
    setup_logging(stream=sys.stderr)
    register_job_handlers(job_registry, settings)

    async def _run() -> None:
        token = ShutdownToken()
        install_signal_handlers(token)
        async with open_store(settings) as store:
            job_worker = JobWorker(
                store,
                settings,
                monitor=BacklogMonitor(store, settings),
                poll_interval_ms=poll_ms,
                batch_size=batch,
            )
            await job_worker.run(token)

    asyncio.run(_run())


@app.command()
def backlog(
    table: bool = typer.Option(False, "--table", help="Render a table instead of JSON"),
):
    """📊 Print the backlog report; exit 1 when the level is critical"""
    setup_logging(stream=sys.stderr)

    async def _check():
        async with open_store(settings) as store:
            return await run_health_check(BacklogMonitor(store, settings))

    try:
        report, exit_code = asyncio.run(_check())
    except ConnectivityError as e:
        print_error(f"Backlog check failed: {e.message}")
        raise typer.Exit(1) from None

    if table:
        console.print(create_backlog_table(report))
    else:
        typer.echo(report.model_dump_json(by_alias=True, indent=2))

    raise typer.Exit(exit_code)


@app.command()
def monitor():
    """📡 Emit the backlog event every log interval until interrupted"""
    setup_logging(stream=sys.stderr)

    async def _run() -> None:
        token = ShutdownToken()
        install_signal_handlers(token)
        async with open_store(settings) as store:
            await BacklogMonitor(store, settings).run(token)

    asyncio.run(_run())


@app.command()
def reap():
    """🧹 Reclaim running jobs whose lease has expired"""
    setup_logging(stream=sys.stderr)

    async def _reap() -> int:
        async with open_store(settings) as store:
            return await store.reclaim_expired_leases()

    try:
        reclaimed = asyncio.run(_reap())
    except ConnectivityError as e:
        print_error(f"Reap failed: {e.message}")
        raise typer.Exit(1) from None

    print_success(f"Reclaimed {reclaimed} expired job(s)")


@app.command()
def enqueue(
    job_type: JobType = typer.Argument(..., help="Job type"),
    user: str = typer.Option(..., "--user", "-u", help="Owning user ID"),
    payload: str = typer.Option("{}", "--payload", "-p", help="JSON payload"),
    max_attempts: int | None = typer.Option(None, "--max-attempts", help="Attempt ceiling"),
    correlation_id: str | None = typer.Option(None, "--correlation-id", help="Trace identifier"),
):
    """➕ Enqueue a job directly into the store"""
    setup_logging(stream=sys.stderr)

    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as e:
        print_error(f"Payload is not valid JSON: {e}")
        raise typer.Exit(2) from None

    async def _enqueue():
        async with open_store(settings) as store:
            return await store.enqueue(
                job_type,
                parsed,
                user,
                max_attempts=max_attempts,
                correlation_id=correlation_id,
            )

    try:
        job = asyncio.run(_enqueue())
    except ValidationError as e:
        print_error(f"Rejected: {e.message}")
        if e.details.get("errors"):
            console.print(e.details["errors"])
        raise typer.Exit(1) from None
    except ConnectivityError as e:
        print_error(f"Enqueue failed: {e.message}")
        raise typer.Exit(1) from None

    print_success(f"Enqueued {job.type} job")
    typer.echo(str(job.id))


@app.command()
def status(
    job_id: str = typer.Argument(..., help="Job ID"),
    as_json: bool = typer.Option(False, "--json", help="Print the job as JSON"),
):
    """🔍 Show the current state of a job"""
    setup_logging(stream=sys.stderr)

    async def _get():
        async with open_store(settings) as store:
            return await store.get_by_id(job_id)

    try:
        job = asyncio.run(_get())
    except NotFoundError as e:
        print_error(e.message)
        raise typer.Exit(1) from None
    except ConnectivityError as e:
        print_error(f"Status lookup failed: {e.message}")
        raise typer.Exit(1) from None

    data = _job_data(job)
    if as_json:
        typer.echo(json.dumps(data, indent=2))
    else:
        console.print(create_job_panel(data))


@app.command()
def wait(
    job_id: str = typer.Argument(..., help="Job ID"),
    timeout_ms: int | None = typer.Option(None, "--timeout-ms", help="Give up after (ms)"),
    interval_ms: int | None = typer.Option(None, "--interval-ms", help="Poll interval (ms)"),
):
    """⏳ Block until a job succeeds or fails"""
    setup_logging(stream=sys.stderr)
    interval_s = (interval_ms or settings.job_poll_interval_ms) / 1000
    timeout_s = (timeout_ms or settings.job_poll_timeout_ms) / 1000

    async def _wait():
        async with open_store(settings) as store:
            return await poll_job_until_done(
                StoreJobFetcher(store), job_id, interval_s=interval_s, timeout_s=timeout_s
            )

    try:
        job = asyncio.run(_wait())
    except JobFailedError as e:
        print_error(f"Job failed: {e.message}")
        raise typer.Exit(1) from None
    except JobTimeoutError:
        print_warning(f"Job {job_id} not finished after {timeout_s:g}s; it keeps running")
        raise typer.Exit(2) from None
    except NotFoundError as e:
        print_error(e.message)
        raise typer.Exit(1) from None
    except ConnectivityError as e:
        print_error(f"Wait failed: {e.message}")
        raise typer.Exit(1) from None

    console.print(create_job_panel(job.model_dump(mode="json", by_alias=True)))


def _version_callback(value: bool | None) -> None:
    if value:
        from . import __version__

        console.print(f"Job Queue CLI v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    ),
):
    """
    ⚙️ Job Queue CLI

    Run workers, check backlog health for alerting, and inspect or enqueue
    jobs directly against the job store.
    """


if __name__ == "__main__":
    app()
