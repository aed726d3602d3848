"""Rich formatting helpers for jobctl output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from jobqueue.v1.infra.jobs.schemas import BacklogLevel, BacklogReport

console = Console()

STATUS_STYLES = {
    "queued": "yellow",
    "running": "blue",
    "succeeded": "green",
    "failed": "red",
}

LEVEL_STYLES = {
    BacklogLevel.OK: "green",
    BacklogLevel.WARN: "yellow",
    BacklogLevel.CRITICAL: "red",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def create_job_panel(job: dict[str, Any]) -> Panel:
    """Create a panel describing one job snapshot (camelCase keys)"""
    status = job.get("status", "unknown")
    style = STATUS_STYLES.get(status, "white")

    lines = [
        f"🆔 [bold]ID:[/bold] [cyan]{job.get('id')}[/cyan]",
        f"📝 [bold]Type:[/bold] [magenta]{job.get('type')}[/magenta]",
        f"📌 [bold]Status:[/bold] [{style}]{status}[/{style}]",
        f"👤 [bold]User:[/bold] {job.get('userId')}",
        f"🔁 [bold]Attempts:[/bold] {job.get('attempts')}/{job.get('maxAttempts')}",
        f"⏰ [bold]Next run:[/bold] {job.get('nextRunAt')}",
        f"🔗 [bold]Correlation:[/bold] {job.get('correlationId')}",
    ]

    error = job.get("error")
    if error:
        lines.append(f"❌ [bold]Error:[/bold] [red]{error.get('message')}[/red]")

    result = job.get("result")
    if result is not None:
        lines.append(f"📦 [bold]Result:[/bold] {result}")

    return Panel("\n".join(lines), title="Job", border_style=style)


def create_backlog_table(report: BacklogReport) -> Table:
    """Create a table of backlog counts with the computed level in the title"""
    style = LEVEL_STYLES[report.status]
    table = Table(
        title=f"Backlog: [{style}]{report.status.value}[/{style}]",
        box=box.ROUNDED,
    )

    table.add_column("Metric", justify="left", style="cyan")
    table.add_column("Value", justify="right", style="white")

    snapshot = report.snapshot
    for status, count in snapshot.by_status.items():
        table.add_row(status, str(count))
    table.add_row("queued (ready)", str(snapshot.queued_ready))
    table.add_row("queued (delayed)", str(snapshot.queued_delayed))
    table.add_row("running (lease expired)", str(snapshot.running_expired))
    table.add_row("failed (24h)", str(snapshot.failed_last_24h))
    table.add_row("stale", str(snapshot.stale))
    table.add_row(
        "oldest queued (s)",
        str(snapshot.oldest_queued_age_s) if snapshot.oldest_queued_age_s is not None else "—",
    )
    table.add_row(
        "thresholds",
        f"warn {report.thresholds.warn} / critical {report.thresholds.critical}",
    )

    return table
