"""
CLI entrypoint for the notification scheduler.

`tick` is meant to be wired to cron (every 5 minutes); the other commands are
for operators.
"""
import json
import sys
from datetime import datetime

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from notify_scheduler.config import settings
from notify_scheduler.models import NotificationType, Phase
from notify_scheduler.scheduler import from_settings

app = typer.Typer(help="Notification Delivery Scheduler CLI")
console = Console()


def _parse_time(value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"not an ISO 8601 timestamp: {value}")


@app.callback()
def main(log_level: str = typer.Option(settings.LOG_LEVEL, help="Log level for this run")):
    logger.remove()
    logger.add(sys.stderr, level=log_level.upper())


@app.command()
def serve():
    """Start the FastAPI ops server using Uvicorn."""
    import uvicorn
    typer.echo(f"Starting ops server on port {settings.PORT}...")
    uvicorn.run(
        "notify_scheduler.server.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


@app.command()
def tick(at: str = typer.Option(None, "--at", help="Run the tick as if it were this ISO 8601 time")):
    """Run one scheduler tick and print the report."""
    report = from_settings().tick(_parse_time(at))
    typer.echo(report.model_dump_json(indent=2, exclude_none=True))


@app.command()
def trigger(
    phase: Phase = typer.Argument(..., help="Phase to run regardless of its window"),
    at: str = typer.Option(None, "--at", help="ISO 8601 time to run the phase at"),
):
    """Run a single phase now (manual trigger)."""
    result = from_settings().run_phase(phase, _parse_time(at))
    typer.echo(result.model_dump_json(indent=2, exclude_none=True))


@app.command()
def reap():
    """Return entries stuck in Processing to the queue."""
    summary = from_settings().reclaim_stuck()
    typer.echo(f"reclaimed={summary.retried} failed={summary.failed} skipped={summary.skipped}")


@app.command()
def queue(
    user_id: str = typer.Argument(...),
    notification_type: NotificationType = typer.Argument(...),
    payload: str = typer.Option("{}", help="JSON payload"),
):
    """Queue one notification, as an event producer would."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"payload is not valid JSON: {e}")
    result = from_settings().queue_notification(user_id, notification_type, data)
    typer.echo(result.model_dump_json(exclude_none=True))
    if not result.queued:
        raise typer.Exit(1)


@app.command()
def stats():
    """Show queue counts by status."""
    queue_stats = from_settings().get_queue_stats()
    table = Table(title="Notification Queue")
    table.add_column("Status", style="cyan")
    table.add_column("Entries", justify="right", style="magenta")
    for status, count in queue_stats.model_dump().items():
        table.add_row(status, str(count))
    console.print(table)


@app.command()
def status():
    """Show the active phases and the next run time of each phase."""
    current = from_settings().status()
    table = Table(title=f"{current.day_of_week} {current.current_time:%Y-%m-%d %H:%M %Z}")
    table.add_column("Phase", style="cyan")
    table.add_column("Active", justify="center")
    table.add_column("Next run", style="green")
    for phase, next_run in current.next_runs.items():
        active = "yes" if phase in current.active_phases else ""
        table.add_row(phase.value, active, f"{next_run:%a %Y-%m-%d %H:%M}")
    console.print(table)


if __name__ == "__main__":
    app()
