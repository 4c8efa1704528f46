"""CLI commands for CareSlot."""

import asyncio
import json
import uuid
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import typer
from pydantic import TypeAdapter, ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from careslot.config import get_settings
from careslot.core.database import Database, init_db
from careslot.scheduling.errors import SchedulingError
from careslot.scheduling.models import AvailabilityWindow, DateRange
from careslot.scheduling.service import SchedulingService

app = typer.Typer(
    name="careslot",
    help="Appointment scheduling and slot reconciliation",
    add_completion=False,
)
console = Console()

_WEEKDAYS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]


def _run(work: Callable[[SchedulingService], Awaitable[Any]]) -> Any:
    """Run ``work`` against a service bound to the configured database."""

    async def runner():
        settings = get_settings()
        database = Database.from_settings(settings)
        try:
            return await work(SchedulingService(database, settings))
        finally:
            await database.dispose()

    try:
        return asyncio.run(runner())
    except SchedulingError as e:
        console.print(f"[red]{e.code}: {e.message}[/red]")
        raise typer.Exit(1)


def _parse_provider(provider: str) -> uuid.UUID:
    try:
        return uuid.UUID(provider)
    except ValueError:
        console.print(f"[red]Invalid provider id: {provider}[/red]")
        raise typer.Exit(1)


def _date_range(start: Optional[str], end: Optional[str], default_days: int) -> DateRange:
    try:
        start_date = date.fromisoformat(start) if start else date.today()
        end_date = date.fromisoformat(end) if end else start_date + timedelta(days=default_days)
        return DateRange(start=start_date, end=end_date)
    except (ValueError, ValidationError) as e:
        console.print(f"[red]Invalid date range: {e}[/red]")
        raise typer.Exit(1)


@app.command("init-db")
def init_db_command():
    """Create the scheduling tables."""

    async def work(service: SchedulingService):
        await init_db(service.database)

    _run(work)
    console.print("[green]Database initialized[/green]")


@app.command()
def set_hours(
    provider: str = typer.Argument(..., help="Provider UUID"),
    file: Path = typer.Option(..., "--file", "-f", help="JSON list of weekly availability windows"),
):
    """Replace a provider's weekly working hours."""
    provider_id = _parse_provider(provider)
    if not file.exists():
        console.print(f"[red]File not found: {file}[/red]")
        raise typer.Exit(1)
    try:
        windows = TypeAdapter(list[AvailabilityWindow]).validate_json(file.read_text())
    except ValidationError as e:
        console.print(f"[red]Invalid availability file:[/red] {e}")
        raise typer.Exit(1)

    templates = _run(lambda service: service.set_availability(provider_id, windows))

    table = Table(title=f"Availability for {provider_id}")
    table.add_column("Day")
    table.add_column("Hours")
    table.add_column("Slot", justify="right")
    table.add_column("Buffer", justify="right")
    table.add_column("Breaks", justify="right")
    for t in templates:
        table.add_row(
            _WEEKDAYS[t.day_of_week],
            f"{t.start_time:%H:%M}-{t.end_time:%H:%M}",
            f"{t.slot_duration_minutes}m",
            f"{t.buffer_minutes}m",
            str(len(t.breaks)),
        )
    console.print(table)


@app.command()
def publish(
    provider: str = typer.Argument(..., help="Provider UUID"),
    start: Optional[str] = typer.Option(None, "--start", "-s", help="First day (YYYY-MM-DD), default today"),
    end: Optional[str] = typer.Option(None, "--end", "-e", help="Last day (YYYY-MM-DD), default start + 14"),
):
    """Publish open slots from the provider's availability templates."""
    provider_id = _parse_provider(provider)
    date_range = _date_range(start, end, 14)
    result = _run(lambda service: service.publish_slots(provider_id, date_range))

    console.print(f"[green]Created {result.created} slots[/green] ({date_range.start} to {date_range.end})")
    if result.skipped_days:
        days = ", ".join(d.isoformat() for d in result.skipped_days)
        console.print(f"[yellow]Skipped days that already had slots: {days}[/yellow]")


@app.command()
def prune(
    before: Optional[str] = typer.Option(
        None, "--before", "-b", help="Delete unused slots dated before this day (YYYY-MM-DD)"
    ),
    days: int = typer.Option(30, "--days", "-d", help="Cutoff in days before today when --before is omitted"),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Limit to one provider UUID"),
):
    """Delete past slots that were never booked."""
    provider_id = _parse_provider(provider) if provider else None
    try:
        cutoff = date.fromisoformat(before) if before else date.today() - timedelta(days=days)
    except ValueError as e:
        console.print(f"[red]Invalid date: {e}[/red]")
        raise typer.Exit(1)

    result = _run(lambda service: service.prune_slots(cutoff, provider_id))
    console.print(f"[green]Deleted {result.deleted} unused slots[/green] dated before {result.cutoff}")


@app.command()
def slots(
    provider: str = typer.Argument(..., help="Provider UUID"),
    start: Optional[str] = typer.Option(None, "--start", "-s", help="First day (YYYY-MM-DD)"),
    end: Optional[str] = typer.Option(None, "--end", "-e", help="Last day (YYYY-MM-DD)"),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List open slots for a provider."""
    provider_id = _parse_provider(provider)
    date_range = _date_range(start, end, 7)
    available = _run(lambda service: service.list_available(provider_id, date_range).to_list())

    if output_json:
        console.print_json(json.dumps([s.model_dump(mode="json") for s in available]))
        return

    if not available:
        console.print("[yellow]No open slots in range[/yellow]")
        return

    table = Table(title=f"Open slots {date_range.start} to {date_range.end}")
    table.add_column("Date")
    table.add_column("Time")
    table.add_column("Minutes", justify="right")
    table.add_column("Slot ID", style="dim")
    for s in available:
        table.add_row(s.slot_date.isoformat(), f"{s.start_time:%H:%M}", str(s.duration_minutes), str(s.id))
    console.print(table)


@app.command()
def stats(
    provider: str = typer.Argument(..., help="Provider UUID"),
    start: Optional[str] = typer.Option(None, "--start", "-s", help="First day (YYYY-MM-DD)"),
    end: Optional[str] = typer.Option(None, "--end", "-e", help="Last day (YYYY-MM-DD)"),
):
    """Show slot utilization for a provider."""
    provider_id = _parse_provider(provider)
    date_range = _date_range(start, end, 30)
    result = _run(lambda service: service.slot_stats(provider_id, date_range))

    console.print(Panel.fit(f"[bold]Slot utilization[/bold] {date_range.start} to {date_range.end}"))
    table = Table()
    table.add_column("State")
    table.add_column("Count", justify="right")
    for state in ("open", "held", "booked", "blocked"):
        table.add_row(state, str(getattr(result, state)))
    table.add_row("[bold]total[/bold]", f"[bold]{result.total}[/bold]")
    console.print(table)
    console.print(f"Utilization: {result.utilization_rate:.1f}%")


@app.command()
def audit():
    """Scan the store for slot/appointment/request inconsistencies."""
    violations = _run(lambda service: service.audit())

    if not violations:
        console.print("[green]No consistency violations found[/green]")
        return

    table = Table(title="Consistency violations")
    table.add_column("Kind", style="red")
    table.add_column("Entity")
    table.add_column("Detail")
    for v in violations:
        table.add_row(v.kind, str(v.entity_id), v.detail)
    console.print(table)
    raise typer.Exit(1)


@app.command()
def dispatch(
    limit: int = typer.Option(100, "--limit", "-l", help="Maximum events to deliver"),
):
    """Deliver pending notification events to the configured sink."""
    from careslot.notifications import OutboxDispatcher, create_sink_from_settings

    settings = get_settings()

    async def work(service: SchedulingService):
        dispatcher = OutboxDispatcher(
            service.database,
            create_sink_from_settings(settings),
            max_attempts=settings.notification_max_attempts,
        )
        return await dispatcher.dispatch_pending(limit)

    report = _run(work)
    console.print(f"Delivered {len(report.delivered)} events, {len(report.failed)} failed")
    if report.failed:
        raise typer.Exit(1)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", "-h", help="Host to bind"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to bind"),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload"),
):
    """Start the REST API server."""
    import uvicorn

    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port

    console.print(f"Starting CareSlot API server on {host}:{port}")
    uvicorn.run(
        "careslot.api.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
    )


@app.command()
def version():
    """Show version information."""
    from careslot import __version__

    console.print(f"CareSlot v{__version__}")
