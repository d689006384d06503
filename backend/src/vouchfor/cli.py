"""Command-line interface for vouchfor."""

from decimal import Decimal, InvalidOperation
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from vouchfor.ledger.outbox import OutboxWorker
from vouchfor.logging_config import configure_logging, get_logger
from vouchfor.settings import settings
from vouchfor.storage.db import Database
from vouchfor.storage.models import CommissionType, OutboxStatus, Vendor
from vouchfor.storage.repo import OutboxRepository

# Configure logging
configure_logging()
logger = get_logger(__name__)

# Create Typer app
app = typer.Typer(
    name="vouchfor",
    help="Vouchfor - referral attribution and commission ledger",
    no_args_is_help=True,
)

# Rich console for pretty output
console = Console()


def _database() -> Database:
    return Database(settings.database_url)


@app.command("init")
def init_database() -> None:
    """Initialize the database and create tables."""
    console.print("[bold blue]Initializing database...[/bold blue]")
    _database().create_tables()
    console.print("[bold green]✓[/bold green] Database initialized successfully")


@app.command("serve")
def serve(
    host: Annotated[str, typer.Option("--host", help="Bind address")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", "-p", help="Bind port")] = 8000,
) -> None:
    """Run the HTTP API."""
    import uvicorn

    uvicorn.run("vouchfor.api.main:app", host=host, port=port, log_level=settings.log_level.lower())


@app.command("vendor-create")
def create_vendor(
    name: Annotated[str, typer.Option("--name", "-n", help="Program name")],
    destination_url: Annotated[str, typer.Option("--url", "-u", help="Destination URL for tracking links")],
    commission_type: Annotated[CommissionType, typer.Option("--type", "-t", help="percentage or fixed")] = CommissionType.PERCENTAGE,
    commission_value: Annotated[str, typer.Option("--value", "-v", help="Percent or fixed amount")] = "10",
    cookie_duration: Annotated[int | None, typer.Option("--cookie-days", help="Attribution window in days")] = None,
) -> None:
    """Create a referral program."""
    try:
        value = Decimal(commission_value)
    except InvalidOperation:
        console.print(f"[bold red]✗[/bold red] Invalid commission value: {commission_value}")
        raise typer.Exit(code=1)

    with _database().session() as session:
        vendor = Vendor(
            name=name,
            destination_url=destination_url,
            commission_type=commission_type,
            commission_value=value,
            cookie_duration=cookie_duration or settings.default_cookie_duration_days,
        )
        session.add(vendor)
        session.flush()
        vendor_id = vendor.id

    console.print(f"[bold green]✓[/bold green] Program created with ID: [bold]{vendor_id}[/bold]")
    console.print(f"  Commission: {commission_type.value} {value}")
    console.print(f"  Tracking link: /go/<affiliate_id>/{vendor_id}")


@app.command("worker")
def run_worker(
    once: Annotated[bool, typer.Option("--once", help="Run due tasks once and exit")] = False,
    poll_interval: Annotated[float | None, typer.Option("--poll-interval", help="Seconds between polls")] = None,
) -> None:
    """Run the outbox worker (attribution, commissions, refunds)."""
    worker = OutboxWorker(_database())

    if once:
        executed = worker.run_once()
        console.print(f"[bold green]✓[/bold green] Executed {executed} task(s)")
        return

    console.print("[bold blue]Outbox worker running (Ctrl+C to stop)[/bold blue]")
    try:
        worker.run_forever(poll_interval=poll_interval)
    except KeyboardInterrupt:
        console.print("[yellow]Worker stopped[/yellow]")


@app.command("outbox")
def outbox_status(
    limit: Annotated[int, typer.Option("--limit", "-l", help="Dead tasks to show")] = 20,
) -> None:
    """Show outbox task counts and dead-lettered tasks."""
    with _database().session() as session:
        repo = OutboxRepository(session)
        counts = repo.count_by_status()
        dead = repo.list_dead(limit=limit)

        table = Table(title="Outbox")
        table.add_column("Status", style="cyan")
        table.add_column("Tasks", justify="right")
        for status in OutboxStatus:
            table.add_row(status.value, str(counts.get(status.value, 0)))
        console.print(table)

        if not dead:
            console.print("[green]No dead tasks[/green]")
            return

        dead_table = Table(title="Dead tasks")
        dead_table.add_column("ID", style="cyan")
        dead_table.add_column("Kind")
        dead_table.add_column("Conversion")
        dead_table.add_column("Attempts", justify="right")
        dead_table.add_column("Last error", style="red")
        dead_table.add_column("Updated At")

        for task in dead:
            dead_table.add_row(
                str(task.id),
                task.kind.value,
                task.conversion_id,
                str(task.attempts),
                (task.last_error or "")[:80],
                task.updated_at.strftime("%Y-%m-%d %H:%M"),
            )
        console.print(dead_table)


if __name__ == "__main__":
    app()
