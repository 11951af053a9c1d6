"""Typer CLI for spendwatch.

Operational commands run the same triggers as the background scheduler,
against the locally configured ledger. Reports (forecast, breakdown) read
the ledger directly.
"""

import json
import logging
from collections.abc import Generator
from contextlib import contextmanager
from datetime import date
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.table import Table

from spendwatch.api.config import get_settings
from spendwatch.api.scheduler import CostScheduler, RunResult, build_cost_scheduler
from spendwatch.core.errors import StoreError, ValidationError
from spendwatch.core.logging import configure_secure_logging
from spendwatch.ledger.db import get_db_path, init_db, ledger_connection
from spendwatch.ledger.periods import period_of, utc_now
from spendwatch.metrics.forecast import comprehensive_forecast, forecast_method
from spendwatch.metrics.queries import breakdown_by_service, period_total
from spendwatch.notifications.email import format_money

logger = logging.getLogger(__name__)

# Create CLI app
cli = typer.Typer(
    name="spendwatch",
    help="Spendwatch - cost ledger, forecasts and budget alerts for metered accounts",
    no_args_is_help=True,
)

# Rich console for formatted output
console = Console()
# stderr for status messages and errors
err_console = Console(stderr=True)

_STATUS_STYLES = {"ok": "green", "partial": "yellow", "failed": "red", "running": "cyan"}


def _print_error(message: str, hint: str | None = None) -> None:
    err_console.print(f"[bold red]Error:[/] {message}")
    if hint:
        err_console.print(f"Hint: {hint}", style="dim", markup=False)


def _print_json(data: Any) -> None:
    """Print JSON to stdout for piped output."""
    print(json.dumps(data, indent=2, default=str))


@contextmanager
def _open_scheduler() -> Generator[CostScheduler, None, None]:
    """Build the trigger runner from settings without starting cron jobs."""
    settings = get_settings()
    configure_secure_logging(level=settings.log_level.upper(), json_format=settings.log_json)
    try:
        scheduler = build_cost_scheduler(settings)
    except (OSError, ValueError) as e:
        _print_error(f"Could not initialize: {e}", hint="Check DATA_DIR and ACCOUNTS_FILE.")
        raise typer.Exit(code=1) from e
    try:
        yield scheduler
    except ValidationError as e:
        _print_error(e.message, hint=f"Invalid {e.field}")
        raise typer.Exit(code=2) from e
    except StoreError as e:
        _print_error(str(e))
        raise typer.Exit(code=1) from e
    finally:
        scheduler.close()


def _print_run(result: RunResult, as_json: bool) -> None:
    if as_json:
        _print_json(
            {
                "job": result.job,
                "status": result.status,
                "processed": result.processed,
                "failed": result.failed,
                "skipped": result.skipped,
                "details": result.details,
            }
        )
        return

    style = _STATUS_STYLES.get(result.status, "white")
    table = Table(title=f"{result.job} run: [{style}]{result.status}[/{style}]")
    table.add_column("Unit", style="cyan")
    table.add_column("Outcome")
    for unit, outcome in result.details.items():
        if isinstance(outcome, dict):
            outcome = ", ".join(f"{k}={v}" for k, v in outcome.items())
        table.add_row(str(unit), str(outcome))
    console.print(table)
    console.print(
        f"processed={result.processed} failed={result.failed} skipped={result.skipped}"
    )


@cli.command()
def version() -> None:
    """Show spendwatch version information."""
    settings = get_settings()
    console.print(f"spendwatch v{settings.app_version}")


@cli.command()
def serve(
    host: Annotated[
        str | None,
        typer.Option("--host", "-h", help="Host to bind to (default: HOST setting)"),
    ] = None,
    port: Annotated[
        int | None,
        typer.Option("--port", "-p", help="Port to bind to (default: PORT setting)"),
    ] = None,
    reload: Annotated[
        bool,
        typer.Option("--reload", "-r", help="Enable auto-reload for development"),
    ] = False,
) -> None:
    """Start the spendwatch API server and background scheduler."""
    import uvicorn

    settings = get_settings()
    host = host or settings.host
    port = port or settings.port
    console.print(f"[green]Starting spendwatch server on {host}:{port}[/green]")
    console.print("[dim]Press Ctrl+C to stop[/dim]")

    uvicorn.run(
        "spendwatch.api.main:app",
        host=host,
        port=port,
        reload=reload,
    )


@cli.command("init-db")
def init_database() -> None:
    """Create or migrate the ledger database."""
    settings = get_settings()
    path = init_db(get_db_path(settings.get_data_dir()))
    console.print(f"[green]Ledger database initialized at {path}[/green]")


@cli.command()
def sweep(
    as_json: Annotated[bool, typer.Option("--json", help="Print JSON output")] = False,
) -> None:
    """Evaluate every alerting budget now and dispatch deduplicated alerts."""
    with _open_scheduler() as scheduler:
        with err_console.status("[bold green]Running threshold sweep..."):
            result = scheduler.run_sweep()
    _print_run(result, as_json)


@cli.command()
def sync(
    account: Annotated[
        str | None,
        typer.Option("--account", "-a", help="Registry account ID (omit for all)"),
    ] = None,
    day: Annotated[
        str | None,
        typer.Option("--day", "-d", help="Sync the day before this date, YYYY-MM-DD"),
    ] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Print JSON output")] = False,
) -> None:
    """Pull the prior day's costs from the billing provider into the ledger."""
    try:
        target = date.fromisoformat(day) if day else None
    except ValueError as e:
        _print_error(f"Invalid --day {day!r}", hint="Use YYYY-MM-DD")
        raise typer.Exit(code=2) from e

    with _open_scheduler() as scheduler:
        with err_console.status("[bold green]Syncing ledger..."):
            result = scheduler.run_daily_sync(day=target, account_id=account)
    _print_run(result, as_json)
    if result.status == "failed":
        raise typer.Exit(code=1)


@cli.command()
def cleanup(
    as_json: Annotated[bool, typer.Option("--json", help="Print JSON output")] = False,
) -> None:
    """Purge ledger rows, alert events and run history past retention."""
    with _open_scheduler() as scheduler:
        result = scheduler.run_cleanup()
    _print_run(result, as_json)


@cli.command()
def status(
    as_json: Annotated[bool, typer.Option("--json", help="Print JSON output")] = False,
) -> None:
    """Show the latest recorded run of each trigger."""
    with _open_scheduler() as scheduler:
        report = scheduler.status()

    if as_json:
        _print_json(report)
        return

    table = Table(title="Trigger Runs")
    table.add_column("Job", style="cyan")
    table.add_column("Last Started")
    table.add_column("Status")
    table.add_column("Processed", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Consecutive Failures", justify="right")
    for name, run in report["last_runs"].items():
        failures = str(report["consecutive_failures"].get(name, 0))
        if run is None:
            table.add_row(name, "[dim]never[/dim]", "-", "-", "-", failures)
            continue
        style = _STATUS_STYLES.get(run["status"], "white")
        table.add_row(
            name,
            run["started_at"],
            f"[{style}]{run['status']}[/{style}]",
            str(run["processed"]),
            str(run["failed"]),
            failures,
        )
    console.print(table)


@cli.command()
def forecast(
    subject: Annotated[str, typer.Argument(help="Subject ID")],
    method: Annotated[
        str | None,
        typer.Option("--method", "-m", help="Single method (omit to run all four)"),
    ] = None,
) -> None:
    """Forecast next month's spend for a subject."""
    settings = get_settings()
    db_path = init_db(get_db_path(settings.get_data_dir()))
    with ledger_connection(db_path) as conn:
        try:
            if method:
                results = [forecast_method(conn, subject, method)]
                recommended = None
                consensus = None
            else:
                combined = comprehensive_forecast(conn, subject)
                results = combined.forecasts
                recommended = combined.recommended
                consensus = combined.consensus
        except ValidationError as e:
            _print_error(e.message, hint=f"Invalid {e.field}")
            raise typer.Exit(code=2) from e

    table = Table(title=f"Forecast for {subject} ({results[0].target_period})")
    table.add_column("Method", style="cyan")
    table.add_column("Predicted", justify="right", style="green")
    table.add_column("Confidence")
    table.add_column("Trend")
    table.add_column("Data Points", justify="right")
    for result in results:
        marker = " *" if recommended is not None and result is recommended else ""
        table.add_row(
            f"{result.method.value}{marker}",
            f"{result.predicted_amount:,.2f}",
            result.confidence.value,
            result.trend.value,
            str(result.data_points),
        )
    console.print(table)
    if consensus is not None:
        console.print(f"Consensus: [bold]{consensus:,.2f}[/bold]  (* recommended)")


@cli.command()
def breakdown(
    subject: Annotated[str, typer.Argument(help="Subject ID")],
    period: Annotated[
        str | None,
        typer.Option("--period", "-p", help="YYYY-MM (default: current month)"),
    ] = None,
    currency: Annotated[str, typer.Option("--currency", help="Display currency")] = "USD",
) -> None:
    """Show per-service spend for a subject and period."""
    settings = get_settings()
    period = period or period_of(utc_now().date())
    db_path = init_db(get_db_path(settings.get_data_dir()))
    with ledger_connection(db_path) as conn:
        try:
            rows = breakdown_by_service(conn, subject, period)
            total = period_total(conn, subject, period)
        except ValidationError as e:
            _print_error(e.message, hint=f"Invalid {e.field}")
            raise typer.Exit(code=2) from e

    if not rows:
        console.print(f"[yellow]No costs recorded for {subject} in {period}[/yellow]")
        return

    table = Table(title=f"Spend by Service: {subject} ({period})")
    table.add_column("Service", style="cyan")
    table.add_column("Resources", justify="right")
    table.add_column("Total", justify="right", style="green")
    table.add_column("Share", justify="right")
    for row in rows:
        share = f"{row.total / total * 100:.1f}%" if total else "-"
        table.add_row(
            row.service_name, str(row.resource_count), format_money(row.total, currency), share
        )
    table.add_row("[bold]Total[/bold]", "", f"[bold]{format_money(total, currency)}[/bold]", "")
    console.print(table)


if __name__ == "__main__":
    cli()
