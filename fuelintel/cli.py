"""FuelIntel scraper CLI.

Commands:
- run: Execute one scraper run (invoked by an external scheduler)
- check-api: Test connectivity to the government API
- init-db: Initialize database schema
- sign-payload: Print the webhook signature for a payload file
- serve-monitoring: Serve the monitoring endpoints
"""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from fuelintel.config import get_config
from fuelintel.core.errors import ConfigurationError, FuelIntelError
from fuelintel.core.logging import configure_logging
from fuelintel.pipeline.types import RunOptions, RunSummary

app = typer.Typer(
    name="fuelintel",
    help="FuelIntel - government fuel price ingestion",
    no_args_is_help=True,
)

console = Console()


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, stop) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass


def _print_summary(summary: RunSummary) -> None:
    table = Table(title="Scraper Run Summary")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    stats = summary.statistics
    table.add_row("Status", summary.status.value)
    table.add_row("Duration", f"{summary.duration_seconds:.1f}s")
    table.add_row("Estados processed", str(stats.estados_processed))
    table.add_row("Municipios processed", str(stats.municipios_processed))
    table.add_row("Stations found", str(stats.stations_found))
    table.add_row("Price changes", str(stats.price_changes_detected))
    table.add_row("New stations", str(stats.new_stations_added))
    table.add_row("Errors", str(stats.errors_encountered))
    table.add_row("Stopped early", "yes" if summary.stopped_early else "no")
    table.add_row("Webhook delivered", "yes" if summary.webhook_delivered else "no")
    console.print(table)

    for error in summary.errors[:10]:
        console.print(f"  [red]✗[/red] {error.type}: {error.message}", style="dim")
    if len(summary.errors) > 10:
        console.print(f"  ... and {len(summary.errors) - 10} more errors", style="dim")


@app.command()
def run(
    dry_run: bool = typer.Option(False, "--dry-run", help="Fetch and detect without writing to database"),
    max_estados: int | None = typer.Option(None, "--max-estados", help="Limit estados processed"),
    max_municipios: int | None = typer.Option(
        None, "--max-municipios", help="Limit municipios processed per estado"
    ),
    monitor: bool = typer.Option(False, "--monitor", help="Serve monitoring endpoints during the run"),
):
    """Run the scraper once.

    Estado and municipio failures are recorded and skipped; baseline,
    estados catalog and persistence failures abort the run. The completion
    webhook is sent either way.
    """
    from fuelintel.db.connection import check_connection, close_db
    from fuelintel.pipeline import build_pipeline

    config = get_config()
    config.dry_run = config.dry_run or dry_run
    configure_logging(config.log_level, json_logs=config.log_format == "json")

    try:
        config.validate()
    except ConfigurationError as e:
        console.print(f"[bold red]✗ Configuration invalid:[/bold red] {e}")
        raise typer.Exit(code=2)

    if config.dry_run:
        console.print("[yellow]DRY RUN MODE - No changes will be made[/yellow]\n")

    options = RunOptions(
        dry_run=config.dry_run,
        max_estados=max_estados,
        max_municipios_per_estado=max_municipios,
    )

    async def _run() -> RunSummary | None:
        pipeline = build_pipeline(config)
        orchestrator = pipeline.orchestrator
        _install_signal_handlers(asyncio.get_running_loop(), orchestrator.stop)

        server_task = None
        if monitor:
            import uvicorn

            from fuelintel.web.monitoring import create_monitoring_app

            monitoring_app = create_monitoring_app(
                orchestrator,
                pipeline.api,
                None if config.dry_run else check_connection,
            )
            server = uvicorn.Server(
                uvicorn.Config(monitoring_app, host="0.0.0.0", port=config.monitoring_port, log_level="warning")
            )
            server_task = asyncio.create_task(server.serve())
            console.print(f"Monitoring on http://0.0.0.0:{config.monitoring_port}")

        try:
            return await orchestrator.run(options)
        except FuelIntelError as e:
            console.print(f"[bold red]✗ Run failed:[/bold red] {e}")
            return orchestrator.last_summary
        finally:
            if server_task is not None:
                server.should_exit = True
                await server_task
            await pipeline.aclose()
            if not config.dry_run:
                await close_db()

    console.print("[bold]Starting fuel price scraper[/bold]")
    summary = asyncio.run(_run())

    if summary is None:
        console.print("[yellow]Scraper is already running[/yellow]")
        raise typer.Exit(code=1)

    _print_summary(summary)
    if not summary.success:
        raise typer.Exit(code=1)
    console.print("[bold green]✓[/bold green] Scraper run completed")


@app.command(name="check-api")
def check_api():
    """Test connectivity to the government catalog API."""
    from fuelintel.core.http_client import ResilientHttpClient
    from fuelintel.pipeline.government_api import GovernmentApiClient

    config = get_config()
    configure_logging(config.log_level, json_logs=config.log_format == "json")

    async def _check() -> bool:
        async with ResilientHttpClient(config.http) as http:
            return await GovernmentApiClient(http, config.api).test_connection()

    console.print(f"Checking {config.api.catalog_base} ...")
    if asyncio.run(_check()):
        console.print("[bold green]✓[/bold green] Government API reachable")
    else:
        console.print("[bold red]✗[/bold red] Government API unreachable")
        raise typer.Exit(code=1)


@app.command(name="init-db")
def init_db_cmd(
    drop: bool = typer.Option(False, "--drop", help="Drop existing tables"),
):
    """Initialize database schema."""
    from fuelintel.db.connection import close_db, init_db

    config = get_config()
    if not config.db.url:
        console.print("[bold red]✗ DATABASE_URL is not configured[/bold red]")
        raise typer.Exit(code=2)
    console.print(f"[bold]Initializing database:[/bold] {config.db.url}")

    async def _init():
        if drop:
            console.print("[yellow]Dropping existing tables...[/yellow]")
        console.print("[green]Creating tables...[/green]")
        await init_db(drop=drop)
        await close_db()

    asyncio.run(_init())
    console.print("[bold green]✓[/bold green] Database initialized")


@app.command(name="sign-payload")
def sign_payload(
    file: Path = typer.Argument(..., exists=True, readable=True, help="Raw payload body"),
    secret: str | None = typer.Option(
        None, "--secret", help="Webhook secret (defaults to SCRAPER_WEBHOOK_SECRET)"
    ),
):
    """Print the X-Webhook-Signature a receiver should expect for FILE."""
    from fuelintel.core.webhook_notifier import compute_signature

    secret = secret or get_config().webhook.secret
    if not secret:
        console.print("[bold red]✗ No webhook secret configured[/bold red]")
        raise typer.Exit(code=2)

    typer.echo(compute_signature(secret, file.read_bytes()))


@app.command(name="serve-monitoring")
def serve_monitoring(
    host: str = typer.Option("0.0.0.0", help="Bind host"),
    port: int | None = typer.Option(None, help="Bind port (defaults to MONITORING_PORT)"),
):
    """Serve the monitoring endpoints without running the scraper."""
    import uvicorn

    from fuelintel.db.connection import check_connection
    from fuelintel.pipeline import build_pipeline
    from fuelintel.web.monitoring import create_monitoring_app

    config = get_config()
    configure_logging(config.log_level, json_logs=config.log_format == "json")
    pipeline = build_pipeline(config)
    monitoring_app = create_monitoring_app(
        pipeline.orchestrator,
        pipeline.api,
        None if config.dry_run else check_connection,
    )

    port = port or config.monitoring_port
    typer.echo(f"Starting monitoring on http://{host}:{port}")
    uvicorn.run(monitoring_app, host=host, port=port, workers=1)


if __name__ == "__main__":
    app()
