"""
CLI interface for Pipeline Guard.

Inspects budgets, caches and system health from the durable store.
"""

import logging
import sys
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from pipeline_guard.config.loader import default_config, load_config
from pipeline_guard.core.errors import PipelineGuardError
from pipeline_guard.core.rate_limiter import DAILY, MONTHLY
from pipeline_guard.services import Services, build_services
from pipeline_guard.storage.db import DEFAULT_DB_PATH
from pipeline_guard.storage.repository import SqliteStorage, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DB_OPTION = typer.Option(DEFAULT_DB_PATH, "--db", "-d", help="Path to the SQLite database")
CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to a YAML configuration file")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Pipeline Guard CLI."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    if ctx.invoked_subcommand is None:
        console.print("Pipeline Guard - Use --help to see available commands")


def _load_services(config_path: Optional[str], db_path: str) -> Services:
    """Build services over the durable store, exiting on configuration errors."""
    try:
        config = load_config(config_path) if config_path else default_config()
        return build_services(config=config, storage=SqliteStorage(db_path))
    except (FileNotFoundError, yaml.YAMLError, PipelineGuardError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _format_currency(amount: Optional[float]) -> str:
    if amount is None:
        return "-"
    return f"${amount:,.2f}"


@app.command()
def init(db: str = DB_OPTION):
    """Initialize the Pipeline Guard database."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def budget(
    provider: Optional[str] = typer.Option(
        None,
        "--provider",
        "-p",
        help="Show a single provider"
    ),
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
):
    """Show spend against the daily and monthly budget of each provider."""
    services = _load_services(config, db)
    providers = [provider] if provider else sorted(services.config.budgets)

    table = Table(title="Provider Budgets")
    table.add_column("Provider")
    table.add_column("Day spent", justify="right")
    table.add_column("Day limit", justify="right")
    table.add_column("Month spent", justify="right")
    table.add_column("Month limit", justify="right")

    for name in providers:
        status = services.limiter.get_rate_limit_status(name)
        table.add_row(
            name,
            _format_currency(status[DAILY]["spent"]),
            _format_currency(status[DAILY]["limit"]),
            _format_currency(status[MONTHLY]["spent"]),
            _format_currency(status[MONTHLY]["limit"]),
        )
    console.print(table)


@app.command()
def cache(db: str = DB_OPTION, config: Optional[str] = CONFIG_OPTION):
    """Show cache statistics and entries."""
    services = _load_services(config, db)

    for namespace, stats in services.orchestrator.get_cache_stats().items():
        console.print(
            f"\n[bold]{namespace}[/bold]: {stats.total_entries} entries, "
            f"hit rate {stats.hit_rate * 100:.1f}%"
        )
        if not stats.entries:
            console.print("[dim]No cached entries.[/]")
            continue

        table = Table()
        table.add_column("Key")
        table.add_column("Age (s)", justify="right")
        table.add_column("Freshness")
        table.add_column("Accesses", justify="right")
        table.add_column("Size", justify="right")
        for entry in stats.entries:
            table.add_row(
                entry["key"],
                f"{entry['age']:.0f}",
                entry["freshness"],
                str(entry["access_count"]),
                str(entry["size"]),
            )
        console.print(table)


@app.command("clear-cache")
def clear_cache(
    namespace: Optional[str] = typer.Option(
        None,
        "--namespace",
        "-n",
        help="Clear only 'stories' or 'results'"
    ),
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
):
    """Remove cached stories and rendered results."""
    services = _load_services(config, db)
    caches = {
        services.stories.namespace: services.stories,
        services.results.namespace: services.results,
    }
    if namespace is not None and namespace not in caches:
        console.print(f"[red]Error:[/] Unknown cache namespace: {namespace}")
        sys.exit(EXIT_CODE_FAIL)

    for name, target in caches.items():
        if namespace is None or name == namespace:
            target.clear()
            console.print(f"[green]✓[/] Cleared {name} cache")


@app.command()
def status(db: str = DB_OPTION, config: Optional[str] = CONFIG_OPTION):
    """Show the last recorded system health and recent alerts."""
    services = _load_services(config, db)
    health = services.alerts.last_health()

    if health is None:
        console.print("\n[dim]No health snapshot recorded yet.[/]")
    else:
        console.print(f"\n[bold]System status:[/bold] {health.status.value}")
        console.print(f"Memory usage: {health.memory_usage * 100:.1f}%")
        console.print(f"Error rate: {health.error_rate * 100:.1f}%")
        console.print(f"Cache hit rate: {health.cache_hit_rate * 100:.1f}%")
        console.print(f"Throughput: {health.throughput:.2f} videos/min")

    alerts = services.orchestrator.get_alerts()
    if not alerts:
        console.print("\n[dim]No alerts in the last hour.[/]")
        return
    console.print(f"\n[bold]Alerts ({len(alerts)}):[/bold]")
    for alert in alerts:
        console.print(f"{alert.severity.value.upper()}: {alert.message}")


if __name__ == "__main__":
    app()
