"""
CLI interface for Compass Usage.

Provides command-line access to card listing, monthly usage and the HTTP server.
"""

import sys
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from compass_usage.config.loader import AppConfig, load_config, parse_listen
from compass_usage.core.errors import CompassError
from compass_usage.core.service import UsageService
from compass_usage.logging_setup import configure_logging
from compass_usage.server.app import create_app
from compass_usage.storage.month_cache import MonthCache

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _config_option():
    return typer.Option(None, "--config", "-c", help="Path to YAML config file")


def _username_option():
    return typer.Option(None, "--username", "-u", help="compasscard.ca username")


def _password_option():
    return typer.Option(None, "--password", "-p", help="compasscard.ca password")


def _cache_dir_option():
    return typer.Option(None, "--cache-dir", help="Directory to cache past months")


def _load(
    config_path: Optional[str],
    username: Optional[str],
    password: Optional[str],
    cache_dir: Optional[str],
    listen: Optional[str] = None,
) -> AppConfig:
    """Resolve configuration: file, then environment, then explicit flags."""
    try:
        config = load_config(config_path).with_overrides(
            username=username,
            password=password,
            cache_dir=cache_dir,
            listen=listen,
        )
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if not config.has_credentials:
        console.print("[red]Error:[/] --username and --password are required")
        console.print("Set them with flags, a config file or COMPASS_USERNAME / COMPASS_PASSWORD")
        sys.exit(EXIT_CODE_FAIL)

    configure_logging(config.log_level)
    return config


def build_service(config: AppConfig) -> UsageService:
    """Create the usage service described by a configuration."""
    cache = MonthCache(config.cache_dir, strict_persist=config.strict_persist)
    return UsageService(
        config.username,
        config.password,
        cache,
        base_url=config.base_url,
        timeout=config.timeout,
    )


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Compass Card usage CLI."""
    if ctx.invoked_subcommand is None:
        console.print("Compass Usage - Use --help to see available commands")


@app.command()
def serve(
    config_path: Optional[str] = _config_option(),
    username: Optional[str] = _username_option(),
    password: Optional[str] = _password_option(),
    cache_dir: Optional[str] = _cache_dir_option(),
    listen: Optional[str] = typer.Option(None, "--listen", "-l", help="Listen address, e.g. :8080"),
):
    """Serve monthly usage as JSON at GET /<card>?year=YYYY&month=MM."""
    config = _load(config_path, username, password, cache_dir, listen)
    host, port = parse_listen(config.listen)
    flask_app = create_app(build_service(config))
    console.print(f"Listening on {config.listen!r}")
    flask_app.run(host=host, port=port, threaded=True)


@app.command()
def cards(
    config_path: Optional[str] = _config_option(),
    username: Optional[str] = _username_option(),
    password: Optional[str] = _password_option(),
):
    """List the serial numbers of the cards on the account."""
    config = _load(config_path, username, password, None)
    try:
        serials = build_service(config).list_cards()
    except CompassError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if not serials:
        console.print("[yellow]No cards found on this account[/]")
        return
    for serial in serials:
        console.print(serial)


@app.command()
def usage(
    ccsn: str = typer.Argument(..., help="Card serial number"),
    year: int = typer.Option(..., "--year", "-y", help="Year, e.g. 2024"),
    month: int = typer.Option(..., "--month", "-m", min=1, max=12, help="Month 1-12"),
    config_path: Optional[str] = _config_option(),
    username: Optional[str] = _username_option(),
    password: Optional[str] = _password_option(),
    cache_dir: Optional[str] = _cache_dir_option(),
):
    """Show one month of usage for a card."""
    config = _load(config_path, username, password, cache_dir)
    try:
        records = build_service(config).monthly_usage(ccsn, year, month)
    except (CompassError, ValueError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    _display_usage(ccsn, year, month, records)


def _format_currency(amount: float) -> str:
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def _display_usage(ccsn, year, month, records):
    """Display usage records as a table."""
    console.print(f"\n[bold]Usage for card {ccsn}, {year:04d}-{month:02d}[/bold]")
    if not records:
        console.print("\n[dim]No usage recorded for this month.[/]")
        return

    table = Table()
    table.add_column("Date")
    table.add_column("Transaction")
    table.add_column("Product")
    table.add_column("Amount", justify="right")
    table.add_column("Balance", justify="right")
    for record in records:
        table.add_row(
            record.date_time.strftime("%Y-%m-%d %H:%M"),
            record.transaction,
            record.product,
            _format_currency(record.amount),
            record.balance_details,
        )
    console.print(table)
    console.print(f"Total: {_format_currency(sum(r.amount for r in records))}")


if __name__ == "__main__":
    app()
