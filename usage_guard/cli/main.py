"""
CLI interface for Usage Guard.

Provides command-line access to quota checks, ledger totals, estimation
and the price list.
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from usage_guard.config.loader import (
    UsageGuardConfig,
    UsageServices,
    build_services,
    load_config,
)
from usage_guard.core.estimator import estimate_request
from usage_guard.core.pricing import DEFAULT_MODEL_KEY, Provider, format_cost
from usage_guard.core.quota import UNLIMITED
from usage_guard.errors import QuotaCheckError, QuotaExceeded
from usage_guard.storage.ledger import period_start_for, utc_now

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to the usage guard YAML config",
)


def _load(config_path: Optional[str]) -> UsageGuardConfig:
    if config_path is None:
        return UsageGuardConfig()
    return load_config(config_path)


def _services(config_path: Optional[str]) -> UsageServices:
    return build_services(_load(config_path))


def _format_remaining(remaining: int) -> str:
    return "unlimited" if remaining == UNLIMITED else f"{remaining:,}"


def _parse_month(month: Optional[str]) -> datetime:
    if month is None:
        return period_start_for(utc_now())
    try:
        parsed = datetime.strptime(month, "%Y-%m")
    except ValueError:
        raise typer.BadParameter("month must be formatted as YYYY-MM", param_hint="--month")
    return parsed.replace(tzinfo=timezone.utc)


def _next_month(start: datetime) -> datetime:
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log quota and recorder events"),
):
    """Usage Guard CLI."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if ctx.invoked_subcommand is None:
        console.print("Usage Guard - Use --help to see available commands")


@app.command()
def init(config: Optional[str] = ConfigOption):
    """Initialize the usage ledger database."""
    try:
        services = _services(config)
        console.print(f"[green]✓[/] Ledger initialized at {services.ledger.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing ledger:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def check(
    tenant: str = typer.Argument(..., help="Tenant to check"),
    units: int = typer.Argument(..., help="Units the request would consume"),
    config: Optional[str] = ConfigOption,
):
    """
    Check whether a tenant may consume UNITS more units.

    This is a dry run: an admitted check releases its reservation
    immediately, so no quota is held afterwards.
    """
    try:
        services = _services(config)
        result = services.quota.check_and_reserve(tenant, units)
        services.quota.release(result.reservation_id)
    except QuotaExceeded as e:
        console.print(f"[bold red]DENIED[/] {e}")
        console.print(f"Dimension: {e.dimension.value}")
        sys.exit(EXIT_CODE_FAIL)
    except QuotaCheckError as e:
        console.print(f"[bold red]DENIED[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[bold green]ADMITTED[/] {units:,} units for {tenant}")
    table = Table(show_header=True)
    table.add_column("Dimension")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Remaining after request", justify="right")
    table.add_row(
        "lifetime",
        f"{result.usage.lifetime_total:,}",
        _format_remaining(result.limits.lifetime_limit or UNLIMITED),
        _format_remaining(result.lifetime_remaining),
    )
    table.add_row(
        "period",
        f"{result.usage.period_total:,}",
        _format_remaining(result.limits.period_limit or UNLIMITED),
        _format_remaining(result.period_remaining),
    )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def usage(
    tenant: str = typer.Argument(..., help="Tenant to report on"),
    month: Optional[str] = typer.Option(
        None,
        "--month",
        "-m",
        help="Calendar month (YYYY-MM, UTC); defaults to the current month",
    ),
    config: Optional[str] = ConfigOption,
):
    """Show a tenant's recorded usage for one month."""
    start = _parse_month(month)
    try:
        services = _services(config)
        summary = services.ledger.summarize(tenant, since=start, until=_next_month(start))
        totals = services.ledger.aggregate(tenant, start)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"\n[bold]Usage for {tenant}[/bold] ({start:%Y-%m})")
    console.print("-" * 40)
    console.print(f"Lifetime units: {totals.lifetime_total:,}")
    console.print(f"Month units: {summary.total_units:,}")
    console.print(f"Month cost: ${format_cost(summary.total_cost)}")

    if not summary.by_provider:
        console.print("\n[dim]No usage recorded for this month.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(show_header=True)
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("Requests", justify="right")
    table.add_column("Units", justify="right")
    table.add_column("Cost", justify="right")
    for provider_name, provider in sorted(summary.by_provider.items()):
        for model_name, model in sorted(provider.models.items()):
            table.add_row(
                provider_name,
                model_name,
                str(model.requests),
                f"{model.units:,}",
                f"${format_cost(model.cost)}",
            )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def estimate(
    text: str = typer.Argument(..., help="Prompt text to estimate"),
    max_output: Optional[int] = typer.Option(
        None,
        "--max-output",
        help="Output cap for large inputs",
    ),
    config: Optional[str] = ConfigOption,
):
    """Estimate the units a single-message request would consume."""
    try:
        cap = max_output or _load(config).estimator.max_output_units
        result = estimate_request([{"role": "user", "content": text}], max_output_units=cap)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"Input units: {result.input_units:,}")
    console.print(f"Predicted output units: {result.predicted_output_units:,}")
    console.print(f"[bold]Total units: {result.total:,}[/bold]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def pricing(
    provider: Optional[str] = typer.Option(
        None,
        "--provider",
        "-p",
        help="Only show one provider",
    ),
    config: Optional[str] = ConfigOption,
):
    """Show the price list in USD per 1K units."""
    try:
        table_config = _load(config).pricing
        providers = [Provider.parse(provider)] if provider else list(Provider)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(show_header=True)
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("Input / 1K", justify="right")
    table.add_column("Output / 1K", justify="right")
    for member in providers:
        models = table_config.prices[member]
        # Provider default last
        names = sorted(m for m in models if m != DEFAULT_MODEL_KEY) + [DEFAULT_MODEL_KEY]
        for name in names:
            rates = models[name]
            table.add_row(
                member.value,
                name,
                f"${rates.input_cost_per_1k}",
                f"${rates.output_cost_per_1k}",
            )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
