"""
CLI interface for Lingua Meter.

Provides command-line access to usage, quota and subscription state.
"""

import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from lingua_meter.config.loader import (
    MeteringConfig,
    default_metering_config,
    load_metering_config,
)
from lingua_meter.core.ledger import MonthlyUsage, UsageLedger, create_ledger
from lingua_meter.core.pricing import UsageCounters, format_cost
from lingua_meter.sdk.providers import RuntimeMode
from lingua_meter.storage.db import DEFAULT_DB_PATH
from lingua_meter.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1  # Failing error, or no quota left for `quota`

T = TypeVar("T")


@dataclass
class CliState:
    db_path: str = DEFAULT_DB_PATH
    config: Optional[MeteringConfig] = None
    mode: Optional[RuntimeMode] = None


def _state(ctx: typer.Context) -> CliState:
    if ctx.obj is None:
        ctx.obj = CliState(config=default_metering_config())
    return ctx.obj


def _run(ctx: typer.Context, user_id: str, action: Callable[[UsageLedger], Awaitable[T]]) -> T:
    """Run an async ledger action for one user and close the provider."""
    state = _state(ctx)

    async def runner() -> T:
        ledger = create_ledger(user_id, config=state.config, db_path=state.db_path, mode=state.mode)
        try:
            return await action(ledger)
        finally:
            await ledger.aclose()

    return asyncio.run(runner())


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the ledger database"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Metering config YAML file"),
    mode: Optional[RuntimeMode] = typer.Option(
        None, "--mode", help="Entitlement provider mode (overrides config)"
    ),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
):
    """Lingua Meter CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        metering_config = load_metering_config(config) if config else default_metering_config()
    except Exception as e:
        _fail(f"Invalid configuration: {e}")
    ctx.obj = CliState(db_path=db, config=metering_config, mode=mode)

    if ctx.invoked_subcommand is None:
        console.print("Lingua Meter - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the ledger database."""
    try:
        initialize_schema(_state(ctx).db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def plans(ctx: typer.Context):
    """List subscription plans and their monthly limits."""
    config = _state(ctx).config
    table = Table(title="Subscription Plans")
    table.add_column("Tier")
    table.add_column("Plan")
    table.add_column("Price", justify="right")
    table.add_column("Credits", justify="right")
    table.add_column("Tokens", justify="right")
    for plan in config.plans.ordered():
        table.add_row(
            plan.tier.value,
            plan.name,
            format_cost(plan.price_amount),
            format_cost(plan.monthly_credit_limit),
            f"{plan.monthly_token_limit:,}",
        )
    console.print(table)


def _display_usage(usage: MonthlyUsage) -> None:
    costs = usage.costs
    console.print(f"\n[bold]Usage for {usage.user_id}[/bold] ({usage.tier.value} tier)")
    console.print(f"Period: {usage.period.start.date()} to {usage.period.end.date()}")

    table = Table()
    table.add_column("Category")
    table.add_column("Amount", justify="right")
    table.add_column("Cost", justify="right")
    table.add_row("Transcription (min)", f"{usage.counters.transcription_minutes:,.2f}",
                  format_cost(costs.transcription_cost))
    table.add_row("Model input (tokens)", f"{usage.counters.llm_input_tokens:,}",
                  format_cost(costs.llm_input_cost))
    table.add_row("Model output (tokens)", f"{usage.counters.llm_output_tokens:,}",
                  format_cost(costs.llm_output_cost))
    table.add_row("Speech (chars)", f"{usage.counters.tts_characters:,}",
                  format_cost(costs.tts_cost))
    table.add_row("[bold]Total[/bold]", "", format_cost(costs.total_cost))
    console.print(table)

    console.print(
        f"Used: {format_cost(costs.total_cost)} of {format_cost(usage.credit_limit)} "
        f"({usage.percentage_used:.1f}%)"
    )
    console.print(f"Tokens: {usage.used_tokens:,} / {usage.token_limit:,}")


@app.command()
def usage(ctx: typer.Context, user: str = typer.Argument(..., help="User id")):
    """Show current period usage for a user."""
    try:
        result = _run(ctx, user, lambda ledger: ledger.get_usage(user))
    except Exception as e:
        _fail(str(e))
    _display_usage(result)


@app.command()
def track(
    ctx: typer.Context,
    user: str = typer.Argument(..., help="User id"),
    minutes: float = typer.Option(0.0, "--minutes", help="Transcription minutes"),
    input_tokens: int = typer.Option(0, "--input-tokens", help="Model input tokens"),
    output_tokens: int = typer.Option(0, "--output-tokens", help="Model output tokens"),
    tts_chars: int = typer.Option(0, "--tts-chars", help="Synthesized characters"),
):
    """Record usage for a user."""
    delta = UsageCounters(
        transcription_minutes=minutes,
        llm_input_tokens=input_tokens,
        llm_output_tokens=output_tokens,
        tts_characters=tts_chars,
    )
    try:
        result = _run(ctx, user, lambda ledger: ledger.track_usage(user, delta))
    except Exception as e:
        _fail(str(e))
    console.print("[green]✓[/] Usage recorded")
    _display_usage(result)


@app.command()
def quota(ctx: typer.Context, user: str = typer.Argument(..., help="User id")):
    """Check whether a user has quota left (exit code 0) or not (exit code 1)."""
    try:
        result = _run(ctx, user, lambda ledger: ledger.get_usage(user))
    except Exception as e:
        _fail(str(e))

    if result.has_quota:
        console.print(f"[green]✓[/] Quota available ({result.percentage_used:.1f}% used)")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[red]✗[/] Quota exhausted ({result.percentage_used:.1f}% used)")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def exceed(ctx: typer.Context, user: str = typer.Argument(..., help="User id")):
    """Push a user's usage to 100% of the monthly limit."""
    try:
        result = _run(ctx, user, lambda ledger: ledger.force_exceed_quota(user))
    except Exception as e:
        _fail(str(e))
    console.print(f"[yellow]![/] Usage for {user} is now at {result.percentage_used:.1f}%")


@app.command()
def reconcile(ctx: typer.Context, user: str = typer.Argument(..., help="User id")):
    """Sync a user's stored tier with the live subscription."""
    try:
        result = _run(ctx, user, lambda ledger: ledger.reconciler.reconcile_user(user))
    except Exception as e:
        _fail(str(e))
    stored = result.stored_tier.value if result.stored_tier else "-"
    console.print(
        f"Reconciled {user}: {result.action.value} "
        f"(stored {stored}, live {result.live_tier.value}, source {result.source.value})"
    )


@app.command()
def subscription(ctx: typer.Context, user: str = typer.Argument(..., help="User id")):
    """Show the live subscription status and available packages."""

    async def fetch(ledger: UsageLedger):
        subscriptions = ledger.reconciler.subscriptions
        status = await subscriptions.get_current_subscription()
        packages = await subscriptions.get_offerings()
        return status, packages

    try:
        status, packages = _run(ctx, user, fetch)
    except Exception as e:
        _fail(str(e))

    console.print(f"\n[bold]Subscription for {user}[/bold]")
    console.print(f"Tier: {status.tier.value} ({status.source.value})")
    console.print(f"Active: {'yes' if status.is_active else 'no'}")
    if status.expiration_date:
        console.print(f"Expires: {status.expiration_date.isoformat()}")
    if status.is_cancelled:
        console.print("[yellow]Will not renew[/]")

    if not packages:
        console.print("\n[dim]No packages available for purchase.[/]")
        return
    table = Table(title="Available Packages")
    table.add_column("Package")
    table.add_column("Product")
    table.add_column("Price", justify="right")
    for package in packages:
        table.add_row(package.title or package.identifier, package.product_identifier, package.price_string)
    console.print(table)


if __name__ == "__main__":
    app()
