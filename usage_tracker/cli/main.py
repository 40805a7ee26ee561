"""
CLI interface for Claude Usage Tracker.

Renders usage snapshots from the refresh pipeline in the terminal.
"""

import asyncio
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from usage_tracker.config.loader import TrackerSettings, load_settings
from usage_tracker.core.aggregation import ModelBreakdown
from usage_tracker.core.budget import BudgetLevel, BudgetStatus, check_budget
from usage_tracker.core.formatting import (
    format_cost,
    format_month,
    format_time_remaining,
    format_token_count,
)
from usage_tracker.core.pricing import PricingError, PricingResolver
from usage_tracker.core.refresh import RefreshOrchestrator, RefreshState, UsageSnapshot
from usage_tracker.core.watcher import DirectoryWatcher
from usage_tracker.storage.loader import EntryLoader

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_BUDGET_STYLES = {
    BudgetLevel.OK: "green",
    BudgetLevel.WARNING: "yellow",
    BudgetLevel.EXCEEDED: "red",
}

_settings_path: Optional[Path] = None


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _get_settings() -> TrackerSettings:
    try:
        return load_settings(_settings_path)
    except (ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid settings:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _build_orchestrator(settings: TrackerSettings, watch: bool = False) -> RefreshOrchestrator:
    loader = EntryLoader()
    watcher = DirectoryWatcher(loader.find_jsonl_files) if watch else None
    return RefreshOrchestrator(
        resolver=PricingResolver(),
        loader=loader,
        settings=settings,
        watcher=watcher,
    )


def _load_snapshot(settings: TrackerSettings) -> UsageSnapshot:
    """Run a single refresh cycle and return its snapshot."""
    return asyncio.run(_build_orchestrator(settings).refresh())


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    settings: Optional[Path] = typer.Option(
        None,
        "--settings",
        "-s",
        help="Path to a YAML settings file"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging"
    ),
):
    """Claude Usage Tracker CLI."""
    global _settings_path
    _settings_path = settings
    _configure_logging(verbose)
    if ctx.invoked_subcommand is None:
        console.print("Claude Usage Tracker - Use --help to see available commands")


def _refresh_or_exit(settings: TrackerSettings) -> UsageSnapshot:
    snapshot = _load_snapshot(settings)
    if snapshot.state == RefreshState.ERROR:
        console.print(f"[red]Error refreshing usage:[/] {snapshot.last_error}")
        sys.exit(EXIT_CODE_FAIL)
    return snapshot


def _breakdown_table(title: str, breakdowns: Sequence[ModelBreakdown], places: int) -> Table:
    table = Table(title=title)
    table.add_column("Model")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Cache write", justify="right")
    table.add_column("Cache read", justify="right")
    table.add_column("Cost", justify="right")
    for breakdown in breakdowns:
        tokens = breakdown.token_counts
        table.add_row(
            breakdown.display_name,
            format_token_count(tokens.input_tokens),
            format_token_count(tokens.output_tokens),
            format_token_count(tokens.cache_creation_tokens),
            format_token_count(tokens.cache_read_tokens),
            format_cost(breakdown.cost, places),
        )
    return table


def _print_budget(status: BudgetStatus, places: int) -> None:
    if status.level == BudgetLevel.DISABLED:
        return
    style = _BUDGET_STYLES[status.level]
    console.print(
        f"[{style}]{status.period.capitalize()} budget: "
        f"{format_cost(status.amount_used, places)} of {format_cost(status.budget, places)} "
        f"({status.fraction_used:.0%})[/]"
    )


def _render_today(snapshot: UsageSnapshot, settings: TrackerSettings) -> None:
    places = settings.cost_decimal_places
    today = snapshot.today_usage
    console.print(f"\n[bold]Today ({today.id})[/bold]")
    console.print(f"Cost: {format_cost(today.total_cost, places)}")
    console.print(f"Tokens: {format_token_count(today.token_counts.total)}")
    _print_budget(check_budget("daily", today.total_cost, settings.daily_budget), places)
    if today.model_breakdowns:
        console.print(_breakdown_table("Models", today.model_breakdowns, places))


def _render_block(snapshot: UsageSnapshot, settings: TrackerSettings) -> None:
    block = snapshot.current_block
    if block is None:
        console.print("\n[dim]No active session block.[/]")
        return
    now = datetime.now(timezone.utc)
    console.print("\n[bold]Session block[/bold]")
    console.print(f"Started: {block.start_time.astimezone():%H:%M}")
    console.print(f"Progress: {block.elapsed_progress(now):.0%}")
    console.print(f"Remaining: {format_time_remaining(block.time_remaining(now))}")
    console.print(f"Cost: {format_cost(block.cost_usd, settings.cost_decimal_places)}")
    console.print(f"Tokens: {format_token_count(block.token_counts.total)}")
    if block.models:
        console.print(f"Models: {', '.join(block.models)}")


def _render_summary(snapshot: UsageSnapshot, settings: TrackerSettings) -> None:
    places = settings.cost_decimal_places
    _render_today(snapshot, settings)
    _render_block(snapshot, settings)
    month = snapshot.this_month_usage
    console.print(f"\n[bold]{format_month(month.month)}:[/bold] {format_cost(month.total_cost, places)}")
    _print_budget(check_budget("monthly", month.total_cost, settings.monthly_budget), places)
    if snapshot.last_error is not None:
        console.print(f"[red]Last refresh failed:[/] {snapshot.last_error}")


@app.command()
def today():
    """Show today's usage with a per-model breakdown."""
    settings = _get_settings()
    snapshot = _refresh_or_exit(settings)
    _render_today(snapshot, settings)


@app.command()
def block():
    """Show the current 5-hour session block."""
    settings = _get_settings()
    snapshot = _refresh_or_exit(settings)
    _render_block(snapshot, settings)


@app.command()
def daily():
    """Show usage for the last 14 days."""
    settings = _get_settings()
    snapshot = _refresh_or_exit(settings)
    places = settings.cost_decimal_places

    if not snapshot.daily_usage:
        console.print("\n[dim]No usage found in the last 14 days.[/]")
        return

    table = Table(title="Daily usage")
    table.add_column("Date")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Top model")
    for day in snapshot.daily_usage:
        top = day.model_breakdowns[0].display_name if day.model_breakdowns else "-"
        table.add_row(
            day.id,
            format_token_count(day.token_counts.total),
            format_cost(day.total_cost, places),
            top,
        )
    console.print(table)


@app.command()
def monthly():
    """Show usage per calendar month."""
    settings = _get_settings()
    snapshot = _refresh_or_exit(settings)
    places = settings.cost_decimal_places

    if not snapshot.monthly_usage:
        console.print("\n[dim]No usage found.[/]")
        return

    table = Table(title="Monthly usage")
    table.add_column("Month")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    for month in snapshot.monthly_usage:
        table.add_row(
            format_month(month.month),
            format_token_count(month.token_counts.total),
            format_cost(month.total_cost, places),
        )
    console.print(table)
    _print_budget(
        check_budget("monthly", snapshot.this_month_usage.total_cost, settings.monthly_budget),
        places,
    )


@app.command()
def pricing(model: str = typer.Argument(..., help="Model identifier, e.g. claude-opus-4-20250514")):
    """Show the per-token pricing resolved for a model."""
    resolver = PricingResolver()
    try:
        asyncio.run(resolver.load_pricing())
    except PricingError as e:
        console.print(f"[red]Error loading pricing:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    model_pricing = resolver.get_pricing(model)
    if model_pricing is None:
        console.print(f"[yellow]No pricing found for {model}[/]")
        sys.exit(EXIT_CODE_FAIL)

    per_million = 1_000_000
    console.print(f"\n[bold]{model}[/bold] (USD per million tokens)")
    console.print(f"Input: ${model_pricing.input_cost_per_token * per_million:,.2f}")
    console.print(f"Output: ${model_pricing.output_cost_per_token * per_million:,.2f}")
    console.print(f"Cache write: ${model_pricing.cache_creation_rate * per_million:,.2f}")
    console.print(f"Cache read: ${model_pricing.cache_read_rate * per_million:,.2f}")


async def _watch(settings: TrackerSettings) -> None:
    orchestrator = _build_orchestrator(settings, watch=True)

    def _on_snapshot(snapshot: UsageSnapshot) -> None:
        if snapshot.state != RefreshState.REFRESHING:
            console.rule(f"Updated {datetime.now():%H:%M:%S}")
            _render_summary(snapshot, settings)

    orchestrator.subscribe(_on_snapshot)
    await orchestrator.start()
    try:
        await asyncio.Event().wait()
    finally:
        await orchestrator.stop()


@app.command()
def watch():
    """Keep refreshing on file changes and on the configured interval."""
    settings = _get_settings()
    try:
        asyncio.run(_watch(settings))
    except KeyboardInterrupt:
        console.print("\nStopped watching")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
