"""
CLI interface for the impact ledger.

Provides command-line access to the store: schema setup, impact reports
and the reconciliation sweep.
"""

import sqlite3
import sys
from decimal import Decimal
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from impact_ledger.config.loader import LedgerConfig, default_config, load_config
from impact_ledger.core.ledger import UsageLedger
from impact_ledger.core.log import setup_logging
from impact_ledger.core.milestones import MILESTONE_TABLE, MILESTONE_TABLE_VERSION
from impact_ledger.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1
EXIT_CODE_UNAGGREGATED = 2  # check found events the sweep still has to cover

DB_OPTION = typer.Option(None, "--db", "-d", help="Path to the SQLite ledger")
CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to a YAML config file")


def _load(config_path: Optional[str]) -> LedgerConfig:
    config = load_config(config_path) if config_path else default_config()
    setup_logging(config.log_level)
    return config


def _ledger(config_path: Optional[str], db: Optional[str]) -> UsageLedger:
    """Ledger for a command; exits with EXIT_CODE_FAIL on a bad config."""
    try:
        config = _load(config_path)
    except (ValueError, FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"[red]Error loading configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    return UsageLedger(db or config.database.path, rates=config.rates)


def _format_trees(trees: Decimal) -> str:
    return f"{trees:,.6f}"


def _format_currency(amount: Decimal) -> str:
    return f"${amount:,.8f}"


def _no_data_hint() -> None:
    console.print("\n[bold yellow]No ledger found[/]")
    console.print("\nRun `impact-ledger init` to create the database first.\n")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Impact Ledger CLI."""
    if ctx.invoked_subcommand is None:
        console.print("Impact Ledger - Use --help to see available commands")


@app.command()
def init(db: Optional[str] = DB_OPTION, config: Optional[str] = CONFIG_OPTION):
    """Initialize the ledger database."""
    try:
        settings = _load(config)
        initialize_schema(db or settings.database.path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except (sqlite3.Error, ValueError, FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def stats(db: Optional[str] = DB_OPTION, config: Optional[str] = CONFIG_OPTION):
    """Show platform-wide impact."""
    try:
        global_stats = _ledger(config, db).get_global_stats()
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            _no_data_hint()
            sys.exit(EXIT_CODE_FAIL)
        raise
    except LookupError:
        _no_data_hint()
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Global Impact")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Users", str(global_stats.total_users))
    table.add_row("Queries", str(global_stats.total_queries))
    table.add_row("Trees planted", _format_trees(global_stats.total_trees))
    table.add_row("Trees this week", _format_trees(global_stats.trees_this_week))
    table.add_row("Total donated", _format_currency(global_stats.total_donated))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def user(
    user_id: str = typer.Argument(..., help="User to report on"),
    history: int = typer.Option(0, "--history", "-n", help="Also list the last N queries"),
    db: Optional[str] = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION
):
    """Show one user's impact, progress and milestones."""
    try:
        ledger = _ledger(config, db)
        impact = ledger.get_user_impact(user_id)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            _no_data_hint()
            sys.exit(EXIT_CODE_FAIL)
        raise

    if impact is None:
        console.print(f"[red]Unknown user:[/] {user_id}")
        sys.exit(EXIT_CODE_FAIL)

    profile = impact.user
    console.print(f"\n[bold]User:[/bold] {profile.id} ({profile.email})")
    console.print(f"Queries: {profile.total_queries}")
    console.print(f"Tokens: {profile.total_input_tokens} in / {profile.total_output_tokens} out")
    console.print(f"Cost: {_format_currency(profile.total_cost)}")
    console.print(f"Donated: {_format_currency(profile.total_donated)}")
    console.print(f"Trees planted: {_format_trees(profile.trees_planted)}")
    console.print(
        f"Progress to next tree: {impact.progress.progress:.0%} "
        f"(next tree at {impact.progress.next_tree_at})"
    )
    if impact.next_milestone.next_milestone is not None:
        console.print(
            f"Next milestone: {impact.next_milestone.next_milestone.trees} trees "
            f"({_format_trees(impact.next_milestone.trees_remaining)} to go)"
        )
    reached = ", ".join(str(t) for t in impact.milestones) or "none yet"
    console.print(f"Milestones: {reached}")

    if history > 0:
        table = Table(title="Recent queries")
        table.add_column("When")
        table.add_column("Model")
        table.add_column("Tokens", justify="right")
        table.add_column("Cost", justify="right")
        table.add_column("Trees", justify="right")
        table.add_column("Status")
        for event in ledger.get_query_history(user_id, limit=history):
            table.add_row(
                event.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                event.model,
                str(event.total_tokens),
                _format_currency(event.total_cost),
                _format_trees(event.trees),
                event.status.value
            )
        console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def milestones():
    """List the milestone thresholds."""
    table = Table(title=f"Milestones (table v{MILESTONE_TABLE_VERSION})")
    table.add_column("Trees", justify="right")
    table.add_column("Title")
    table.add_column("Description")
    for milestone in MILESTONE_TABLE:
        table.add_row(str(milestone.trees), milestone.message, milestone.description)
    console.print(table)


@app.command()
def check(db: Optional[str] = DB_OPTION, config: Optional[str] = CONFIG_OPTION):
    """List events whose aggregate update has not landed."""
    try:
        ledger = _ledger(config, db)
        pending = ledger.find_unaggregated_events() + ledger.find_stale_events()
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            _no_data_hint()
            sys.exit(EXIT_CODE_FAIL)
        raise

    if not pending:
        console.print("[green]✓[/] All events are reflected in the aggregates")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"{len(pending)} event(s) missing from aggregates")
    table.add_column("Event")
    table.add_column("User")
    table.add_column("Trees", justify="right")
    table.add_column("Status")
    for event in pending:
        table.add_row(event.id, event.user_id, _format_trees(event.trees), event.status.value)
    console.print(table)
    console.print("\nRun `impact-ledger reconcile` to rebuild the aggregates.")
    sys.exit(EXIT_CODE_UNAGGREGATED)


@app.command()
def reconcile(db: Optional[str] = DB_OPTION, config: Optional[str] = CONFIG_OPTION):
    """Rebuild every aggregate from its events and back-fill milestones."""
    try:
        report = _ledger(config, db).reconcile()
    except sqlite3.Error as e:
        console.print(f"[red]Reconciliation failed:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print("\n[bold]Reconciliation Result[/bold]")
    console.print("-" * 40)
    console.print(f"Events swept: {report.events_swept}")
    console.print(f"Sessions corrected: {report.sessions_corrected}")
    console.print(f"Users corrected: {report.users_corrected}")
    console.print(f"Global totals corrected: {'yes' if report.global_corrected else 'no'}")
    console.print(f"Milestones back-filled: {report.milestones_backfilled}")
    sys.exit(EXIT_CODE_PASS)


@app.command("refresh-week")
def refresh_week(db: Optional[str] = DB_OPTION, config: Optional[str] = CONFIG_OPTION):
    """Recompute trees planted in the trailing seven days."""
    try:
        stats = _ledger(config, db).refresh_weekly_trees()
    except sqlite3.Error as e:
        console.print(f"[red]Refresh failed:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Trees this week: {_format_trees(stats.trees_this_week)}")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
