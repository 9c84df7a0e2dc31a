"""
CLI interface for the credit ledger.

Operator access to accounts, grants, rate status, usage reports and
ledger maintenance.
"""

import logging
import sys
from decimal import Decimal
from enum import Enum
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from credit_ledger.config.loader import CONFIG_ENV_VAR, Tier, load_engine_config
from credit_ledger.core.engine import CreditEngine
from credit_ledger.core.errors import CreditEngineError
from credit_ledger.core.packages import CREDIT_PACKAGES, credits_to_usd
from credit_ledger.storage.db import DEFAULT_DB_PATH
from credit_ledger.storage.models import TransactionType
from credit_ledger.storage.repository import SQLiteLedgerStore, initialize_schema

app = typer.Typer()
console = Console()

DB_ENV_VAR = "CREDIT_LEDGER_DB"

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


class GrantType(Enum):
    """Transaction types an operator may grant."""
    PURCHASE = TransactionType.PURCHASE.value
    BONUS = TransactionType.BONUS.value
    REFUND = TransactionType.REFUND.value


class _State:
    def __init__(self, db_path: str, config_path: Optional[str]):
        self.db_path = db_path
        self.config_path = config_path

    def engine(self) -> CreditEngine:
        config = load_engine_config(self.config_path)
        initialize_schema(self.db_path)
        store = SQLiteLedgerStore(self.db_path, max_attempts=config.max_attempts)
        return CreditEngine(store, config)


def _engine(ctx: typer.Context) -> CreditEngine:
    try:
        return ctx.obj.engine()
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error loading configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _fail(e: Exception) -> None:
    console.print(f"[red]Error:[/] {str(e)}")
    sys.exit(EXIT_CODE_FAIL)


def _format_credits(amount: Decimal) -> str:
    """Format a credit amount with thousands separators."""
    return f"{amount:,.2f}"


def _format_currency(amount: Decimal) -> str:
    return f"${amount:,.2f}"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", envvar=DB_ENV_VAR, help="Path to the ledger database"),
    config: Optional[str] = typer.Option(
        None, "--config", "-c", envvar=CONFIG_ENV_VAR, help="Path to engine YAML config"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show ledger log output")
):
    """Credit ledger CLI."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)]
        )
    ctx.obj = _State(db, config)
    if ctx.invoked_subcommand is None:
        console.print("Credit Ledger - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the ledger database."""
    try:
        initialize_schema(ctx.obj.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def balance(ctx: typer.Context, identity: str = typer.Argument(..., help="Account identity")):
    """Show spendable credits for an identity."""
    engine = _engine(ctx)
    try:
        view = engine.get_balance(identity)
    except (CreditEngineError, ValueError) as e:
        _fail(e)

    console.print(f"\n[bold]Account:[/bold] {view.identity}")
    console.print(f"Balance: {_format_credits(view.balance)} credits")
    console.print(f"Daily free remaining: {view.daily_free_remaining}")
    console.print(f"Free allowance resets at: {view.free_window_resets_at.isoformat()}")
    console.print(f"Lifetime purchased: {_format_credits(view.lifetime_purchased)}")
    console.print(f"Lifetime consumed: {_format_credits(view.lifetime_consumed)}")


@app.command()
def grant(
    ctx: typer.Context,
    identity: str = typer.Argument(..., help="Account identity"),
    amount: str = typer.Argument(..., help="Credits to add"),
    txn_type: GrantType = typer.Option(
        GrantType.PURCHASE, "--type", "-t", help="Kind of credit to add"
    ),
    reference: Optional[str] = typer.Option(
        None, "--reference", "-r", help="External reference; a repeated reference is ignored"
    )
):
    """Add credits to an account."""
    engine = _engine(ctx)
    try:
        result = engine.grant(identity, amount, TransactionType(txn_type.value), reference)
    except (CreditEngineError, ValueError) as e:
        _fail(e)

    if result.duplicate:
        console.print(f"[yellow]Reference {result.reference} already applied; nothing granted[/]")
    else:
        console.print(f"[green]✓[/] Granted {_format_credits(result.amount)} {result.type.value} credits")
    console.print(f"New balance: {_format_credits(result.new_balance)}")


@app.command()
def buy(
    ctx: typer.Context,
    identity: str = typer.Argument(..., help="Account identity"),
    package: str = typer.Argument(..., help="Package id, see `packages`"),
    reference: str = typer.Option(..., "--reference", "-r", help="Payment reference")
):
    """Credit a paid-for package to an account."""
    engine = _engine(ctx)
    try:
        result = engine.buy_package(identity, package, reference)
    except (CreditEngineError, ValueError) as e:
        _fail(e)

    if result.duplicate:
        console.print(f"[yellow]Payment {reference} already applied; nothing granted[/]")
    else:
        console.print(f"[green]✓[/] Added {_format_credits(result.amount)} credits from {package}")
    console.print(f"New balance: {_format_credits(result.new_balance)}")


@app.command()
def packages():
    """List purchasable credit packages."""
    table = Table(title="Credit Packages")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Credits", justify="right")
    table.add_column("Price", justify="right")
    table.add_column("Per credit", justify="right")
    table.add_column("Savings", justify="right")

    for pack in CREDIT_PACKAGES:
        savings = credits_to_usd(pack.credits) - pack.price_usd
        table.add_row(
            pack.id,
            pack.name,
            f"{pack.credits:,}",
            _format_currency(pack.price_usd),
            f"${pack.price_per_credit}",
            _format_currency(savings) if savings > 0 else "-"
        )
    console.print(table)


@app.command()
def models(
    ctx: typer.Context,
    include_inactive: bool = typer.Option(False, "--all", help="Include inactive models")
):
    """List the pricing catalog."""
    engine = _engine(ctx)
    table = Table(title="Model Pricing")
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("Credits/1K", justify="right")
    table.add_column("In $/1M", justify="right")
    table.add_column("Out $/1M", justify="right")
    table.add_column("Active")

    for entry in engine.config.catalog.entries(include_inactive=include_inactive):
        table.add_row(
            entry.provider,
            entry.model,
            str(entry.credits_per_1k_units),
            str(entry.input_unit_cost),
            str(entry.output_unit_cost),
            "yes" if entry.active else "no"
        )
    console.print(table)


@app.command("rate-status")
def rate_status(
    ctx: typer.Context,
    identity: str = typer.Argument(..., help="Account identity"),
    tier: Tier = typer.Option(Tier.REGISTERED, "--tier", help="Caller tier")
):
    """Show remaining requests in the current windows."""
    engine = _engine(ctx)
    try:
        status = engine.get_rate_status(identity, tier)
    except (CreditEngineError, ValueError) as e:
        _fail(e)

    state = "[green]allowed[/]" if status.allowed else "[red]limited[/]"
    daily = "unlimited" if status.remaining_daily is None else str(status.remaining_daily)
    console.print(f"\n[bold]{identity}[/bold] ({status.tier.value}): {state}")
    console.print(f"Remaining this hour: {status.remaining_hourly}")
    console.print(f"Remaining today: {daily}")
    console.print(f"Resets at: {status.reset_at.isoformat()}")


@app.command()
def history(
    ctx: typer.Context,
    identity: str = typer.Argument(..., help="Account identity"),
    limit: int = typer.Option(20, "--limit", "-n", min=1, help="Number of transactions")
):
    """Show recent ledger transactions, newest first."""
    engine = _engine(ctx)
    transactions = engine.history(identity, limit=limit)
    if not transactions:
        console.print(f"\n[dim]No transactions for {identity}.[/]")
        return

    table = Table(title=f"Transactions for {identity}")
    table.add_column("Time")
    table.add_column("Type")
    table.add_column("Amount", justify="right")
    table.add_column("Balance after", justify="right")
    table.add_column("Description")

    for txn in transactions:
        table.add_row(
            txn.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            txn.type.value,
            f"{txn.amount:+,.2f}",
            _format_credits(txn.balance_after),
            txn.description
        )
    console.print(table)


@app.command()
def usage(
    ctx: typer.Context,
    identity: Optional[str] = typer.Option(None, "--identity", "-i", help="Filter to one identity"),
    days: int = typer.Option(30, "--days", "-d", min=1, help="Reporting period in days")
):
    """Summarize metered usage."""
    engine = _engine(ctx)
    summary = engine.usage_summary(identity=identity, days=days)

    console.print(f"\n[bold]Usage over the last {days} days[/bold]")
    console.print("-" * 40)
    if summary.requests == 0:
        console.print("\n[dim]No usage recorded for this period.[/]")
        return

    console.print(f"Requests: {summary.requests:,}")
    console.print(f"Credits charged: {_format_credits(summary.credits_charged)}")
    console.print(f"Units: {summary.total_units:,}")
    console.print(f"Average response time: {summary.avg_response_time_ms:,.0f} ms")

    table = Table(title="By model")
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("Requests", justify="right")
    table.add_column("Credits", justify="right")
    table.add_column("Avg units", justify="right")
    for stats in summary.by_model:
        table.add_row(
            stats.provider,
            stats.model,
            str(stats.requests),
            _format_credits(stats.credits_charged),
            f"{stats.average_units:,.0f}"
        )
    console.print(table)


@app.command()
def audit(ctx: typer.Context, identity: str = typer.Argument(..., help="Account identity")):
    """Replay an account's transactions against its stored balance."""
    engine = _engine(ctx)
    try:
        report = engine.audit(identity)
    except ValueError as e:
        _fail(e)

    console.print(f"\n[bold]Audit for {identity}[/bold]")
    console.print(f"Transactions: {report.transaction_count}")
    console.print(f"Recorded balance: {_format_credits(report.recorded_balance)}")
    console.print(f"Replayed balance: {_format_credits(report.replayed_balance)}")
    console.print(f"Free units drawn: {report.free_units_drawn}")

    if report.balanced:
        console.print("[green]✓[/] Ledger is consistent")
        sys.exit(EXIT_CODE_PASS)
    console.print("[red]✗ Ledger mismatch[/]")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def sweep(ctx: typer.Context):
    """Delete stale rate windows and expired usage records."""
    engine = _engine(ctx)
    deleted = engine.sweep()
    console.print(f"[green]✓[/] Removed {deleted} stale rows")


if __name__ == "__main__":
    app()
