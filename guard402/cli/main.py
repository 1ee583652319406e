"""
CLI interface for guard402.

Inspect and manage a SQLite usage ledger from the command line.
"""

import json
import sys
from datetime import datetime
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from guard402.config.loader import load_policy_config
from guard402.core.analytics import SUMMARIES
from guard402.core.errors import Guard402Error
from guard402.core.invoice import generate_invoice, generate_invoice_csv, invoice_to_dict
from guard402.core.policies import BudgetGuard
from guard402.storage.db import DEFAULT_DB_PATH
from guard402.storage.models import UsageEvent
from guard402.storage.repository import SqliteUsageLedger

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DbOption = typer.Option(
    DEFAULT_DB_PATH,
    "--db",
    envvar="GUARD402_DB",
    help="Path to the SQLite usage ledger"
)


def _parse_datetime(value: Optional[str], name: str) -> Optional[datetime]:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"{name} must be an ISO-8601 timestamp, got {value!r}")
    # The ledger keeps naive local time
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def _format_currency(amount: float) -> str:
    """Format USD with four decimals, enough for per-request prices."""
    return f"${amount:,.4f}"


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """guard402 CLI."""
    if ctx.invoked_subcommand is None:
        console.print("guard402 - Use --help to see available commands")


@app.command()
def status(db: str = DbOption):
    """Show today's and this month's total spend."""
    try:
        guard = BudgetGuard(SqliteUsageLedger(db))
        snapshot = guard.spend_snapshot()
        records = len(guard.ledger.get_records())
    except Guard402Error as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Ledger at {db}: {records} record(s)")
    console.print(f"Spend today: {_format_currency(snapshot['daily_usd'])}")
    console.print(f"Spend this month: {_format_currency(snapshot['monthly_usd'])}")


@app.command()
def init(db: str = DbOption):
    """Initialize the usage ledger database."""
    try:
        SqliteUsageLedger(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Guard402Error as e:
        console.print(f"[red]Error initializing database:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def record(
    service: str = typer.Option(..., "--service", "-s", help="Service id (target host)"),
    amount: float = typer.Option(..., "--amount", "-a", help="Spend in USD"),
    agent: Optional[str] = typer.Option(None, "--agent", help="Agent id"),
    subscription: Optional[str] = typer.Option(None, "--subscription", help="Subscription id"),
    timestamp: Optional[str] = typer.Option(None, "--at", help="ISO-8601 timestamp (defaults to now)"),
    db: str = DbOption,
):
    """Append a usage record to the ledger without any policy check."""
    try:
        event = UsageEvent(
            service_id=service,
            usd_amount=amount,
            timestamp=_parse_datetime(timestamp, "--at") or datetime.now(),
            agent_id=agent,
            subscription_id=subscription,
        )
        stored = SqliteUsageLedger(db).record_usage(event)
    except (ValueError, Guard402Error) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Recorded {stored.id}: {_format_currency(stored.usd_amount)} for {stored.service_id}")


@app.command()
def summary(
    by: str = typer.Option("service", "--by", "-b", help="Group by service, agent or subscription"),
    db: str = DbOption,
):
    """Show request count and total spend per group."""
    if by not in SUMMARIES:
        console.print(f"[red]Error:[/] --by must be one of: {', '.join(SUMMARIES)}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        rows = SUMMARIES[by](SqliteUsageLedger(db))
    except Guard402Error as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if not rows:
        console.print("\n[bold yellow]No usage recorded yet[/]\n")
        return

    table = Table(title=f"Spend by {by}")
    table.add_column(by.capitalize())
    table.add_column("Requests", justify="right")
    table.add_column("Total", justify="right")
    for row in rows:
        table.add_row(row.key, str(row.count), _format_currency(row.total_usd))
    console.print(table)


@app.command()
def invoice(
    subscription: Optional[str] = typer.Option(None, "--subscription", help="Subscription to bill (JSON format)"),
    agent: Optional[str] = typer.Option(None, "--agent", help="Only this agent's records (CSV format)"),
    start: Optional[str] = typer.Option(None, "--start", help="Period start, ISO-8601"),
    end: Optional[str] = typer.Option(None, "--end", help="Period end, ISO-8601"),
    fmt: str = typer.Option("json", "--format", "-f", help="json or csv"),
    db: str = DbOption,
):
    """Print an invoice as JSON (per subscription) or a CSV record export."""
    period_start = _parse_datetime(start, "--start")
    period_end = _parse_datetime(end, "--end")

    try:
        ledger = SqliteUsageLedger(db)
        if fmt == "csv":
            typer.echo(generate_invoice_csv(ledger, agent_id=agent, start=period_start, end=period_end), nl=False)
            return
        if fmt != "json":
            console.print("[red]Error:[/] --format must be json or csv")
            sys.exit(EXIT_CODE_FAIL)
        if not subscription:
            console.print("[red]Error:[/] --subscription is required for JSON invoices")
            sys.exit(EXIT_CODE_FAIL)

        result = generate_invoice(
            ledger,
            subscription_id=subscription,
            period_start=period_start or datetime.min,
            period_end=period_end or datetime.now(),
        )
    except (ValueError, Guard402Error) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    typer.echo(json.dumps(invoice_to_dict(result), indent=2))


@app.command()
def check(
    config: str = typer.Option(..., "--config", "-c", help="Path to policy YAML"),
    service: str = typer.Option(..., "--service", "-s", help="Service id (target host)"),
    amount: float = typer.Option(..., "--amount", "-a", help="Proposed spend in USD"),
    agent: Optional[str] = typer.Option(None, "--agent", help="Agent id"),
    subscription: Optional[str] = typer.Option(None, "--subscription", help="Subscription id"),
    db: str = DbOption,
):
    """
    Preview whether a proposed spend would be allowed.

    This is a read-only operation: nothing is recorded. Exits with 1 when
    the spend would be denied.
    """
    try:
        policies = load_policy_config(config)
        guard = BudgetGuard(SqliteUsageLedger(db), policies)
        result = guard.preview(UsageEvent(
            service_id=service,
            usd_amount=amount,
            timestamp=datetime.now(),
            agent_id=agent,
            subscription_id=subscription,
        ))
    except (FileNotFoundError, ValueError, yaml.YAMLError, Guard402Error) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if result.allowed:
        console.print(f"[green]ALLOW[/] {_format_currency(amount)} for {service}")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[red]DENY[/] {_format_currency(amount)} for {service}: {result.reason}")
    sys.exit(EXIT_CODE_FAIL)


if __name__ == "__main__":
    app()
