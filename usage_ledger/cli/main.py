"""
CLI interface for Usage Ledger.

Inspect and record per-user usage from the command line.
"""

import logging
import os
import sys
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from usage_ledger.config.loader import AppConfig, describe_config, load_config, load_config_from_env
from usage_ledger.core.policy import AccessPolicy
from usage_ledger.logging_config import setup_logging
from usage_ledger.sdk.cost_fetcher import CostFetchError, GenerationCostFetcher
from usage_ledger.storage.files import LedgerFileStorage
from usage_ledger.storage.repository import UsageStore

app = typer.Typer()
console = Console()
logger = logging.getLogger(__name__)

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="YAML config file (environment variables are used if omitted)"
)


def _load(config_path: Optional[str]) -> AppConfig:
    """Load configuration, exiting with an error if it is invalid."""
    try:
        if config_path:
            app_config = load_config(config_path)
        else:
            app_config = load_config_from_env(os.environ)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    for line in describe_config(app_config):
        logger.info("Config %s", line)
    return app_config


def _build_store(config: AppConfig) -> UsageStore:
    return UsageStore(LedgerFileStorage(config.storage_dir))


def _format_currency(amount: float) -> str:
    """Format currency with enough precision for per-request costs."""
    return f"${amount:,.4f}"


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Usage Ledger CLI."""
    setup_logging()
    if ctx.invoked_subcommand is None:
        console.print("Usage Ledger - Use --help to see available commands")


@app.command()
def stats(user_id: str, config: Optional[str] = CONFIG_OPTION):
    """Show a user's daily, monthly and total cost."""
    app_config = _load(config)
    store = _build_store(app_config)
    policy = AccessPolicy(app_config.policy, store)

    summary = store.usage_summary(user_id)
    role = policy.role(user_id)
    budget = app_config.policy.budget_for(role)

    table = Table(title=f"Usage for {summary.user_name or user_id}")
    table.add_column("Period")
    table.add_column("Cost", justify="right")
    table.add_row("Today", _format_currency(summary.daily))
    table.add_row("This month", _format_currency(summary.monthly))
    table.add_row("Total", _format_currency(summary.total))
    console.print(table)

    console.print(f"Role: {role.value}")
    if budget is None:
        console.print("Budget: unlimited")
    else:
        console.print(f"Budget: {_format_currency(budget)} ({app_config.policy.period.value})")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def check(user_id: str, config: Optional[str] = CONFIG_OPTION):
    """Check whether a user may send another request."""
    app_config = _load(config)
    policy = AccessPolicy(app_config.policy, _build_store(app_config))

    decision = policy.check(user_id)
    if decision.allowed:
        console.print(f"[green]✓[/] {user_id} allowed ({decision.role.value})")
        sys.exit(EXIT_CODE_PASS)

    console.print(f"[red]✗[/] {user_id} denied ({decision.role.value}): {decision.reason}")
    sys.exit(EXIT_CODE_FAIL)


@app.command("add-cost")
def add_cost(
    user_id: str,
    amount: float,
    name: str = typer.Option("", "--name", "-n", help="Display name for a new user"),
    config: Optional[str] = CONFIG_OPTION
):
    """Record a cost for a user."""
    app_config = _load(config)
    store = _build_store(app_config)

    try:
        saved = store.add_cost(user_id, amount, user_name=name)
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not saved:
        console.print(f"[red]Error:[/] cost recorded but could not be saved for {user_id}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Recorded {_format_currency(amount)} for {user_id}")
    sys.exit(EXIT_CODE_PASS)


@app.command("fetch-cost")
def fetch_cost(
    generation_id: str,
    user_id: str,
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        "-t",
        help="Request timeout in seconds"
    ),
    config: Optional[str] = CONFIG_OPTION
):
    """Look up a generation's cost and record it for a user."""
    app_config = _load(config)
    fetcher = GenerationCostFetcher(_build_store(app_config), app_config.metering)

    try:
        result = fetcher.fetch_and_record(generation_id, user_id, timeout=timeout)
    except CostFetchError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        fetcher.close()

    if not result.saved:
        console.print(
            f"[red]Error:[/] cost {_format_currency(result.cost)} recorded but could not be saved for {user_id}"
        )
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Recorded {_format_currency(result.cost)} for {user_id}")
    sys.exit(EXIT_CODE_PASS)


@app.command("show-config")
def show_config(config: Optional[str] = CONFIG_OPTION):
    """Print the effective configuration."""
    app_config = _load(config)
    for line in describe_config(app_config):
        console.print(line)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
