"""
CLI interface for Research Guard.

Provides command-line access to the usage ledger, webhook verification,
the HTTP server and single chat turns.
"""

import logging
import sqlite3
import sys
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from research_guard.config.loader import LedgerBackend, Settings, load_settings
from research_guard.core.context import RequestContext
from research_guard.core.webhook import WebhookVerifier
from research_guard.sdk.ledger_client import build_ledger_client
from research_guard.storage.repository import UsageRepository

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _settings(ctx: typer.Context) -> Settings:
    """Load settings once per invocation, exiting on invalid configuration."""
    if ctx.obj.get("settings") is None:
        try:
            ctx.obj["settings"] = load_settings(ctx.obj.get("config_path"))
        except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
            console.print(f"[red]Invalid configuration:[/] {e}")
            sys.exit(EXIT_CODE_FAIL)
    return ctx.obj["settings"]


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file",
    ),
):
    """Research Guard CLI."""
    ctx.obj = {"config_path": config, "settings": None}
    if ctx.invoked_subcommand is None:
        console.print("Research Guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the local usage ledger database."""
    settings = _settings(ctx)
    try:
        UsageRepository(settings.ledger.db_path).initialize_schema()
        console.print(f"[green]✓[/] Usage ledger initialized at {settings.ledger.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(ctx: typer.Context):
    """Show the effective configuration (secrets are only reported as set or missing)."""
    settings = _settings(ctx)

    def configured(value: str) -> str:
        return "[green]set[/]" if value else "[yellow]missing[/]"

    table = Table(title="Research Guard Status")
    table.add_column("Setting")
    table.add_column("Value")
    table.add_row("Ledger backend", settings.ledger.backend.value)
    if settings.ledger.backend == LedgerBackend.HTTP:
        table.add_row("Ledger URL", settings.ledger.base_url)
        table.add_row("Ledger API key", configured(settings.ledger.api_key))
    else:
        table.add_row("Ledger database", settings.ledger.db_path)
    table.add_row("Webhook secret", configured(settings.ledger.webhook_secret))
    table.add_row("Default credit limit", str(settings.ledger.default_credit_limit))
    table.add_row("Search endpoint", settings.search.endpoint or "[yellow]missing[/]")
    table.add_row("Search index", settings.search.index_name)
    table.add_row("Model", settings.llm.model)
    console.print(table)


@app.command()
def usage(ctx: typer.Context, user_id: str = typer.Argument(..., help="User to summarize")):
    """Show a user's credit usage summary."""
    settings = _settings(ctx)
    summary = build_ledger_client(settings.ledger).get_user_usage(user_id)

    table = Table(title=f"Usage for {user_id}")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Credits used", str(summary.total_credits_used))
    table.add_row("Credit limit", str(summary.credit_limit))
    table.add_row("Remaining", str(summary.remaining_credits))
    table.add_row("Reports generated", str(summary.total_reports))
    table.add_row("Sources processed", str(summary.total_sources))
    table.add_row(
        "Last activity",
        summary.last_activity.isoformat() if summary.last_activity else "never",
    )
    console.print(table)


@app.command()
def analytics(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User to analyze"),
    days: int = typer.Option(7, "--days", "-d", help="Number of days to include"),
):
    """Show daily usage per event type from the local usage ledger."""
    settings = _settings(ctx)
    if settings.ledger.backend != LedgerBackend.LOCAL:
        console.print("[red]Error:[/] analytics requires the local ledger backend")
        sys.exit(EXIT_CODE_FAIL)

    try:
        rows = UsageRepository(settings.ledger.db_path).usage_analytics(user_id, days=days)
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            console.print("\n[bold yellow]No usage data found[/]")
            console.print("Run `research-guard init` to initialize the database\n")
            sys.exit(EXIT_CODE_PASS)
        raise

    if not rows:
        console.print(f"\n[dim]No usage recorded for {user_id} in the last {days} days.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Usage analytics for {user_id} ({days} days)")
    table.add_column("Date")
    table.add_column("Event type")
    table.add_column("Count", justify="right")
    table.add_column("Credits", justify="right")
    table.add_column("Avg time (ms)", justify="right")
    for row in rows:
        avg = row["avgProcessingTime"]
        table.add_row(
            row["date"],
            row["eventType"],
            str(row["count"]),
            str(row["creditsUsed"]),
            f"{avg:,.0f}" if avg is not None else "-",
        )
    console.print(table)


@app.command("verify-webhook")
def verify_webhook(
    ctx: typer.Context,
    payload_file: Path = typer.Argument(..., help="File holding the raw webhook body"),
    signature: str = typer.Argument(..., help="Value of the X-Signature header"),
):
    """Check a webhook signature against FLEXPRICE_WEBHOOK_SECRET."""
    settings = _settings(ctx)
    try:
        raw_payload = payload_file.read_bytes()
    except OSError as e:
        console.print(f"[red]Error reading payload:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if WebhookVerifier(settings.ledger.webhook_secret).verify(raw_payload, signature):
        console.print("[green]✓[/] Signature valid")
        sys.exit(EXIT_CODE_PASS)
    console.print("[red]✗[/] Signature invalid")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def serve(
    ctx: typer.Context,
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind"),
    port: int = typer.Option(8000, "--port", "-p", help="Port to listen on"),
    log_level: str = typer.Option("info", "--log-level", help="Logging level"),
):
    """Run the HTTP API."""
    import uvicorn

    from research_guard.server.app import create_app

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(create_app(_settings(ctx)), host=host, port=port, log_level=log_level.lower())


@app.command()
def chat(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User asking the question"),
    message: str = typer.Argument(..., help="Question to ask"),
):
    """Run one chat turn and stream the answer to the terminal."""
    from research_guard.sdk.openai_client import OpenAIChatModel
    from research_guard.server.app import build_orchestrator, build_search_client

    settings = _settings(ctx)
    orchestrator = build_orchestrator(
        settings,
        build_ledger_client(settings.ledger),
        build_search_client(settings),
        OpenAIChatModel(settings.llm),
    )

    exit_code = EXIT_CODE_PASS
    context = RequestContext(user_id=user_id)
    for event in orchestrator.stream_turn(context, [{"role": "user", "content": message}]):
        kind = event["type"]
        if kind == "text-delta":
            console.print(event["delta"], end="", markup=False, highlight=False)
        elif kind == "tool-output":
            call = event["toolCall"]
            console.print(f"\n[dim]{call['type']} → {call['state']}[/]")
        elif kind == "error":
            console.print(f"\n[red]{event['code']}:[/] {event['message']}")
            exit_code = EXIT_CODE_FAIL
        elif kind == "abort":
            console.print("\n[yellow]Aborted[/]")
    console.print()
    sys.exit(exit_code)


if __name__ == "__main__":
    app()
