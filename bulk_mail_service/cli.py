"""Command-line interface for the bulk mail service.

Inspect and operate on the delivery store without going through the HTTP API.

Usage:
    bulk-mail serve --port 8000
    bulk-mail history
    bulk-mail scheduled --json
    bulk-mail deliveries 12
    bulk-mail stats
    bulk-mail cancel 4
    bulk-mail promote

Every command accepts ``--config`` (INI path) and ``--db`` (database path)
on the group; ``BMS_*`` environment variables apply as for the server.
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.table import Table

from .config import load_settings
from .errors import BulkMailError
from .logger import configure_logging
from .persistence import Persistence
from .reporting import DeliveryReporting

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _format_ts(ts: Optional[int]) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts, timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _settings(ctx: click.Context) -> Dict[str, Any]:
    return ctx.obj["settings"]


def _reporting(ctx: click.Context) -> DeliveryReporting:
    return DeliveryReporting(Persistence(_settings(ctx)["db_path"]))


async def _with_schema(reporting: DeliveryReporting, coro_factory):
    await reporting.persistence.init_db()
    return await coro_factory()


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Path to config.ini (default: $BMS_CONFIG or ./config.ini).")
@click.option("--db", "db_path", default=None, help="Override the SQLite database path.")
@click.version_option(package_name="bulk-mail-service")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], db_path: Optional[str]) -> None:
    """bulk-mail: send, schedule and track bulk emails."""
    settings = load_settings(config_path)
    if db_path:
        settings["db_path"] = db_path
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default from config).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default from config).")
@click.option("--log-level", default=None, help="Logging level (default: $BMS_LOG_LEVEL or INFO).")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int], log_level: Optional[str]) -> None:
    """Run the HTTP API and the scheduler."""
    import uvicorn

    from .server import create_server_app

    configure_logging(log_level)
    settings = _settings(ctx)
    app = create_server_app(settings)
    uvicorn.run(app, host=host or str(settings["http_host"]), port=port or int(settings["http_port"]))


@main.command("history")
@click.option("--limit", "-n", type=int, default=None, help="Show only the newest N logs.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def history(ctx: click.Context, limit: Optional[int], as_json: bool) -> None:
    """List email logs, newest first."""
    reporting = _reporting(ctx)
    logs = run_async(_with_schema(reporting, reporting.history))
    if limit is not None:
        logs = logs[:limit]

    if as_json:
        print_json(logs)
        return
    if not logs:
        console.print("[dim]No emails sent yet.[/dim]")
        return

    table = Table(title="Email History")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Subject")
    table.add_column("Recipients", justify="right")
    table.add_column("Sent at")
    for log in logs:
        table.add_row(str(log["id"]), log["subject"], str(len(log["recipients"])), _format_ts(log.get("sent_ts")))
    console.print(table)


@main.command("scheduled")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def scheduled(ctx: click.Context, as_json: bool) -> None:
    """List jobs waiting to be sent."""
    reporting = _reporting(ctx)
    jobs = run_async(_with_schema(reporting, reporting.scheduled))

    if as_json:
        print_json(jobs)
        return
    if not jobs:
        console.print("[dim]No scheduled emails.[/dim]")
        return

    table = Table(title="Scheduled Emails")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Subject")
    table.add_column("Recipients", justify="right")
    table.add_column("Attachments")
    table.add_column("Scheduled for")
    for job in jobs:
        table.add_row(
            str(job["id"]),
            job["subject"],
            str(len(job["recipients"])),
            ", ".join(job["attachments"]) or "-",
            _format_ts(job["scheduled_ts"]),
        )
    console.print(table)


@main.command("deliveries")
@click.argument("log_id", type=int)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def deliveries(ctx: click.Context, log_id: int, as_json: bool) -> None:
    """Show per-recipient delivery records of one email log."""
    reporting = _reporting(ctx)
    records = run_async(_with_schema(reporting, lambda: reporting.delivery_detail(log_id)))

    if as_json:
        print_json(records)
        return
    if not records:
        print_error(f"No delivery records for email log {log_id}")
        sys.exit(1)

    status_style = {"pending": "yellow", "sent": "blue", "delivered": "green", "failed": "red"}
    table = Table(title=f"Deliveries for log {log_id}: {records[0].get('subject') or ''}")
    table.add_column("Record", style="cyan", justify="right")
    table.add_column("Recipient")
    table.add_column("Status")
    table.add_column("Sent at")
    table.add_column("Opened at")
    table.add_column("Error")
    for rec in records:
        style = status_style.get(rec["status"], "white")
        table.add_row(
            str(rec["id"]),
            rec["recipient"],
            f"[{style}]{rec['status']}[/{style}]",
            _format_ts(rec.get("sent_ts")),
            _format_ts(rec.get("delivered_ts")),
            rec.get("error") or "",
        )
    console.print(table)


@main.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def stats(ctx: click.Context, as_json: bool) -> None:
    """Show delivery record counts by status."""
    reporting = _reporting(ctx)
    counts = run_async(_with_schema(reporting, reporting.stats))
    data = {"stats": counts, "total": sum(counts.values())}

    if as_json:
        print_json(data)
        return

    console.print("\n[bold]Delivery stats[/bold]\n")
    for name, value in counts.items():
        console.print(f"  {name.capitalize() + ':':<11} {value}")
    console.print(f"  {'Total:':<11} {data['total']}")
    console.print()


@main.command("cancel")
@click.argument("job_id", type=int)
@click.pass_context
def cancel(ctx: click.Context, job_id: int) -> None:
    """Cancel a scheduled email that has not been sent yet."""
    from .server import build_service

    core = build_service(_settings(ctx))

    async def _cancel():
        await core.init()
        return await core.cancel(job_id)

    try:
        result = run_async(_cancel())
    except BulkMailError as exc:
        print_error(str(exc))
        sys.exit(1)

    if result["cancelled"]:
        print_success(f"Scheduled email {job_id} cancelled")
    else:
        console.print(f"[yellow]Scheduled email {job_id} not cancelled (status: {result['status']})[/yellow]")


@main.command("promote")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def promote(ctx: click.Context, as_json: bool) -> None:
    """Send every scheduled email that is due, once."""
    from .server import build_service

    core = build_service(_settings(ctx))

    async def _promote():
        await core.init()
        try:
            return await core.promote_due_jobs()
        finally:
            await core.transport.close()

    result = run_async(_promote()).to_dict()
    if as_json:
        print_json(result)
        return

    if not result["promoted"] and not result["failed"]:
        console.print("[dim]No scheduled emails due.[/dim]")
    for item in result["promoted"]:
        print_success(
            f"Job {item['job_id']} -> log {item['log_id']} (sent: {item['sent']}, failed: {item['failed']})"
        )
    for item in result["failed"]:
        print_error(f"Job {item['job_id']} failed: {item['error']}")


if __name__ == "__main__":
    main()
