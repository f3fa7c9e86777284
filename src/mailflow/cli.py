"""Command-line interface for mailflow.

Provides commands for configuration, the queue consumer, the HTTP server and
operator actions on scheduled actions, bulk jobs and digests.

Usage:
    python -m mailflow validate-config
    python -m mailflow init-db
    python -m mailflow worker
    python -m mailflow serve
    python -m mailflow bulk start ACCOUNT_ID --start-date 2026-01-01
    python -m mailflow sweeper status
"""

from __future__ import annotations

import asyncio
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

import click
from rich.console import Console
from rich.table import Table

from mailflow.config import validate_config_file
from mailflow.core.logging import configure_logging

if TYPE_CHECKING:
    from mailflow.services import Services

console = Console()


async def _init_services() -> Services:
    """Load config and build services. Prints an actionable error and exits on failure."""
    from mailflow.config import load_config
    from mailflow.core.errors import ConfigLoadError, ConfigValidationError
    from mailflow.services import build_services

    try:
        config = load_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Copy config/config.yaml.example to config/config.yaml and adjust it."
        )
        sys.exit(1)

    Path(config.database.path).parent.mkdir(parents=True, exist_ok=True)
    return await build_services(config)


def _run(coro) -> None:
    """Run a coroutine with the CLI's error handling."""
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """mailflow - durable scheduled actions, bulk processing and digests."""
    log_level = "DEBUG" if debug else "INFO"
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file."""
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("init-db")
def init_db() -> None:
    """Create the database schema and the queue table."""

    async def _init() -> None:
        services = await _init_services()
        console.print(f"[green]✓[/green] Database ready at [cyan]{services.store.db_path}[/cyan]")

    _run(_init())


@cli.command("serve")
@click.option(
    "--host",
    default="127.0.0.1",
    help="Host to bind to (default: localhost only for security)",
)
@click.option("--port", default=8000, type=int, help="Port to bind to")
def serve(host: str, port: int) -> None:
    """Start the HTTP trigger API with the queue consumer in the same process."""
    import uvicorn

    from mailflow.web.app import create_app

    if host == "0.0.0.0":  # noqa: S104
        console.print(
            "[yellow]Warning:[/yellow] Binding to 0.0.0.0 exposes the server to the network.\n"
            "This API has no authentication. Use 127.0.0.1 for local-only access."
        )

    configure_logging(log_level="INFO", json_output=True)

    app = create_app()
    console.print(f"Starting server on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(app, host=host, port=port, log_level="info")


@cli.command("worker")
@click.option("--once", is_flag=True, help="Run one batch of due jobs and exit")
def worker(once: bool) -> None:
    """Run the queue consumer (and the due-digest trigger) without the HTTP API."""
    _run(_run_worker(once))


async def _run_worker(once: bool) -> None:
    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    from mailflow.jobs.handlers import build_job_registry, enqueue_due_digest_sends
    from mailflow.queue.worker import QueueWorker

    services = await _init_services()
    config = services.config
    queue_worker = QueueWorker(
        services.queue,
        build_job_registry(services),
        claim_batch_size=config.queue.claim_batch_size,
        lease_seconds=config.queue.lease_seconds,
        poll_interval_seconds=config.queue.poll_interval_seconds,
    )

    if once:
        claimed = await queue_worker.run_once()
        console.print(f"Ran [bold]{claimed}[/bold] job(s)")
        return

    configure_logging(log_level=config.logging.level, json_output=config.logging.json_output)

    async def trigger_digests() -> None:
        await enqueue_due_digest_sends(services)

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        trigger_digests,
        "interval",
        minutes=1,
        id="digest_trigger",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    await services.sweeper.kickstart()

    console.print("Queue worker running. Press Ctrl+C to stop.")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, stop_event.set)
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    await queue_worker.run_forever(stop_event)

    scheduler.shutdown(wait=False)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@cli.group("accounts")
def accounts() -> None:
    """Manage connected mailboxes."""


@accounts.command("add")
@click.argument("email")
@click.option("--provider", default="outlook", show_default=True)
@click.option("--assistant-email", default=None, help="Address the assistant sends from")
@click.option(
    "--access-token",
    envvar="MAILFLOW_ACCESS_TOKEN",
    default=None,
    help="Provider access token (or MAILFLOW_ACCESS_TOKEN)",
)
def accounts_add(
    email: str, provider: str, assistant_email: str | None, access_token: str | None
) -> None:
    """Register a mailbox."""

    async def _add() -> None:
        services = await _init_services()
        account = await services.store.create_account(
            email, provider, assistant_email=assistant_email, access_token=access_token
        )
        console.print(f"[green]✓[/green] Account [cyan]{account.id}[/cyan] ({email})")

    _run(_add())


@accounts.command("list")
def accounts_list() -> None:
    """List registered mailboxes."""

    async def _list() -> None:
        services = await _init_services()
        table = Table(title="Accounts")
        table.add_column("ID")
        table.add_column("Email")
        table.add_column("Provider")
        table.add_column("Token")
        for account in await services.store.list_accounts():
            table.add_row(
                account.id,
                account.email,
                account.provider,
                "yes" if account.access_token else "[red]missing[/red]",
            )
        console.print(table)

    _run(_list())


# ---------------------------------------------------------------------------
# Recovery sweeper
# ---------------------------------------------------------------------------


@cli.group("sweeper")
def sweeper() -> None:
    """Operate the scheduled action recovery sweeper."""


@sweeper.command("kickstart")
def sweeper_kickstart() -> None:
    """Queue an immediate sweep; it re-arms itself afterwards."""

    async def _kickstart() -> None:
        services = await _init_services()
        job_id = await services.sweeper.kickstart()
        console.print(f"[green]✓[/green] Sweep queued as job [cyan]{job_id}[/cyan]")

    _run(_kickstart())


@sweeper.command("status")
def sweeper_status() -> None:
    """Show scheduled actions per status."""

    async def _status() -> None:
        services = await _init_services()
        counts = await services.sweeper.status_counts()
        table = Table(title="Scheduled actions")
        table.add_column("Status")
        table.add_column("Count", justify="right")
        for status, count in counts.items():
            style = "yellow" if status == "overdue" and count else ""
            table.add_row(status, f"[{style}]{count}[/{style}]" if style else str(count))
        console.print(table)

    _run(_status())


# ---------------------------------------------------------------------------
# Bulk processing
# ---------------------------------------------------------------------------


@cli.group("bulk")
def bulk() -> None:
    """Start and inspect bulk mailbox processing jobs."""


@bulk.command("start")
@click.argument("account_id")
@click.option("--start-date", required=True, type=click.DateTime(), help="Oldest mail to scan")
@click.option("--end-date", default=None, type=click.DateTime(), help="Newest mail to scan")
@click.option("--all", "include_read", is_flag=True, help="Include read messages")
@click.option("--force", is_flag=True, help="Reprocess messages that already ran rules")
def bulk_start(
    account_id: str,
    start_date: datetime,
    end_date: datetime | None,
    include_read: bool,
    force: bool,
) -> None:
    """Start a bulk job for an account."""

    async def _start() -> None:
        services = await _init_services()
        job = await services.bulk_jobs.start(
            account_id,
            start_date,
            end_date,
            only_unread=not include_read,
            force_reprocess=force,
        )
        console.print(f"[green]✓[/green] Bulk job [cyan]{job.id}[/cyan] {job.status}")

    _run(_start())


@bulk.command("status")
@click.argument("job_id")
def bulk_status(job_id: str) -> None:
    """Show a bulk job's progress."""

    async def _status() -> None:
        services = await _init_services()
        job = await services.bulk_jobs.get_status(job_id)
        console.print(f"\n[bold]Bulk job {job.id}[/bold]")
        console.print(f"  Status:     {job.status}")
        console.print(f"  Pages:      {job.pages_fetched}")
        console.print(f"  Discovered: {job.total_emails}")
        console.print(f"  Queued:     {job.emails_queued}")
        console.print(f"  Processed:  {job.processed}")
        console.print(f"  Failed:     {job.failed}")
        if job.error:
            console.print(f"  [red]Error:[/red] {job.error}")

    _run(_status())


@bulk.command("cancel")
@click.argument("job_id")
def bulk_cancel(job_id: str) -> None:
    """Cancel a bulk job."""

    async def _cancel() -> None:
        services = await _init_services()
        job = await services.bulk_jobs.cancel(job_id)
        console.print(f"Bulk job [cyan]{job.id}[/cyan] is {job.status}")

    _run(_cancel())


# ---------------------------------------------------------------------------
# Digests
# ---------------------------------------------------------------------------


@cli.group("digest")
def digest() -> None:
    """Send and schedule digests."""


@digest.command("send")
@click.argument("account_id")
@click.option("--force", is_flag=True, help="Run even when nothing is pending")
def digest_send(account_id: str, force: bool) -> None:
    """Send an account's pending digest now."""

    async def _send() -> None:
        services = await _init_services()
        result = await services.digest_sender.send(account_id, force=force)
        console.print(f"[green]✓[/green] {result.reason}")

    _run(_send())


@digest.command("schedule")
@click.argument("account_id")
@click.option("--every", "interval_days", default=1, type=int, show_default=True, help="Days")
@click.option("--at", "time_of_day", default="08:00", show_default=True, help="UTC time HH:MM")
def digest_schedule(account_id: str, interval_days: int, time_of_day: str) -> None:
    """Set when an account's digest is delivered."""
    from mailflow.db.store import DigestSchedule
    from mailflow.engine.schedule import calculate_next_occurrence

    async def _schedule() -> None:
        services = await _init_services()
        next_at = calculate_next_occurrence(
            DigestSchedule(
                id="", account_id=account_id, interval_days=interval_days, time_of_day=time_of_day
            )
        )
        schedule = await services.store.upsert_digest_schedule(
            account_id, interval_days, time_of_day, next_occurrence_at=next_at
        )
        console.print(
            f"[green]✓[/green] Next digest at [cyan]{schedule.next_occurrence_at}[/cyan]"
        )

    _run(_schedule())


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
