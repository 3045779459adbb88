"""Command line entry points for mailsync."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
from pathlib import Path
from typing import Iterator, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from mailsync.configuration import DEFAULT_CONFIG_PATH, bootstrap_settings
from mailsync.errors import MailSyncError
from mailsync.orchestrator.models import JobKind
from mailsync.services import MailSyncServices, build_services

console = Console()

cli = typer.Typer(help="Multi-account IMAP sync and threading engine")
accounts_app = typer.Typer(help="Manage connected mailboxes")
sync_app = typer.Typer(help="Trigger and inspect syncs")
worker_app = typer.Typer(help="Run sync workers")
threads_app = typer.Typer(help="Conversation maintenance")
attachments_app = typer.Typer(help="Attachment downloads")

cli.add_typer(accounts_app, name="accounts")
cli.add_typer(sync_app, name="sync")
cli.add_typer(worker_app, name="worker")
cli.add_typer(threads_app, name="threads")
cli.add_typer(attachments_app, name="attachments")

_state = {"config": DEFAULT_CONFIG_PATH}


@cli.callback()
def main(
    config: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to config.json"),
    log_level: str = typer.Option("WARNING", "--log-level", help="DEBUG, INFO, WARNING or ERROR"),
) -> None:
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        raise typer.BadParameter(f"Unknown log level: {log_level}")
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    _state["config"] = config


@contextlib.contextmanager
def _services() -> Iterator[MailSyncServices]:
    try:
        settings = bootstrap_settings(path=Path(_state["config"]).expanduser())
        services = build_services(settings)
    except MailSyncError as exc:
        _fail(exc)
    try:
        yield services
    except MailSyncError as exc:
        _fail(exc)
    finally:
        services.close()


def _fail(exc: MailSyncError) -> None:
    console.print(f"[red]{escape(exc.user_message)}[/red]")
    suggestion = exc.recovery_suggestion
    if suggestion:
        console.print(f"[dim]{escape(suggestion)}[/dim]")
    raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# accounts
# ---------------------------------------------------------------------------


@accounts_app.command("add")
def accounts_add(
    owner: str = typer.Option(..., "--owner", help="CRM user owning the mailbox"),
    email: str = typer.Option(..., "--email", help="Mailbox address"),
    host: str = typer.Option(..., "--host", help="IMAP host"),
    port: int = typer.Option(993, "--port", help="IMAP port (TLS)"),
    username: Optional[str] = typer.Option(None, "--username", help="Login name, defaults to the address"),
    display_name: Optional[str] = typer.Option(None, "--display-name"),
    default: bool = typer.Option(False, "--default", help="Make this the owner's default account"),
    password: str = typer.Option(..., prompt=True, hide_input=True, help="Password or app password"),
) -> None:
    """Connect a mailbox."""
    with _services() as services:
        try:
            account = services.accounts.create(
                owner_id=owner,
                email_address=email,
                password=password,
                imap_host=host,
                imap_port=port,
                imap_username=username,
                display_name=display_name,
                is_default=default,
            )
        except ValueError as exc:
            console.print(f"[red]{escape(str(exc))}[/red]")
            raise typer.Exit(code=1)
    console.print(f"[green]Added account[/green] {account.email_address} ({account.id})")


@accounts_app.command("list")
def accounts_list(
    owner: Optional[str] = typer.Option(None, "--owner", help="Only this owner's accounts"),
) -> None:
    """List connected mailboxes."""
    with _services() as services:
        accounts = services.accounts.list(owner)

    if not accounts:
        console.print("[yellow]No accounts configured[/yellow]")
        return

    table = Table(title=f"Accounts ({len(accounts)} total)")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Owner", style="blue")
    table.add_column("Address", style="green")
    table.add_column("Host")
    table.add_column("Status", style="yellow")
    table.add_column("Default", justify="center")
    table.add_column("Sync", justify="center")
    for account in accounts:
        table.add_row(
            account.id[:12],
            account.owner_id,
            account.email_address,
            f"{account.imap_host}:{account.imap_port}",
            account.status.value,
            "yes" if account.is_default else "",
            "on" if account.sync_enabled else "off",
        )
    console.print(table)


@accounts_app.command("update")
def accounts_update(
    account_id: str = typer.Argument(..., help="Account ID"),
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    username: Optional[str] = typer.Option(None, "--username"),
    sync: Optional[bool] = typer.Option(None, "--sync/--no-sync", help="Enable or pause periodic sync"),
    active: Optional[bool] = typer.Option(None, "--active/--inactive"),
    make_default: bool = typer.Option(False, "--default", help="Make this the owner's default account"),
    password: bool = typer.Option(False, "--password", help="Prompt for a new password"),
) -> None:
    """Edit an account; a blank password keeps the stored one."""
    changes = {
        key: value
        for key, value in {
            "imap_host": host,
            "imap_port": port,
            "imap_username": username,
            "sync_enabled": sync,
            "is_active": active,
        }.items()
        if value is not None
    }
    new_password = None
    if password:
        new_password = typer.prompt("New password", hide_input=True, default="", show_default=False) or None

    with _services() as services:
        try:
            account = services.accounts.update(account_id, password=new_password, **changes)
        except ValueError as exc:
            console.print(f"[red]{escape(str(exc))}[/red]")
            raise typer.Exit(code=1)
        if make_default:
            account = services.accounts.set_default(account_id)
    console.print(f"[green]Updated[/green] {account.email_address} (status: {account.status.value})")


# ---------------------------------------------------------------------------
# sync
# ---------------------------------------------------------------------------


@sync_app.command("trigger")
def sync_trigger(
    account_id: str = typer.Argument(..., help="Account ID"),
    full: bool = typer.Option(False, "--full", help="Resync the most recent messages of every folder"),
) -> None:
    """Queue a sync; a running worker picks it up."""
    kind = JobKind.FULL if full else JobKind.INCREMENTAL
    with _services() as services:
        ack = services.scheduler.trigger(account_id, kind, immediate=True)
    if ack.deduplicated:
        console.print(f"[yellow]Sync already {ack.status.value}[/yellow] (job {ack.job_id[:12]}, {ack.kind.value})")
    else:
        console.print(f"[green]Queued {ack.kind.value} sync[/green] (job {ack.job_id[:12]})")


@sync_app.command("status")
def sync_status(
    account_id: Optional[str] = typer.Argument(None, help="Account ID; all accounts when omitted"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
) -> None:
    """Show sync status, counts and folder cursors."""
    with _services() as services:
        if account_id:
            reports = [services.status.get_status(account_id)]
            queue_stats = None
        else:
            overview = services.status.overview()
            reports = overview["accounts"]
            queue_stats = overview["queue"]

    if as_json:
        console.print_json(json.dumps({"accounts": reports, "queue": queue_stats}))
        return

    for report in reports:
        colour = {"idle": "green", "syncing": "cyan", "error": "red"}[report["status"]]
        console.print(
            f"[bold]{report['email_address']}[/bold] [{colour}]{report['status']}[/{colour}] "
            f"last sync: {report['last_sync_at'] or 'never'} "
            f"({report['counts']['total']} messages, {report['counts']['unread']} unread)"
        )
        if report["error"]:
            console.print(f"  [red]{escape(report['error'])}[/red]")
        if report["folders"]:
            table = Table()
            table.add_column("Folder", style="cyan")
            table.add_column("Status", style="yellow")
            table.add_column("Messages", justify="right")
            table.add_column("Last sync")
            table.add_column("Error", style="red")
            for folder in report["folders"]:
                table.add_row(
                    folder["folder"],
                    folder["status"],
                    str(folder["message_count"]),
                    folder["last_sync_at"] or "-",
                    folder["error"] or "",
                )
            console.print(table)
    if queue_stats:
        console.print("Queue: " + ", ".join(f"{status}={count}" for status, count in queue_stats.items()))


@sync_app.command("jobs")
def sync_jobs(
    account_id: str = typer.Argument(..., help="Account ID"),
    limit: int = typer.Option(20, "--limit", "-n"),
) -> None:
    """Show recent sync jobs of an account."""
    with _services() as services:
        jobs = services.queue.list_for_account(account_id, limit=limit)

    if not jobs:
        console.print("[yellow]No jobs found[/yellow]")
        return

    table = Table(title=f"Sync Jobs ({len(jobs)} shown)")
    table.add_column("Job ID", style="cyan", no_wrap=True)
    table.add_column("Kind", style="green")
    table.add_column("Status", style="yellow")
    table.add_column("Trigger")
    table.add_column("Attempt", justify="right")
    table.add_column("Processed", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Created", style="magenta")
    table.add_column("Error", style="red")
    for job in jobs:
        table.add_row(
            job.id[:12],
            job.kind.value,
            job.status.value,
            job.trigger.value,
            f"{job.attempt}/{job.max_attempts}",
            str(job.processed),
            str(job.skipped),
            job.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            (job.error or "")[:60],
        )
    console.print(table)


# ---------------------------------------------------------------------------
# worker
# ---------------------------------------------------------------------------


@worker_app.command("run")
def worker_run(
    workers: Optional[int] = typer.Option(None, "--workers", "-w", help="Override the worker count"),
    once: bool = typer.Option(False, "--once", help="Run due jobs one at a time until none is left"),
) -> None:
    """Run the scheduler and worker pool until interrupted."""
    with _services() as services:
        if workers:
            services.settings.sync.worker_count = workers
        if once:
            count = asyncio.run(_drain(services))
            console.print(f"Ran {count} job(s)")
        else:
            asyncio.run(_serve(services))


async def _drain(services: MailSyncServices) -> int:
    count = 0
    services.scheduler.enqueue_due()
    while await services.scheduler.run_once("cli-once") is not None:
        count += 1
    return count


async def _serve(services: MailSyncServices) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    services.scheduler.start()
    console.print(f"[green]Sync worker running[/green] ({services.settings.sync.worker_count} workers)")
    try:
        await stop.wait()
    finally:
        await services.scheduler.shutdown()


# ---------------------------------------------------------------------------
# threads / attachments
# ---------------------------------------------------------------------------


@threads_app.command("reconcile")
def threads_reconcile(account_id: str = typer.Argument(..., help="Account ID")) -> None:
    """Merge threads that are still linked by reply references."""
    with _services() as services:
        services.accounts.get(account_id)
        merges = services.threads.reconcile(account_id)
    console.print(f"Merged {len(merges)} thread(s)")


@attachments_app.command("fetch")
def attachments_fetch(
    attachment_id: int = typer.Argument(..., help="Attachment ID"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the bytes to this file"),
) -> None:
    """Download a deferred attachment and optionally save it."""
    with _services() as services:
        attachment = services.engine.fetch_attachment(attachment_id)
        if output is not None:
            output.write_bytes(services.attachments.read(attachment_id))
        link = services.attachments.signed_reference(attachment_id)
    console.print(f"[green]{attachment.filename}[/green] {attachment.size} bytes, status {attachment.status.value}")
    console.print(f"Download reference: {link}")


@attachments_app.command("retry")
def attachments_retry(account_id: str = typer.Argument(..., help="Account ID")) -> None:
    """Retry attachments that failed to store during sync."""
    with _services() as services:
        recovered = services.engine.retry_failed_attachments(account_id)
    console.print(f"Recovered {recovered} attachment(s)")


__all__ = ["cli"]
