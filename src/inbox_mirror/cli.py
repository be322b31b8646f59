"""CLI entry point for Inbox Mirror."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

import click
from rich.logging import RichHandler

from . import constants
from .auth import check_auth, get_gmail_client
from .cleanup import ACTION_ARCHIVE, ACTION_DELETE, archive_sender, delete_sender, resolve_sender
from .display import (
    confirm_cleanup,
    console,
    create_progress,
    display_accounts,
    display_cleanup_result,
    display_senders,
    display_sync_history,
    display_sync_result,
)
from .errors import MirrorError
from .export import export_senders
from .models import Account, ConnectionStatus, SyncStatus
from .reconciler import Reconciler
from .store import MirrorStore


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=verbose)],
        force=True,
    )
    # discovery and oauth clients are chatty at DEBUG
    logging.getLogger("googleapiclient").setLevel(logging.WARNING)


@contextmanager
def _user_errors() -> Iterator[None]:
    try:
        yield
    except (MirrorError, FileNotFoundError, ValueError) as e:
        raise click.ClickException(str(e)) from e


def _provider_for(account: Account):
    return get_gmail_client(account.address)


@click.group()
@click.version_option(version="0.1.0", prog_name="inbox-mirror")
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging.")
def cli(verbose: bool) -> None:
    """Inbox Mirror - keep a local mirror of your mailboxes and clean them up by sender."""
    _setup_logging(verbose)


@cli.group()
def accounts() -> None:
    """Manage connected mailboxes."""


@accounts.command(name="add")
@click.argument("address")
@click.option(
    "--plan",
    type=click.Choice(list(constants.PLAN_LIMITS)),
    default="free",
    help="Plan tier that limits how often and how much the account syncs.",
)
@click.option("--user", "user_id", default="", help="Owning user id.")
def accounts_add(address: str, plan: str, user_id: str) -> None:
    """Register a mailbox (run 'auth' afterwards to connect it)."""
    with _user_errors(), MirrorStore() as store:
        account = store.add_account(address, user_id=user_id, plan=plan)
    console.print(f"[green]Added {account.address} on the {account.plan} plan.[/green]")


@accounts.command(name="list")
def accounts_list() -> None:
    """List registered mailboxes."""
    with MirrorStore() as store:
        rows = store.list_accounts()
    if not rows:
        console.print("[dim]No accounts yet. Add one with 'accounts add'.[/dim]")
        return
    display_accounts(rows)


@accounts.command(name="remove")
@click.argument("address")
@click.confirmation_option(prompt="Remove this account and everything mirrored for it?")
def accounts_remove(address: str) -> None:
    """Disconnect a mailbox and delete its mirror."""
    with _user_errors(), MirrorStore() as store:
        account = store.get_account_by_address(address)
        store.delete_account(account.id)
    console.print(f"[green]Removed {account.address}.[/green]")


@cli.command()
@click.argument("address")
def auth(address: str) -> None:
    """Connect or re-authenticate a mailbox."""
    with _user_errors(), MirrorStore() as store:
        account = store.get_account_by_address(address)
        remote_address = check_auth(account.address)
        store.set_account_status(account.id, ConnectionStatus.CONNECTED)
    console.print(f"[green]Authenticated as {remote_address or account.address}.[/green]")


@cli.command()
@click.argument("address")
@click.option("--full", is_flag=True, help="Rebuild the mirror with a full scan.")
def sync(address: str, full: bool) -> None:
    """Bring the mirror of a mailbox up to date."""
    with _user_errors(), MirrorStore() as store:
        account = store.get_account_by_address(address)
        reconciler = Reconciler(store, _provider_for)
        with create_progress("Syncing") as progress:
            task = progress.add_task("sync", total=None)

            def on_progress(current: int, total: int) -> None:
                progress.update(task, completed=current, total=total)

            result = reconciler.sync(account.id, force_full=full, progress=on_progress)

    display_sync_result(account.address, result)
    if result.status is SyncStatus.FAILED:
        raise SystemExit(1)


@cli.command()
@click.argument("address")
@click.option("-n", "--limit", default=constants.SENDERS_TABLE_LIMIT, type=int, help="Rows to show.")
def senders(address: str, limit: int) -> None:
    """Show the biggest senders in a mailbox."""
    with _user_errors(), MirrorStore() as store:
        account = store.get_account_by_address(address)
        rows = store.list_senders(account.id, limit=limit)
        total = store.total_messages(account.id)

    if not rows:
        console.print("[yellow]Nothing mirrored yet. Run 'sync' first.[/yellow]")
        return
    display_senders(account.address, rows, total)


@cli.command()
@click.argument("address")
def history(address: str) -> None:
    """Show past sync runs of a mailbox."""
    with _user_errors(), MirrorStore() as store:
        account = store.get_account_by_address(address)
        runs = store.list_sync_runs(account.id)

    if not runs:
        console.print("[yellow]No syncs recorded yet.[/yellow]")
        return
    display_sync_history(account.address, runs)


@cli.group()
def clean() -> None:
    """Trash or archive everything from one sender."""


def _clean(action: str, address: str, sender: str, name: str | None, execute: bool) -> None:
    with _user_errors(), MirrorStore() as store:
        account = store.get_account_by_address(address)
        key = resolve_sender(store, account.id, sender, name)
        count = len(store.remote_ids_for_sender(account.id, key))

        if not execute:
            console.print(
                f"\n[yellow][DRY RUN] {count} messages from {key.name} <{key.address}> would be "
                f"{'trashed' if action == ACTION_DELETE else 'archived'}. "
                "Use --execute to apply.[/yellow]"
            )
            return

        if not confirm_cleanup(action, key, count):
            console.print("[dim]Cancelled.[/dim]")
            return

        provider = get_gmail_client(account.address)
        run = delete_sender if action == ACTION_DELETE else archive_sender
        result = run(store, provider, account.id, key)

    display_cleanup_result(result)


@clean.command(name="delete")
@click.argument("address")
@click.argument("sender")
@click.option("--name", default=None, help="Sender display name, when the address uses several.")
@click.option("--execute", is_flag=True, help="Actually trash messages (default is dry-run).")
def clean_delete(address: str, sender: str, name: str | None, execute: bool) -> None:
    """Move every message from SENDER to trash."""
    _clean(ACTION_DELETE, address, sender, name, execute)


@clean.command(name="archive")
@click.argument("address")
@click.argument("sender")
@click.option("--name", default=None, help="Sender display name, when the address uses several.")
@click.option("--execute", is_flag=True, help="Actually archive messages (default is dry-run).")
def clean_archive(address: str, sender: str, name: str | None, execute: bool) -> None:
    """Remove every message from SENDER from the inbox."""
    _clean(ACTION_ARCHIVE, address, sender, name, execute)


@cli.command(name="export")
@click.argument("address")
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["csv", "json"]),
    default="csv",
    help="Output format.",
)
@click.option("-o", "--output", required=True, help="Output file path.")
def export_cmd(address: str, fmt: str, output: str) -> None:
    """Export sender statistics to CSV or JSON."""
    with _user_errors(), MirrorStore() as store:
        account = store.get_account_by_address(address)
        rows = store.list_senders(account.id)

    if not rows:
        raise click.ClickException("Nothing mirrored yet. Run 'sync' first.")

    count = export_senders(rows, format=fmt, output_path=output)
    console.print(f"Saved {count} senders to {output}")


@cli.group(name="db")
def db_group() -> None:
    """Manage the local mirror database."""


@db_group.command(name="info")
def db_info() -> None:
    """Show database statistics."""
    with MirrorStore() as store:
        info = store.get_info()

    if info["account_count"] == 0:
        console.print("[dim]Mirror is empty.[/dim]")
        return

    console.print(f"[bold]Database size:[/bold] {info['db_file_size'] / 1024:.1f} KB")
    console.print(f"[bold]Last sync:[/bold] {info['last_sync_date'] or 'never'}")
    console.print(f"[bold]Accounts:[/bold] {info['account_count']}")
    console.print(f"[bold]Senders:[/bold] {info['sender_count']}")
    console.print(f"[bold]Messages:[/bold] {info['message_count']}")


@db_group.command(name="clear")
@click.confirmation_option(prompt="Delete every account and mirrored message?")
def db_clear() -> None:
    """Clear the mirror database."""
    with MirrorStore() as store:
        store.clear()
    console.print("[green]Mirror cleared.[/green]")
