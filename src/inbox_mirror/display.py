"""Rich-based display functions for Inbox Mirror."""

from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.prompt import Prompt
from rich.table import Table

from .models import Account, CleanupResult, ConnectionStatus, SenderAggregate, SenderKey, SyncResult, SyncStatus

console = Console()


def _status_color(status: ConnectionStatus) -> str:
    if status is ConnectionStatus.CONNECTED:
        return "green"
    if status is ConnectionStatus.EXPIRED:
        return "red"
    return "dim"


def _flags(agg: SenderAggregate) -> str:
    flags = []
    if agg.newsletter:
        flags.append("newsletter")
    if agg.promotional:
        flags.append("promo")
    if agg.one_click:
        flags.append("1-click")
    return ", ".join(flags)


def display_accounts(accounts: list[Account]) -> None:
    table = Table(title="Accounts")
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Address")
    table.add_column("Plan")
    table.add_column("Status")
    table.add_column("Messages", justify="right")
    table.add_column("Last sync")

    for account in accounts:
        color = _status_color(account.status)
        table.add_row(
            str(account.id),
            account.address,
            account.plan,
            f"[{color}]{account.status.value}[/{color}]",
            str(account.total_messages),
            account.last_synced_at.strftime("%Y-%m-%d %H:%M") if account.last_synced_at else "never",
        )
    console.print(table)


def display_senders(address: str, senders: list[SenderAggregate], total_messages: int) -> None:
    """Display sender aggregates, largest first."""
    table = Table(title=f"Senders for {address}")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Email")
    table.add_column("Name")
    table.add_column("Count", justify="right")
    table.add_column("Unread", justify="right")
    table.add_column("Last received")
    table.add_column("Flags")

    for idx, agg in enumerate(senders, start=1):
        color = "yellow" if agg.newsletter else "white"
        table.add_row(
            str(idx),
            f"[{color}]{agg.sender_address}[/{color}]",
            agg.sender_name if agg.sender_name != agg.sender_address else "",
            str(agg.count),
            str(agg.unread_count),
            agg.last_at.strftime("%Y-%m-%d") if agg.last_at else "",
            _flags(agg),
        )

    console.print(table)
    console.print(
        Panel(
            f"Senders shown: {len(senders)}  |  Total mirrored messages: {total_messages}",
            title="Summary",
        )
    )


def display_sync_history(address: str, runs: list[dict]) -> None:
    table = Table(title=f"Sync history for {address}")
    table.add_column("When")
    table.add_column("Mode")
    table.add_column("Status")
    table.add_column("Added", justify="right")
    table.add_column("Deleted", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Notes")

    for run in runs:
        notes = []
        if not run["complete"]:
            notes.append("partial")
        if run["suspect"]:
            notes.append("suspect")
        if run["cursor_expired"]:
            notes.append("cursor expired")
        if run["error"]:
            notes.append(run["error"])
        color = "red" if run["status"] == SyncStatus.FAILED.value else "green"
        table.add_row(
            run["created_at"].strftime("%Y-%m-%d %H:%M"),
            run["mode"],
            f"[{color}]{run['status']}[/{color}]",
            str(run["added"]),
            str(run["deleted"]),
            str(run["failed"]),
            str(run["total_messages"]),
            ", ".join(notes),
        )
    console.print(table)


def display_sync_result(address: str, result: SyncResult) -> None:
    """Display the summary of one sync run."""
    if result.status is SyncStatus.FAILED:
        console.print(
            Panel(f"[bold red]Sync of {address} failed:[/bold red] {result.error}", title="Sync failed")
        )
        return

    lines = [
        f"[bold]Mode:[/bold] {result.mode.value}",
        f"[bold]Added:[/bold] {result.added}",
        f"[bold]Deleted:[/bold] {result.deleted}",
        f"[bold]Skipped:[/bold] {result.skipped}",
        f"[bold]Excluded:[/bold] {result.excluded}",
        f"[bold]Failed:[/bold] {result.failed}",
        f"[bold]Total messages:[/bold] {result.total_messages}",
    ]
    if result.cursor_expired:
        lines.append("[yellow]History cursor had expired; a full scan was run.[/yellow]")
    if result.suspect:
        lines.append("[yellow]The mailbox listing came back empty; the mirror was left unchanged.[/yellow]")
    if not result.complete:
        lines.append("[yellow]Sync stopped early; run it again to finish.[/yellow]")
    console.print(Panel("\n".join(lines), title=f"Synced {address}"))


def create_progress(description: str) -> Progress:
    """Create a configured Rich Progress bar."""
    return Progress(
        SpinnerColumn(),
        TextColumn(f"[bold blue]{description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
    )


def confirm_cleanup(action: str, key: SenderKey, count: int) -> bool:
    """Prompt the user to confirm a cleanup action by typing its name."""
    word = action.upper()
    console.print(
        Panel(
            f"[bold]{count} messages from {key.name} <{key.address}> will be "
            f"{'trashed' if action == 'delete' else 'archived'}.[/bold]",
            title=f"Confirm {action}",
        )
    )
    answer = Prompt.ask(f'[bold red]Type "{word}" to confirm[/bold red]', console=console)
    return answer == word


def display_cleanup_result(result: CleanupResult) -> None:
    color = "green" if not result.failed_ids else "yellow"
    lines = [
        f"[bold {color}]{result.action.capitalize()}: {result.affected} of {result.requested} "
        f"messages from {result.key.address}.[/bold {color}]",
        f"Remaining mirrored messages from this sender: {result.remaining}",
    ]
    if result.failed_ids:
        lines.append(f"[yellow]{len(result.failed_ids)} messages could not be modified.[/yellow]")
    console.print(Panel("\n".join(lines), title="Done"))
