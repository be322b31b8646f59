"""Data models for Inbox Mirror."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import NamedTuple


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    EXPIRED = "expired"
    DISCONNECTED = "disconnected"


class SyncMode(str, Enum):
    INCREMENTAL = "incremental"
    FULL = "full"
    ORPHAN_CHECK = "bootstrap_orphan_check"


class SyncStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"


class SenderKey(NamedTuple):
    """Composite aggregation key within one account."""

    address: str
    name: str


@dataclass
class Account:
    """One connected mailbox."""

    id: int
    user_id: str
    address: str
    plan: str = "free"
    status: ConnectionStatus = ConnectionStatus.CONNECTED
    last_synced_at: datetime | None = None
    history_cursor: str | None = None  # opaque, never parsed
    total_messages: int = 0
    orphan_check_done: bool = False
    sync_progress_current: int | None = None
    sync_progress_total: int | None = None


@dataclass
class RawMessage:
    """Message metadata as returned by the provider."""

    remote_id: str
    thread_id: str = ""
    labels: list[str] = field(default_factory=list)
    snippet: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    internal_date: int | None = None  # epoch milliseconds

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


@dataclass(frozen=True)
class NormalizedMessage:
    """A classified message ready to be mirrored."""

    remote_id: str
    sender_address: str
    sender_name: str
    subject: str
    received_at: datetime
    snippet: str = ""
    unread: bool = False
    thread_id: str = ""
    labels: tuple[str, ...] = ()
    unsubscribe_link: str | None = None
    one_click: bool = False
    newsletter: bool = False
    promotional: bool = False

    @property
    def key(self) -> SenderKey:
        return SenderKey(self.sender_address, self.sender_name)


@dataclass
class SenderAggregate:
    """Derived statistics for one (account, address, name) key."""

    account_id: int
    sender_address: str
    sender_name: str
    count: int
    unread_count: int = 0
    first_at: datetime | None = None
    last_at: datetime | None = None
    unsubscribe_link: str | None = None
    one_click: bool = False
    newsletter: bool = False
    promotional: bool = False

    @property
    def key(self) -> SenderKey:
        return SenderKey(self.sender_address, self.sender_name)


@dataclass
class HistoryChanges:
    """Changes reported by the provider's change feed since a cursor."""

    added: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    new_cursor: str | None = None
    expired: bool = False

    @property
    def empty(self) -> bool:
        return not self.added and not self.deleted


@dataclass
class MetadataBatch:
    """Result of a batch metadata fetch; every requested id lands in exactly one list."""

    messages: list[RawMessage] = field(default_factory=list)
    missing_ids: list[str] = field(default_factory=list)  # gone remotely (404)
    failed_ids: list[str] = field(default_factory=list)  # errors that survived retries

    def extend(self, other: MetadataBatch) -> None:
        self.messages.extend(other.messages)
        self.missing_ids.extend(other.missing_ids)
        self.failed_ids.extend(other.failed_ids)


@dataclass
class Profile:
    address: str
    cursor: str | None
    messages_total: int = 0


@dataclass
class CleanupResult:
    """Outcome of a delete/archive action for one sender key."""

    action: str
    key: SenderKey
    requested: int = 0
    affected: int = 0
    failed_ids: list[str] = field(default_factory=list)
    remaining: int = 0  # aggregate count after the action


@dataclass(frozen=True)
class SyncResult:
    """Structured summary of one sync run."""

    mode: SyncMode
    status: SyncStatus = SyncStatus.OK
    added: int = 0
    deleted: int = 0
    skipped: int = 0  # malformed messages
    excluded: int = 0  # spam/trash/self-sent
    failed: int = 0  # fetch or store failures
    total_messages: int = 0
    cursor_expired: bool = False
    suspect: bool = False  # full scan returned nothing; mirror left untouched
    complete: bool = True
    error: str | None = None

    def __add__(self, other: SyncResult) -> SyncResult:
        return replace(
            self,
            added=self.added + other.added,
            deleted=self.deleted + other.deleted,
            skipped=self.skipped + other.skipped,
            excluded=self.excluded + other.excluded,
            failed=self.failed + other.failed,
            suspect=self.suspect or other.suspect,
            complete=self.complete and other.complete,
        )
