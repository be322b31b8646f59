"""Shared fixtures for tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from inbox_mirror.models import HistoryChanges, MetadataBatch, Profile, RawMessage
from inbox_mirror.reconciler import Reconciler
from inbox_mirror.store import MirrorStore

ACCOUNT_ADDRESS = "me@example.com"
NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_raw(
    remote_id: str,
    sender: str | None = "Alice Smith <alice@example.com>",
    date: str | None = "Mon, 15 Jan 2024 10:00:00 +0000",
    labels: tuple[str, ...] = ("INBOX",),
    subject: str = "Hello",
    internal_date: int | None = None,
    **extra_headers: str,
) -> RawMessage:
    headers = {"Subject": subject}
    if sender is not None:
        headers["From"] = sender
    if date is not None:
        headers["Date"] = date
    for name, value in extra_headers.items():
        headers[name.replace("_", "-")] = value
    return RawMessage(
        remote_id=remote_id,
        thread_id=f"t-{remote_id}",
        labels=list(labels),
        snippet=f"snippet {remote_id}",
        headers=headers,
        internal_date=internal_date,
    )


class FakeProvider:
    """In-memory mailbox with a numbered change feed."""

    def __init__(self, messages: list[RawMessage] | None = None, address: str = ACCOUNT_ADDRESS) -> None:
        self.address = address
        self.mailbox: dict[str, RawMessage] = {m.remote_id: m for m in messages or []}
        self.cursor = 100
        self.events: list[tuple[int, str, str]] = []
        self.expired = False
        self.listing: list[str] | None = None
        self.failed_ids: set[str] = set()
        self.fail_with: Exception | None = None
        self.calls: list[str] = []

    # --- test helpers ---

    def add(self, raw: RawMessage) -> None:
        self.mailbox[raw.remote_id] = raw
        self._event("added", raw.remote_id)

    def remove(self, remote_id: str) -> None:
        self.mailbox.pop(remote_id, None)
        self._event("deleted", remote_id)

    def add_silently(self, raw: RawMessage) -> None:
        self.mailbox[raw.remote_id] = raw

    def remove_silently(self, remote_id: str) -> None:
        self.mailbox.pop(remote_id, None)

    def _event(self, kind: str, remote_id: str) -> None:
        self.cursor += 1
        self.events.append((self.cursor, kind, remote_id))

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if self.fail_with is not None:
            raise self.fail_with

    # --- ProviderClient ---

    def list_all_ids(self, query=None, limit=None):
        self._call("list_all_ids")
        ids = list(self.mailbox) if self.listing is None else list(self.listing)
        return ids[:limit] if limit else ids

    def list_recent(self, query, max_results):
        self._call("list_recent")
        return list(reversed(list(self.mailbox)))[:max_results]

    def batch_get_metadata(self, ids, headers=None):
        self._call("batch_get_metadata")
        batch = MetadataBatch()
        for remote_id in ids:
            if remote_id in self.failed_ids:
                batch.failed_ids.append(remote_id)
            elif remote_id in self.mailbox:
                batch.messages.append(self.mailbox[remote_id])
            else:
                batch.missing_ids.append(remote_id)
        return batch

    def history_changes(self, cursor):
        self._call("history_changes")
        if self.expired:
            return HistoryChanges(new_cursor=None, expired=True)
        last: dict[str, str] = {}
        for position, kind, remote_id in self.events:
            if position > int(cursor):
                last[remote_id] = kind
        return HistoryChanges(
            added=[i for i, kind in last.items() if kind == "added"],
            deleted=[i for i, kind in last.items() if kind == "deleted"],
            new_cursor=str(self.cursor),
        )

    def profile(self):
        self._call("profile")
        return Profile(address=self.address, cursor=str(self.cursor), messages_total=len(self.mailbox))

    def trash_messages(self, ids):
        self._call("trash_messages")
        done = [i for i in ids if i not in self.failed_ids]
        for remote_id in done:
            self.mailbox.pop(remote_id, None)
        return done

    def archive_messages(self, ids):
        self._call("archive_messages")
        done = [i for i in ids if i not in self.failed_ids]
        for remote_id in done:
            raw = self.mailbox.get(remote_id)
            if raw is not None and "INBOX" in raw.labels:
                raw.labels.remove("INBOX")
        return done


class Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def store(tmp_path):
    with MirrorStore(db_path=tmp_path / "mirror.db") as s:
        yield s


@pytest.fixture
def account(store):
    return store.add_account(ACCOUNT_ADDRESS, user_id="user-1", plan="unlimited")


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def inbox() -> list[RawMessage]:
    """Three messages from Alice, one from a newsletter."""
    return [
        make_raw("m1", date="Mon, 15 Jan 2024 10:00:00 +0000"),
        make_raw("m2", date="Tue, 16 Jan 2024 10:00:00 +0000", labels=("INBOX", "UNREAD")),
        make_raw("m3", date="Wed, 17 Jan 2024 10:00:00 +0000"),
        make_raw(
            "n1",
            sender="Weekly News <news@letters.example.com>",
            date="Thu, 18 Jan 2024 08:00:00 +0000",
            labels=("INBOX", "CATEGORY_PROMOTIONS"),
            List_Unsubscribe="<mailto:u@letters.example.com>, <https://letters.example.com/u>",
            List_Unsubscribe_Post="List-Unsubscribe=One-Click",
        ),
    ]


@pytest.fixture
def provider(inbox) -> FakeProvider:
    return FakeProvider(inbox)


@pytest.fixture
def reconciler(store, provider, clock) -> Reconciler:
    return Reconciler(store, lambda account: provider, clock=clock, workers=2)

