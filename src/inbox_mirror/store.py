"""SQLite mirror of remote mailboxes: accounts, messages and sender aggregates."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator

from . import constants
from .errors import AccountNotFound, StoreError
from .models import (
    Account,
    ConnectionStatus,
    NormalizedMessage,
    SenderAggregate,
    SenderKey,
    SyncResult,
)

logger = logging.getLogger(__name__)

# SQLite's default limit on bound parameters is 999 on older builds.
_IN_CHUNK = 500

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL DEFAULT '',
    address TEXT NOT NULL UNIQUE,
    plan TEXT NOT NULL DEFAULT 'free',
    status TEXT NOT NULL DEFAULT 'connected',
    last_synced_at TEXT,
    history_cursor TEXT,
    total_messages INTEGER NOT NULL DEFAULT 0,
    orphan_check_done INTEGER NOT NULL DEFAULT 0,
    sync_progress_current INTEGER,
    sync_progress_total INTEGER
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    remote_id TEXT NOT NULL,
    sender_address TEXT NOT NULL,
    sender_name TEXT NOT NULL,
    subject TEXT,
    snippet TEXT,
    received_at TEXT NOT NULL,
    unread INTEGER NOT NULL DEFAULT 0,
    thread_id TEXT,
    labels_json TEXT NOT NULL DEFAULT '[]',
    unsubscribe_link TEXT,
    one_click INTEGER NOT NULL DEFAULT 0,
    newsletter INTEGER NOT NULL DEFAULT 0,
    promotional INTEGER NOT NULL DEFAULT 0,
    UNIQUE (account_id, remote_id)
);

CREATE INDEX IF NOT EXISTS idx_messages_sender
    ON messages(account_id, sender_address, sender_name);

CREATE TABLE IF NOT EXISTS sender_aggregates (
    account_id INTEGER NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    sender_address TEXT NOT NULL,
    sender_name TEXT NOT NULL,
    count INTEGER NOT NULL,
    unread_count INTEGER NOT NULL DEFAULT 0,
    first_at TEXT,
    last_at TEXT,
    unsubscribe_link TEXT,
    one_click INTEGER NOT NULL DEFAULT 0,
    newsletter INTEGER NOT NULL DEFAULT 0,
    promotional INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (account_id, sender_address, sender_name)
);

CREATE TABLE IF NOT EXISTS cleanup_actions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    action TEXT NOT NULL,
    sender_address TEXT NOT NULL,
    sender_name TEXT NOT NULL,
    affected INTEGER NOT NULL DEFAULT 0,
    remote_ids_json TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL,
    error TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    mode TEXT NOT NULL,
    status TEXT NOT NULL,
    added INTEGER NOT NULL DEFAULT 0,
    deleted INTEGER NOT NULL DEFAULT 0,
    skipped INTEGER NOT NULL DEFAULT 0,
    excluded INTEGER NOT NULL DEFAULT 0,
    failed INTEGER NOT NULL DEFAULT 0,
    total_messages INTEGER NOT NULL DEFAULT 0,
    complete INTEGER NOT NULL DEFAULT 1,
    suspect INTEGER NOT NULL DEFAULT 0,
    cursor_expired INTEGER NOT NULL DEFAULT 0,
    error TEXT,
    created_at TEXT NOT NULL
);
"""

_INSERT_MESSAGE_SQL = """
INSERT INTO messages (
    account_id, remote_id, sender_address, sender_name, subject, snippet,
    received_at, unread, thread_id, labels_json, unsubscribe_link,
    one_click, newsletter, promotional
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (account_id, remote_id) DO NOTHING
"""


def to_db_time(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _chunks(items: list, size: int = _IN_CHUNK) -> Iterator[list]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _message_params(account_id: int, msg: NormalizedMessage) -> tuple:
    return (
        account_id,
        msg.remote_id,
        msg.sender_address,
        msg.sender_name,
        msg.subject,
        msg.snippet,
        to_db_time(msg.received_at),
        int(msg.unread),
        msg.thread_id,
        json.dumps(list(msg.labels)),
        msg.unsubscribe_link,
        int(msg.one_click),
        int(msg.newsletter),
        int(msg.promotional),
    )


class MirrorStore:
    """Persistent SQLite mirror.

    One connection is shared by all threads and guarded by a re-entrant lock;
    every write runs in its own transaction.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = Path(db_path or constants.DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._create_tables()

    def _create_tables(self) -> None:
        self._conn.executescript(_CREATE_TABLES_SQL)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock, self._conn:
            yield self._conn

    def _query(self, sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchall()

    # --- accounts ---

    def add_account(self, address: str, user_id: str = "", plan: str = "free") -> Account:
        """Register a mailbox, or update plan/owner of an existing one."""
        if plan not in constants.PLAN_LIMITS:
            raise ValueError(f"Unknown plan {plan!r}; expected one of {', '.join(constants.PLAN_LIMITS)}")
        address = address.strip().lower()
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO accounts (address, user_id, plan) VALUES (?, ?, ?) "
                "ON CONFLICT (address) DO UPDATE SET user_id = excluded.user_id, plan = excluded.plan",
                (address, user_id, plan),
            )
        return self.get_account_by_address(address)

    def get_account(self, account_id: int) -> Account:
        rows = self._query("SELECT * FROM accounts WHERE id = ?", (account_id,))
        if not rows:
            raise AccountNotFound(f"No account with id {account_id}")
        return self._row_to_account(rows[0])

    def get_account_by_address(self, address: str) -> Account:
        rows = self._query("SELECT * FROM accounts WHERE address = ?", (address.strip().lower(),))
        if not rows:
            raise AccountNotFound(f"No account for {address}. Add it with 'accounts add' first.")
        return self._row_to_account(rows[0])

    def list_accounts(self) -> list[Account]:
        return [self._row_to_account(r) for r in self._query("SELECT * FROM accounts ORDER BY address")]

    def delete_account(self, account_id: int) -> None:
        """Disconnect an account; its messages, aggregates and cleanup log go with it."""
        with self._transaction() as conn:
            conn.execute("DELETE FROM accounts WHERE id = ?", (account_id,))

    def set_account_status(self, account_id: int, status: ConnectionStatus) -> None:
        with self._transaction() as conn:
            conn.execute("UPDATE accounts SET status = ? WHERE id = ?", (status.value, account_id))

    def mark_orphan_check_done(self, account_id: int) -> None:
        with self._transaction() as conn:
            conn.execute("UPDATE accounts SET orphan_check_done = 1 WHERE id = ?", (account_id,))

    def commit_sync(
        self,
        account_id: int,
        last_synced_at: datetime | None,
        cursor: str | None,
        total_messages: int,
    ) -> None:
        """Persist the end-of-run account state in one write."""
        with self._transaction() as conn:
            conn.execute(
                "UPDATE accounts SET last_synced_at = ?, history_cursor = ?, total_messages = ?, "
                "status = ? WHERE id = ?",
                (
                    to_db_time(last_synced_at),
                    cursor,
                    total_messages,
                    ConnectionStatus.CONNECTED.value,
                    account_id,
                ),
            )

    def set_sync_progress(self, account_id: int, current: int | None, total: int | None) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE accounts SET sync_progress_current = ?, sync_progress_total = ? WHERE id = ?",
                (current, total, account_id),
            )

    # --- messages ---

    def upsert_message(self, account_id: int, msg: NormalizedMessage) -> bool:
        """Insert a message; True when it was new, False when the remote id already existed."""
        try:
            with self._transaction() as conn:
                cursor = conn.execute(_INSERT_MESSAGE_SQL, _message_params(account_id, msg))
                return cursor.rowcount == 1
        except sqlite3.Error as exc:
            raise StoreError(f"Storing message {msg.remote_id} failed: {exc}") from exc

    def insert_messages(self, account_id: int, messages: list[NormalizedMessage]) -> int:
        """Insert a batch in a single transaction and return how many were new."""
        try:
            with self._transaction() as conn:
                before = conn.total_changes
                conn.executemany(_INSERT_MESSAGE_SQL, [_message_params(account_id, m) for m in messages])
                return conn.total_changes - before
        except sqlite3.Error as exc:
            raise StoreError(f"Storing {len(messages)} messages failed: {exc}") from exc

    def delete_messages_by_remote_id(self, account_id: int, remote_ids: Iterable[str]) -> set[SenderKey]:
        """Delete mirrored messages and return the sender keys that lost messages."""
        ids = list(dict.fromkeys(remote_ids))
        affected: set[SenderKey] = set()
        with self._transaction() as conn:
            for chunk in _chunks(ids):
                marks = ",".join("?" * len(chunk))
                rows = conn.execute(
                    f"SELECT DISTINCT sender_address, sender_name FROM messages "
                    f"WHERE account_id = ? AND remote_id IN ({marks})",
                    (account_id, *chunk),
                ).fetchall()
                affected.update(SenderKey(r["sender_address"], r["sender_name"]) for r in rows)
                conn.execute(
                    f"DELETE FROM messages WHERE account_id = ? AND remote_id IN ({marks})",
                    (account_id, *chunk),
                )
        return affected

    def existing_remote_ids(self, account_id: int, remote_ids: Iterable[str]) -> set[str]:
        found: set[str] = set()
        for chunk in _chunks(list(remote_ids)):
            marks = ",".join("?" * len(chunk))
            rows = self._query(
                f"SELECT remote_id FROM messages WHERE account_id = ? AND remote_id IN ({marks})",
                (account_id, *chunk),
            )
            found.update(r["remote_id"] for r in rows)
        return found

    def all_remote_ids(self, account_id: int) -> set[str]:
        rows = self._query("SELECT remote_id FROM messages WHERE account_id = ?", (account_id,))
        return {r["remote_id"] for r in rows}

    def remote_ids_for_sender(self, account_id: int, key: SenderKey) -> list[str]:
        rows = self._query(
            "SELECT remote_id FROM messages WHERE account_id = ? AND sender_address = ? AND sender_name = ? "
            "ORDER BY received_at",
            (account_id, key.address, key.name),
        )
        return [r["remote_id"] for r in rows]

    def get_message(self, account_id: int, remote_id: str) -> NormalizedMessage | None:
        rows = self._query(
            "SELECT * FROM messages WHERE account_id = ? AND remote_id = ?", (account_id, remote_id)
        )
        return self._row_to_message(rows[0]) if rows else None

    def count_messages(self, account_id: int) -> int:
        rows = self._query("SELECT COUNT(*) AS c FROM messages WHERE account_id = ?", (account_id,))
        return rows[0]["c"]

    def remove_label(self, account_id: int, remote_ids: Iterable[str], label: str) -> int:
        """Drop a label from mirrored messages (used after a remote archive)."""
        changed = 0
        with self._transaction() as conn:
            for chunk in _chunks(list(remote_ids)):
                marks = ",".join("?" * len(chunk))
                rows = conn.execute(
                    f"SELECT id, labels_json FROM messages WHERE account_id = ? AND remote_id IN ({marks})",
                    (account_id, *chunk),
                ).fetchall()
                for row in rows:
                    labels = json.loads(row["labels_json"])
                    if label not in labels:
                        continue
                    labels.remove(label)
                    conn.execute(
                        "UPDATE messages SET labels_json = ? WHERE id = ?", (json.dumps(labels), row["id"])
                    )
                    changed += 1
        return changed

    def wipe_account(self, account_id: int) -> None:
        """Remove every message and aggregate of an account (full rebuild only)."""
        with self._transaction() as conn:
            conn.execute("DELETE FROM messages WHERE account_id = ?", (account_id,))
            conn.execute("DELETE FROM sender_aggregates WHERE account_id = ?", (account_id,))

    # --- aggregates ---

    def recompute_aggregate(self, account_id: int, key: SenderKey) -> SenderAggregate | None:
        """Rebuild one sender aggregate from the current message set.

        Deletes the aggregate when no messages remain and returns None.
        """
        where = "account_id = ? AND sender_address = ? AND sender_name = ?"
        params = (account_id, key.address, key.name)
        with self._transaction() as conn:
            stats = conn.execute(
                "SELECT COUNT(*) AS count, COALESCE(SUM(unread), 0) AS unread_count, "
                "MIN(received_at) AS first_at, MAX(received_at) AS last_at, "
                "COALESCE(MAX(one_click), 0) AS one_click, COALESCE(MAX(newsletter), 0) AS newsletter, "
                f"COALESCE(MAX(promotional), 0) AS promotional FROM messages WHERE {where}",
                params,
            ).fetchone()

            if stats["count"] == 0:
                conn.execute(f"DELETE FROM sender_aggregates WHERE {where}", params)
                return None

            link_row = conn.execute(
                f"SELECT unsubscribe_link FROM messages WHERE {where} AND unsubscribe_link IS NOT NULL "
                "ORDER BY (unsubscribe_link LIKE 'http%') DESC, received_at DESC LIMIT 1",
                params,
            ).fetchone()

            aggregate = SenderAggregate(
                account_id=account_id,
                sender_address=key.address,
                sender_name=key.name,
                count=stats["count"],
                unread_count=stats["unread_count"],
                first_at=from_db_time(stats["first_at"]),
                last_at=from_db_time(stats["last_at"]),
                unsubscribe_link=link_row["unsubscribe_link"] if link_row else None,
                one_click=bool(stats["one_click"]),
                newsletter=bool(stats["newsletter"]),
                promotional=bool(stats["promotional"]),
            )
            conn.execute(
                "INSERT INTO sender_aggregates (account_id, sender_address, sender_name, count, "
                "unread_count, first_at, last_at, unsubscribe_link, one_click, newsletter, promotional) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT (account_id, sender_address, sender_name) DO UPDATE SET "
                "count = excluded.count, unread_count = excluded.unread_count, "
                "first_at = excluded.first_at, last_at = excluded.last_at, "
                "unsubscribe_link = excluded.unsubscribe_link, one_click = excluded.one_click, "
                "newsletter = excluded.newsletter, promotional = excluded.promotional",
                (
                    account_id,
                    key.address,
                    key.name,
                    aggregate.count,
                    aggregate.unread_count,
                    stats["first_at"],
                    stats["last_at"],
                    aggregate.unsubscribe_link,
                    int(aggregate.one_click),
                    int(aggregate.newsletter),
                    int(aggregate.promotional),
                ),
            )
        return aggregate

    def get_aggregate(self, account_id: int, key: SenderKey) -> SenderAggregate | None:
        rows = self._query(
            "SELECT * FROM sender_aggregates WHERE account_id = ? AND sender_address = ? AND sender_name = ?",
            (account_id, key.address, key.name),
        )
        return self._row_to_aggregate(rows[0]) if rows else None

    def list_senders(self, account_id: int, limit: int | None = None) -> list[SenderAggregate]:
        """Sender aggregates, largest first."""
        sql = "SELECT * FROM sender_aggregates WHERE account_id = ? ORDER BY count DESC, last_at DESC"
        params: tuple = (account_id,)
        if limit:
            sql += " LIMIT ?"
            params = (account_id, limit)
        return [self._row_to_aggregate(r) for r in self._query(sql, params)]

    def senders_by_address(self, account_id: int, address: str) -> list[SenderAggregate]:
        rows = self._query(
            "SELECT * FROM sender_aggregates WHERE account_id = ? AND sender_address = ? ORDER BY count DESC",
            (account_id, address.strip().lower()),
        )
        return [self._row_to_aggregate(r) for r in rows]

    def total_messages(self, account_id: int) -> int:
        """Fresh sum of aggregate counts."""
        rows = self._query(
            "SELECT COALESCE(SUM(count), 0) AS total FROM sender_aggregates WHERE account_id = ?",
            (account_id,),
        )
        return rows[0]["total"]

    # --- cleanup log ---

    def record_cleanup(
        self,
        account_id: int,
        action: str,
        key: SenderKey,
        remote_ids: list[str],
        status: str,
        error: str | None = None,
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO cleanup_actions (account_id, action, sender_address, sender_name, affected, "
                "remote_ids_json, status, error, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    account_id,
                    action,
                    key.address,
                    key.name,
                    len(remote_ids),
                    json.dumps(remote_ids),
                    status,
                    error,
                    to_db_time(datetime.now(timezone.utc)),
                ),
            )

    def list_cleanup_actions(self, account_id: int) -> list[dict]:
        rows = self._query(
            "SELECT * FROM cleanup_actions WHERE account_id = ? ORDER BY id", (account_id,)
        )
        return [
            {
                "action": r["action"],
                "sender_address": r["sender_address"],
                "sender_name": r["sender_name"],
                "affected": r["affected"],
                "remote_ids": json.loads(r["remote_ids_json"]),
                "status": r["status"],
                "error": r["error"],
                "created_at": r["created_at"],
            }
            for r in rows
        ]

    # --- sync log ---

    def record_sync(self, account_id: int, result: SyncResult, at: datetime) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO sync_runs (account_id, mode, status, added, deleted, skipped, excluded, failed, "
                "total_messages, complete, suspect, cursor_expired, error, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    account_id,
                    result.mode.value,
                    result.status.value,
                    result.added,
                    result.deleted,
                    result.skipped,
                    result.excluded,
                    result.failed,
                    result.total_messages,
                    int(result.complete),
                    int(result.suspect),
                    int(result.cursor_expired),
                    result.error,
                    to_db_time(at),
                ),
            )

    def list_sync_runs(self, account_id: int) -> list[dict]:
        rows = self._query("SELECT * FROM sync_runs WHERE account_id = ? ORDER BY id", (account_id,))
        return [
            {
                "mode": r["mode"],
                "status": r["status"],
                "added": r["added"],
                "deleted": r["deleted"],
                "skipped": r["skipped"],
                "excluded": r["excluded"],
                "failed": r["failed"],
                "total_messages": r["total_messages"],
                "complete": bool(r["complete"]),
                "suspect": bool(r["suspect"]),
                "cursor_expired": bool(r["cursor_expired"]),
                "error": r["error"],
                "created_at": from_db_time(r["created_at"]),
            }
            for r in rows
        ]

    # --- maintenance ---

    def clear(self) -> None:
        """Drop and recreate all tables."""
        with self._lock:
            self._conn.executescript(
                "DROP TABLE IF EXISTS sync_runs;"
                "DROP TABLE IF EXISTS cleanup_actions;"
                "DROP TABLE IF EXISTS sender_aggregates;"
                "DROP TABLE IF EXISTS messages;"
                "DROP TABLE IF EXISTS accounts;"
            )
            self._create_tables()

    def get_info(self) -> dict:
        """Return database statistics."""
        file_size = self.db_path.stat().st_size if self.db_path.exists() else 0

        def count(table: str) -> int:
            return self._query(f"SELECT COUNT(*) AS c FROM {table}")[0]["c"]

        last_sync = self._query("SELECT MAX(last_synced_at) AS s FROM accounts")[0]["s"]
        return {
            "db_file_size": file_size,
            "account_count": count("accounts"),
            "message_count": count("messages"),
            "sender_count": count("sender_aggregates"),
            "last_sync_date": last_sync,
        }

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    # --- row mapping ---

    @staticmethod
    def _row_to_account(row: sqlite3.Row) -> Account:
        return Account(
            id=row["id"],
            user_id=row["user_id"],
            address=row["address"],
            plan=row["plan"],
            status=ConnectionStatus(row["status"]),
            last_synced_at=from_db_time(row["last_synced_at"]),
            history_cursor=row["history_cursor"],
            total_messages=row["total_messages"],
            orphan_check_done=bool(row["orphan_check_done"]),
            sync_progress_current=row["sync_progress_current"],
            sync_progress_total=row["sync_progress_total"],
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> NormalizedMessage:
        return NormalizedMessage(
            remote_id=row["remote_id"],
            sender_address=row["sender_address"],
            sender_name=row["sender_name"],
            subject=row["subject"] or "",
            received_at=from_db_time(row["received_at"]),
            snippet=row["snippet"] or "",
            unread=bool(row["unread"]),
            thread_id=row["thread_id"] or "",
            labels=tuple(json.loads(row["labels_json"])),
            unsubscribe_link=row["unsubscribe_link"],
            one_click=bool(row["one_click"]),
            newsletter=bool(row["newsletter"]),
            promotional=bool(row["promotional"]),
        )

    @staticmethod
    def _row_to_aggregate(row: sqlite3.Row) -> SenderAggregate:
        return SenderAggregate(
            account_id=row["account_id"],
            sender_address=row["sender_address"],
            sender_name=row["sender_name"],
            count=row["count"],
            unread_count=row["unread_count"],
            first_at=from_db_time(row["first_at"]),
            last_at=from_db_time(row["last_at"]),
            unsubscribe_link=row["unsubscribe_link"],
            one_click=bool(row["one_click"]),
            newsletter=bool(row["newsletter"]),
            promotional=bool(row["promotional"]),
        )

    # --- context manager ---

    def __enter__(self) -> MirrorStore:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        self.close()
