"""Tests for the SQLite mirror store."""

from datetime import datetime, timezone

import pytest

from inbox_mirror.errors import AccountNotFound, StoreError
from inbox_mirror.models import ConnectionStatus, NormalizedMessage, SenderKey, SyncMode, SyncResult
from inbox_mirror.store import MirrorStore

KEY = SenderKey("news@example.com", "News")


def _msg(remote_id: str, day: int, **kwargs) -> NormalizedMessage:
    fields = {
        "remote_id": remote_id,
        "sender_address": KEY.address,
        "sender_name": KEY.name,
        "subject": f"Issue {day}",
        "received_at": datetime(2024, 3, day, 9, 30, tzinfo=timezone.utc),
    }
    fields.update(kwargs)
    return NormalizedMessage(**fields)


def test_add_account_normalizes_address(store):
    account = store.add_account("  Me@Example.com ", user_id="u1", plan="pro")

    assert account.address == "me@example.com"
    assert account.status is ConnectionStatus.CONNECTED
    assert account.history_cursor is None
    assert store.get_account_by_address("ME@example.com").id == account.id


def test_add_account_twice_updates_plan(store):
    first = store.add_account("me@example.com", plan="free")
    second = store.add_account("me@example.com", plan="basic")

    assert first.id == second.id
    assert second.plan == "basic"
    assert len(store.list_accounts()) == 1


def test_add_account_rejects_unknown_plan(store):
    with pytest.raises(ValueError, match="Unknown plan"):
        store.add_account("me@example.com", plan="platinum")


def test_missing_account_raises(store):
    with pytest.raises(AccountNotFound):
        store.get_account(42)
    with pytest.raises(AccountNotFound):
        store.get_account_by_address("nobody@example.com")


def test_upsert_duplicate_is_noop(store, account):
    """A second insert of the same remote id keeps the first row."""
    assert store.upsert_message(account.id, _msg("r1", 1)) is True
    assert store.upsert_message(account.id, _msg("r1", 20)) is False

    assert store.count_messages(account.id) == 1
    assert store.get_message(account.id, "r1").received_at.day == 1


def test_insert_messages_counts_only_new_rows(store, account):
    store.insert_messages(account.id, [_msg("r1", 1), _msg("r2", 2)])

    added = store.insert_messages(account.id, [_msg("r2", 2), _msg("r3", 3)])

    assert added == 1
    assert store.all_remote_ids(account.id) == {"r1", "r2", "r3"}


def test_message_round_trip(store, account):
    msg = _msg("r1", 5, unread=True, labels=("INBOX", "UNREAD"), unsubscribe_link="https://x.example/u")
    store.upsert_message(account.id, msg)

    assert store.get_message(account.id, "r1") == msg


def test_recompute_aggregate(store, account):
    store.insert_messages(
        account.id,
        [
            _msg("r1", 1, unread=True, unsubscribe_link="mailto:u@example.com"),
            _msg("r2", 2, unsubscribe_link="https://example.com/old"),
            _msg("r3", 3, unread=True, newsletter=True, unsubscribe_link="mailto:new@example.com"),
        ],
    )

    agg = store.recompute_aggregate(account.id, KEY)

    assert agg.count == 3
    assert agg.unread_count == 2
    assert agg.first_at == datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)
    assert agg.last_at == datetime(2024, 3, 3, 9, 30, tzinfo=timezone.utc)
    assert agg.unsubscribe_link == "https://example.com/old"
    assert agg.newsletter is True
    assert store.get_aggregate(account.id, KEY) == agg
    assert store.total_messages(account.id) == 3


def test_recompute_deletes_empty_aggregate(store, account):
    store.upsert_message(account.id, _msg("r1", 1))
    store.recompute_aggregate(account.id, KEY)

    affected = store.delete_messages_by_remote_id(account.id, ["r1", "unknown"])

    assert affected == {KEY}
    assert store.recompute_aggregate(account.id, KEY) is None
    assert store.get_aggregate(account.id, KEY) is None
    assert store.total_messages(account.id) == 0


def test_list_senders_orders_by_count(store, account):
    other = SenderKey("friend@example.com", "Friend")
    store.insert_messages(
        account.id,
        [
            _msg("r1", 1),
            _msg("r2", 2),
            _msg("f1", 3, sender_address=other.address, sender_name=other.name),
        ],
    )
    store.recompute_aggregate(account.id, KEY)
    store.recompute_aggregate(account.id, other)

    senders = store.list_senders(account.id)

    assert [s.key for s in senders] == [KEY, other]
    assert [s.key for s in store.list_senders(account.id, limit=1)] == [KEY]


def test_remove_label(store, account):
    store.upsert_message(account.id, _msg("r1", 1, labels=("INBOX", "UNREAD")))
    store.upsert_message(account.id, _msg("r2", 2, labels=("UNREAD",)))

    changed = store.remove_label(account.id, ["r1", "r2"], "INBOX")

    assert changed == 1
    assert store.get_message(account.id, "r1").labels == ("UNREAD",)


def test_commit_sync_and_progress(store, account):
    synced = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
    store.set_account_status(account.id, ConnectionStatus.EXPIRED)
    store.set_sync_progress(account.id, 10, 40)

    store.commit_sync(account.id, synced, "12345", 7)

    refreshed = store.get_account(account.id)
    assert refreshed.last_synced_at == synced
    assert refreshed.history_cursor == "12345"
    assert refreshed.total_messages == 7
    assert refreshed.status is ConnectionStatus.CONNECTED
    assert (refreshed.sync_progress_current, refreshed.sync_progress_total) == (10, 40)


def test_delete_account_cascades(store, account):
    store.upsert_message(account.id, _msg("r1", 1))
    store.recompute_aggregate(account.id, KEY)
    store.record_cleanup(account.id, "delete", KEY, ["r1"], "ok")

    store.delete_account(account.id)

    info = store.get_info()
    assert info["account_count"] == 0
    assert info["message_count"] == 0
    assert info["sender_count"] == 0


def test_wipe_account_only_touches_that_account(store, account):
    other = store.add_account("other@example.com")
    store.upsert_message(account.id, _msg("r1", 1))
    store.upsert_message(other.id, _msg("r1", 1))

    store.wipe_account(account.id)

    assert store.count_messages(account.id) == 0
    assert store.count_messages(other.id) == 1


def test_cleanup_log(store, account):
    store.record_cleanup(account.id, "archive", KEY, ["r1", "r2"], "partial", "1 of 3 messages were not modified")

    [entry] = store.list_cleanup_actions(account.id)
    assert entry["action"] == "archive"
    assert entry["affected"] == 2
    assert entry["remote_ids"] == ["r1", "r2"]
    assert entry["status"] == "partial"


def test_sync_log_cascades_with_account(store, account):
    at = datetime(2024, 6, 1, tzinfo=timezone.utc)
    store.record_sync(account.id, SyncResult(mode=SyncMode.FULL, added=3, total_messages=3), at)

    [run] = store.list_sync_runs(account.id)
    assert run["mode"] == "full"
    assert run["added"] == 3
    assert run["complete"] and not run["suspect"]
    assert run["created_at"] == at

    store.delete_account(account.id)
    assert store._query("SELECT COUNT(*) AS c FROM sync_runs")[0]["c"] == 0


def test_get_info_and_clear(tmp_path):
    db_path = tmp_path / "mirror.db"
    with MirrorStore(db_path=db_path) as store:
        account = store.add_account("me@example.com")
        store.upsert_message(account.id, _msg("r1", 1))
        store.commit_sync(account.id, datetime(2024, 6, 1, tzinfo=timezone.utc), "1", 1)

        info = store.get_info()
        assert info["db_file_size"] > 0
        assert info["account_count"] == 1
        assert info["message_count"] == 1
        assert info["last_sync_date"].startswith("2024-06-01")

        store.clear()
        assert store.get_info()["account_count"] == 0


def test_write_failure_raises_store_error(tmp_path):
    store = MirrorStore(db_path=tmp_path / "mirror.db")
    account = store.add_account("me@example.com")
    store.close()

    with pytest.raises(StoreError):
        store.upsert_message(account.id, _msg("r1", 1))
    with pytest.raises(StoreError):
        store.insert_messages(account.id, [_msg("r2", 2)])
