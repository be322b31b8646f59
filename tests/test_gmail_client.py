"""Tests for the Gmail API client wrapper."""

import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from googleapiclient.errors import HttpError

from conftest import FakeProvider
from inbox_mirror import constants
from inbox_mirror.errors import AuthExpired, TransientError
from inbox_mirror.gmail_client import GmailClient, _execute, parse_message, translate_http_error
from inbox_mirror.provider import ProviderClient


def _http_error(status: int, content: bytes = b"{}") -> HttpError:
    return HttpError(SimpleNamespace(status=status, reason="error"), content)


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    """Retries and re-batches must not actually wait."""
    monkeypatch.setattr(time, "sleep", lambda seconds: None)


@pytest.fixture
def service():
    return MagicMock()


@pytest.fixture
def client(service):
    return GmailClient(lambda: service)


def _metadata(msg_id: str, sender: str = "Alice <alice@example.com>") -> dict:
    return {
        "id": msg_id,
        "threadId": f"t-{msg_id}",
        "labelIds": ["INBOX"],
        "snippet": "hi",
        "internalDate": "1700000000000",
        "payload": {"headers": [{"name": "From", "value": sender}, {"name": "Subject", "value": "Hi"}]},
    }


class FakeBatch:
    """Stands in for BatchHttpRequest; the added 'requests' are message ids."""

    def __init__(self, outcomes: dict):
        self.outcomes = outcomes
        self.entries = []

    def add(self, request, callback):
        self.entries.append((request, callback))

    def execute(self):
        for msg_id, callback in self.entries:
            outcome = self.outcomes[msg_id]
            if callable(outcome):
                outcome = outcome()
            if isinstance(outcome, Exception):
                callback(msg_id, None, outcome)
            else:
                callback(msg_id, outcome, None)


def _wire_batches(service, outcomes: dict) -> list:
    batches = []

    def new_batch():
        batch = FakeBatch(outcomes)
        batches.append(batch)
        return batch

    service.new_batch_http_request.side_effect = new_batch
    service.users.return_value.messages.return_value.get.side_effect = lambda **kwargs: kwargs["id"]
    return batches


@pytest.mark.parametrize(
    "status, content, expected",
    [
        (401, b"{}", AuthExpired),
        (403, b'{"error": {"errors": [{"reason": "userRateLimitExceeded"}]}}', TransientError),
        (403, b'{"error": {"errors": [{"reason": "insufficientPermissions"}]}}', AuthExpired),
        (429, b"{}", TransientError),
        (503, b"{}", TransientError),
    ],
)
def test_translate_http_error(status, content, expected):
    assert isinstance(translate_http_error(_http_error(status, content)), expected)


def test_translate_http_error_passes_through_client_errors():
    exc = _http_error(400)
    assert translate_http_error(exc) is exc


def test_execute_retries_transient_errors():
    request = MagicMock()
    request.execute.side_effect = [_http_error(503), _http_error(500), {"ok": True}]

    assert _execute(request) == {"ok": True}
    assert request.execute.call_count == 3


def test_execute_gives_up_after_max_attempts():
    request = MagicMock()
    request.execute.side_effect = _http_error(503)

    with pytest.raises(TransientError):
        _execute(request)
    assert request.execute.call_count == constants.MAX_ATTEMPTS


def test_execute_does_not_retry_auth_errors():
    request = MagicMock()
    request.execute.side_effect = _http_error(401)

    with pytest.raises(AuthExpired):
        _execute(request)
    assert request.execute.call_count == 1


def test_execute_maps_timeouts_to_transient():
    request = MagicMock()
    request.execute.side_effect = [TimeoutError("read timed out"), {"ok": True}]

    assert _execute(request) == {"ok": True}


def test_parse_message():
    raw = parse_message(_metadata("m1"))

    assert raw.remote_id == "m1"
    assert raw.thread_id == "t-m1"
    assert raw.header("from") == "Alice <alice@example.com>"
    assert raw.internal_date == 1_700_000_000_000


def test_list_all_ids_follows_pages(client, service):
    list_call = service.users.return_value.messages.return_value.list
    list_call.return_value.execute.side_effect = [
        {"messages": [{"id": "a"}, {"id": "b"}], "nextPageToken": "p2"},
        {"messages": [{"id": "c"}]},
    ]

    assert client.list_all_ids() == ["a", "b", "c"]
    assert list_call.call_args_list[0].kwargs["q"] == constants.DEFAULT_QUERY
    assert list_call.call_args_list[1].kwargs["pageToken"] == "p2"


def test_list_all_ids_stops_at_limit(client, service):
    list_call = service.users.return_value.messages.return_value.list
    list_call.return_value.execute.side_effect = [
        {"messages": [{"id": "a"}, {"id": "b"}], "nextPageToken": "p2"},
        {"messages": [{"id": "c"}]},
    ]

    assert client.list_all_ids(limit=2) == ["a", "b"]
    assert list_call.return_value.execute.call_count == 1


def test_list_recent_reads_one_page(client, service):
    list_call = service.users.return_value.messages.return_value.list
    list_call.return_value.execute.return_value = {"messages": [{"id": "x"}, {"id": "y"}], "nextPageToken": "p2"}

    assert client.list_recent(None, 50) == ["x", "y"]
    assert list_call.call_args.kwargs["maxResults"] == 50


def test_batch_get_metadata_sorts_outcomes(client, service):
    flaky = iter([_http_error(503), _metadata("m3")])
    _wire_batches(
        service,
        {
            "m1": _metadata("m1"),
            "m2": _http_error(404),
            "m3": lambda: next(flaky),
            "m4": _http_error(400),
        },
    )

    batch = client.batch_get_metadata(["m1", "m2", "m3", "m4"])

    assert sorted(m.remote_id for m in batch.messages) == ["m1", "m3"]
    assert batch.missing_ids == ["m2"]
    assert batch.failed_ids == ["m4"]


def test_batch_get_metadata_gives_up_on_persistent_errors(client, service):
    _wire_batches(service, {"m1": _http_error(500)})

    batch = client.batch_get_metadata(["m1"])

    assert batch.messages == []
    assert batch.failed_ids == ["m1"]


def test_transient_items_are_rebatched_with_backoff(client, service, monkeypatch):
    sleeps = []
    monkeypatch.setattr(time, "sleep", sleeps.append)
    flaky = iter([_http_error(429), _http_error(503), _metadata("m2")])
    batches = _wire_batches(service, {"m1": _metadata("m1"), "m2": lambda: next(flaky)})

    batch = client.batch_get_metadata(["m1", "m2"])

    assert sorted(m.remote_id for m in batch.messages) == ["m1", "m2"]
    assert batch.failed_ids == []
    assert [len(b.entries) for b in batches] == [2, 1, 1]
    assert len(sleeps) == constants.ITEM_RETRY_ROUNDS
    assert all(0 <= s <= constants.BACKOFF_MAX_SECONDS for s in sleeps)


def test_batch_get_metadata_raises_auth_errors(client, service):
    _wire_batches(service, {"m1": _metadata("m1"), "m2": _http_error(401)})

    with pytest.raises(AuthExpired):
        client.batch_get_metadata(["m1", "m2"])


def test_history_changes_nets_events(client, service):
    history_call = service.users.return_value.history.return_value.list
    history_call.return_value.execute.side_effect = [
        {
            "history": [
                {"messagesAdded": [{"message": {"id": "a"}}, {"message": {"id": "b"}}]},
                {"messagesDeleted": [{"message": {"id": "a"}}]},
            ],
            "historyId": "150",
            "nextPageToken": "p2",
        },
        {
            "history": [
                {"labelsAdded": [{"message": {"id": "c"}, "labelIds": ["TRASH"]}]},
                {"labelsAdded": [{"message": {"id": "d"}, "labelIds": ["STARRED"]}]},
                {"labelsRemoved": [{"message": {"id": "e"}, "labelIds": ["SPAM"]}]},
            ],
            "historyId": "160",
        },
    ]

    changes = client.history_changes("100")

    assert sorted(changes.added) == ["b", "e"]
    assert sorted(changes.deleted) == ["a", "c"]
    assert changes.new_cursor == "160"
    assert not changes.expired
    assert history_call.call_args_list[0].kwargs["startHistoryId"] == "100"


def test_history_changes_reports_expired_cursor(client, service):
    service.users.return_value.history.return_value.list.return_value.execute.side_effect = _http_error(404)

    changes = client.history_changes("1")

    assert changes.expired
    assert changes.new_cursor is None


def test_profile(client, service):
    service.users.return_value.getProfile.return_value.execute.return_value = {
        "emailAddress": "Me@Example.com",
        "historyId": 4242,
        "messagesTotal": 10,
    }

    profile = client.profile()

    assert profile.address == "me@example.com"
    assert profile.cursor == "4242"


def test_trash_messages_skips_failed_chunks(client, service, monkeypatch):
    monkeypatch.setattr(constants, "MODIFY_BATCH_SIZE", 2)
    modify = service.users.return_value.messages.return_value.batchModify
    modify.return_value.execute.side_effect = [{}, _http_error(400), {}]

    done = client.trash_messages(["a", "b", "c", "d", "e"])

    assert done == ["a", "b", "e"]
    body = modify.call_args_list[0].kwargs["body"]
    assert body["addLabelIds"] == ["TRASH"]


def test_archive_messages_removes_inbox(client, service):
    modify = service.users.return_value.messages.return_value.batchModify
    modify.return_value.execute.return_value = {}

    assert client.archive_messages(["a"]) == ["a"]
    body = modify.call_args.kwargs["body"]
    assert body == {"ids": ["a"], "addLabelIds": [], "removeLabelIds": ["INBOX"]}


def test_client_satisfies_provider_protocol(client):
    assert isinstance(client, ProviderClient)
    assert isinstance(FakeProvider(), ProviderClient)
