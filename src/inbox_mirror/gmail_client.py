"""Gmail API client for listing, fetching and modifying messages."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from google.auth.exceptions import RefreshError, TransportError
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from tenacity import (
    Retrying,
    before_sleep_log,
    retry,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_random_exponential,
)

from . import constants
from .errors import AuthExpired, CursorExpired, TransientError
from .models import HistoryChanges, MetadataBatch, Profile, RawMessage

logger = logging.getLogger(__name__)


def _content(exc: HttpError) -> bytes:
    content = exc.content or b""
    return content.encode() if isinstance(content, str) else content


def _status(exc: HttpError) -> int:
    return int(getattr(exc.resp, "status", 0) or 0)


def translate_http_error(exc: HttpError) -> Exception:
    """Map an HttpError onto the error taxonomy; unknown errors are returned unchanged."""
    status = _status(exc)
    if status == 401:
        return AuthExpired(f"Gmail rejected the credentials ({status})")
    if status == 403:
        if any(reason in _content(exc) for reason in constants.RATE_LIMIT_REASONS):
            return TransientError(f"Gmail rate limit exceeded ({status})")
        return AuthExpired(f"Gmail denied access ({status})")
    if status in constants.RETRYABLE_STATUSES:
        return TransientError(f"Gmail API error {status}")
    return exc


@retry(
    retry=retry_if_exception_type(TransientError),
    wait=wait_random_exponential(multiplier=1, max=constants.BACKOFF_MAX_SECONDS),
    stop=stop_after_attempt(constants.MAX_ATTEMPTS),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
def _execute(request: Any) -> Any:
    """Execute an HttpRequest or BatchHttpRequest, retrying transient failures."""
    try:
        return request.execute()
    except HttpError as exc:
        translated = translate_http_error(exc)
        if translated is exc:
            raise
        raise translated from exc
    except RefreshError as exc:
        raise AuthExpired(f"Token refresh failed: {exc}") from exc
    except (TransportError, TimeoutError, ConnectionError) as exc:
        raise TransientError(f"Network error talking to Gmail: {exc}") from exc


def parse_message(response: dict) -> RawMessage:
    """Turn a ``format=metadata`` message resource into a RawMessage."""
    headers = {}
    for h in response.get("payload", {}).get("headers", []):
        headers[h["name"]] = h["value"]
    internal_date = response.get("internalDate")
    return RawMessage(
        remote_id=response["id"],
        thread_id=response.get("threadId", ""),
        labels=list(response.get("labelIds", [])),
        snippet=response.get("snippet", ""),
        headers=headers,
        internal_date=int(internal_date) if internal_date else None,
    )


class GmailClient:
    """Typed wrapper around the Gmail v1 API for one mailbox.

    Discovery resources are not thread-safe, so each thread gets its own
    service object from ``service_factory``.
    """

    def __init__(self, service_factory: Callable[[], Any], user_id: str = "me") -> None:
        self._service_factory = service_factory
        self._local = threading.local()
        self.user_id = user_id

    @classmethod
    def from_credentials(cls, credentials: Any) -> GmailClient:
        return cls(lambda: build("gmail", "v1", credentials=credentials, cache_discovery=False))

    @property
    def service(self) -> Any:
        service = getattr(self._local, "service", None)
        if service is None:
            service = self._local.service = self._service_factory()
        return service

    # --- listing ---

    def list_all_ids(self, query: str | None = None, limit: int | None = None) -> list[str]:
        """List message IDs matching the query, handling pagination."""
        query = constants.DEFAULT_QUERY if query is None else query
        ids: list[str] = []
        page_token: str | None = None

        while True:
            kwargs: dict = {
                "userId": self.user_id,
                "maxResults": constants.PAGE_SIZE,
                "fields": "messages/id,nextPageToken",
            }
            if query:
                kwargs["q"] = query
            if page_token:
                kwargs["pageToken"] = page_token

            resp = _execute(self.service.users().messages().list(**kwargs))
            for msg in resp.get("messages", []):
                ids.append(msg["id"])
                if limit and len(ids) >= limit:
                    return ids[:limit]

            page_token = resp.get("nextPageToken")
            if not page_token:
                break

        logger.debug("Listed %d message ids (query=%r)", len(ids), query)
        return ids

    def list_recent(self, query: str | None, max_results: int) -> list[str]:
        """List the newest message IDs, one page only."""
        kwargs: dict = {
            "userId": self.user_id,
            "maxResults": min(max_results, constants.PAGE_SIZE),
            "fields": "messages/id",
        }
        query = constants.DEFAULT_QUERY if query is None else query
        if query:
            kwargs["q"] = query
        resp = _execute(self.service.users().messages().list(**kwargs))
        return [m["id"] for m in resp.get("messages", [])][:max_results]

    # --- metadata ---

    def batch_get_metadata(self, ids: list[str], headers: list[str] | None = None) -> MetadataBatch:
        """Fetch metadata in chunks of BATCH_SIZE using BatchHttpRequest."""
        headers = headers or constants.METADATA_HEADERS
        result = MetadataBatch()
        for start in range(0, len(ids), constants.BATCH_SIZE):
            result.extend(self._fetch_chunk(ids[start : start + constants.BATCH_SIZE], headers))
        if result.failed_ids:
            logger.warning("%d of %d messages could not be fetched", len(result.failed_ids), len(ids))
        return result

    def _fetch_chunk(self, ids: list[str], headers: list[str]) -> MetadataBatch:
        result = MetadataBatch()
        pending = list(ids)

        def _round() -> list[str]:
            nonlocal pending
            fetched, missing, failed, pending = self._run_batch(pending, headers)
            result.messages.extend(fetched)
            result.missing_ids.extend(missing)
            result.failed_ids.extend(failed)
            return pending

        # Items that failed transiently inside a batch are re-batched on their own.
        retrying = Retrying(
            retry=retry_if_result(bool),
            wait=wait_random_exponential(multiplier=1, max=constants.BACKOFF_MAX_SECONDS),
            stop=stop_after_attempt(constants.ITEM_RETRY_ROUNDS + 1),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            retry_error_callback=lambda state: state.outcome.result(),
        )
        result.failed_ids.extend(retrying(_round))
        return result

    def _run_batch(
        self, ids: list[str], headers: list[str]
    ) -> tuple[list[RawMessage], list[str], list[str], list[str]]:
        """One BatchHttpRequest; returns (fetched, missing, failed, retryable)."""
        messages: dict[str, RawMessage] = {}
        missing: set[str] = set()
        failed: set[str] = set()
        retryable: set[str] = set()
        auth_errors: list[AuthExpired] = []

        def _make_callback(msg_id: str):
            def _cb(request_id, response, exception):
                if exception is None:
                    messages[msg_id] = parse_message(response)
                    return
                if isinstance(exception, HttpError):
                    if _status(exception) == 404:
                        missing.add(msg_id)
                        return
                    translated = translate_http_error(exception)
                    if isinstance(translated, AuthExpired):
                        auth_errors.append(translated)
                        return
                    if isinstance(translated, TransientError):
                        retryable.add(msg_id)
                        return
                logger.warning("Fetching message %s failed: %s", msg_id, exception)
                failed.add(msg_id)

            return _cb

        batch = self.service.new_batch_http_request()
        messages_api = self.service.users().messages()
        for msg_id in ids:
            batch.add(
                messages_api.get(
                    userId=self.user_id,
                    id=msg_id,
                    format="metadata",
                    metadataHeaders=headers,
                ),
                callback=_make_callback(msg_id),
            )
        _execute(batch)

        if auth_errors:
            raise auth_errors[0]

        fetched = [messages[i] for i in ids if i in messages]
        done = set(messages) | missing
        return (
            fetched,
            [i for i in ids if i in missing and i not in messages],
            [i for i in ids if i in failed and i not in done],
            [i for i in ids if i in retryable and i not in done and i not in failed],
        )

    # --- change feed ---

    def history_changes(self, cursor: str) -> HistoryChanges:
        """Collect net message additions and deletions since ``cursor``.

        Messages moved to trash or spam count as deleted, messages restored
        from them count as added. The last event for an id wins.
        """
        last_event: dict[str, str] = {}
        new_cursor = cursor
        page_token: str | None = None

        try:
            while True:
                kwargs: dict = {
                    "userId": self.user_id,
                    "startHistoryId": cursor,
                    "maxResults": constants.HISTORY_PAGE_SIZE,
                }
                if page_token:
                    kwargs["pageToken"] = page_token
                resp = self._history_page(kwargs)
                new_cursor = str(resp.get("historyId", new_cursor))

                for record in resp.get("history", []):
                    for item in record.get("messagesAdded", []):
                        last_event[item["message"]["id"]] = "added"
                    for item in record.get("messagesDeleted", []):
                        last_event[item["message"]["id"]] = "deleted"
                    for item in record.get("labelsAdded", []):
                        if _hides_message(item.get("labelIds", [])):
                            last_event[item["message"]["id"]] = "deleted"
                    for item in record.get("labelsRemoved", []):
                        if _hides_message(item.get("labelIds", [])):
                            last_event[item["message"]["id"]] = "added"

                page_token = resp.get("nextPageToken")
                if not page_token:
                    break
        except CursorExpired:
            logger.info("History cursor %s expired, a full scan is required", cursor)
            return HistoryChanges(new_cursor=None, expired=True)

        return HistoryChanges(
            added=[i for i, event in last_event.items() if event == "added"],
            deleted=[i for i, event in last_event.items() if event == "deleted"],
            new_cursor=new_cursor,
        )

    def _history_page(self, kwargs: dict) -> dict:
        try:
            return _execute(self.service.users().history().list(**kwargs))
        except HttpError as exc:
            status = _status(exc)
            if status == 404 or (status == 400 and b"historyId" in _content(exc)):
                raise CursorExpired(f"startHistoryId {kwargs['startHistoryId']} is no longer valid") from exc
            raise

    def profile(self) -> Profile:
        resp = _execute(self.service.users().getProfile(userId=self.user_id))
        history_id = resp.get("historyId")
        return Profile(
            address=resp.get("emailAddress", "").lower(),
            cursor=str(history_id) if history_id else None,
            messages_total=resp.get("messagesTotal", 0),
        )

    # --- modification ---

    def trash_messages(self, ids: list[str]) -> list[str]:
        """Move messages to trash in batches using batchModify."""
        return self._batch_modify(ids, add=[constants.LABEL_TRASH], remove=[constants.LABEL_INBOX])

    def archive_messages(self, ids: list[str]) -> list[str]:
        """Remove messages from the inbox in batches using batchModify."""
        return self._batch_modify(ids, add=[], remove=[constants.LABEL_INBOX])

    def _batch_modify(self, ids: list[str], add: list[str], remove: list[str]) -> list[str]:
        done: list[str] = []
        for start in range(0, len(ids), constants.MODIFY_BATCH_SIZE):
            chunk = ids[start : start + constants.MODIFY_BATCH_SIZE]
            body = {"ids": chunk, "addLabelIds": add, "removeLabelIds": remove}
            try:
                _execute(self.service.users().messages().batchModify(userId=self.user_id, body=body))
            except (TransientError, HttpError) as exc:
                logger.error("batchModify of %d messages failed: %s", len(chunk), exc)
                continue
            done.extend(chunk)
        return done


def _hides_message(label_ids: list[str]) -> bool:
    return constants.LABEL_TRASH in label_ids or constants.LABEL_SPAM in label_ids
