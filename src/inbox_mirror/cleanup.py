"""Sender cleanup actions: trash or archive everything from one sender key."""

from __future__ import annotations

import logging
from typing import Callable

from . import constants
from .errors import AuthExpired, MirrorError, TransientError
from .models import CleanupResult, ConnectionStatus, SenderKey
from .provider import ProviderClient
from .store import MirrorStore

logger = logging.getLogger(__name__)

ACTION_DELETE = "delete"
ACTION_ARCHIVE = "archive"


def resolve_sender(store: MirrorStore, account_id: int, address: str, name: str | None = None) -> SenderKey:
    """Find the sender key for ``address``; ``name`` is required when the address has several."""
    aggregates = store.senders_by_address(account_id, address)
    if name is not None:
        for agg in aggregates:
            if agg.sender_name == name:
                return agg.key
        raise MirrorError(f"No messages from {name} <{address}> in the mirror")
    if not aggregates:
        raise MirrorError(f"No messages from {address} in the mirror")
    if len(aggregates) > 1:
        names = ", ".join(repr(a.sender_name) for a in aggregates)
        raise MirrorError(f"{address} sends under several names ({names}); pick one with --name")
    return aggregates[0].key


def delete_sender(store: MirrorStore, provider: ProviderClient, account_id: int, key: SenderKey) -> CleanupResult:
    """Move the sender's messages to trash and drop them from the mirror."""

    def apply_locally(done: list[str]) -> None:
        store.delete_messages_by_remote_id(account_id, done)

    return _run_action(store, account_id, key, ACTION_DELETE, provider.trash_messages, apply_locally)


def archive_sender(store: MirrorStore, provider: ProviderClient, account_id: int, key: SenderKey) -> CleanupResult:
    """Remove the sender's messages from the inbox; they stay mirrored."""

    def apply_locally(done: list[str]) -> None:
        store.remove_label(account_id, done, constants.LABEL_INBOX)

    return _run_action(store, account_id, key, ACTION_ARCHIVE, provider.archive_messages, apply_locally)


def _run_action(
    store: MirrorStore,
    account_id: int,
    key: SenderKey,
    action: str,
    remote_call: Callable[[list[str]], list[str]],
    apply_locally: Callable[[list[str]], None],
) -> CleanupResult:
    ids = store.remote_ids_for_sender(account_id, key)
    if not ids:
        return CleanupResult(action=action, key=key)

    try:
        done = remote_call(ids)
    except AuthExpired:
        store.set_account_status(account_id, ConnectionStatus.EXPIRED)
        raise
    except TransientError as exc:
        store.record_cleanup(account_id, action, key, [], "failed", str(exc))
        raise

    succeeded = set(done)
    failed = [i for i in ids if i not in succeeded]
    if done:
        apply_locally(done)
    aggregate = store.recompute_aggregate(account_id, key)

    status = "ok" if not failed else "partial"
    error = f"{len(failed)} of {len(ids)} messages were not modified" if failed else None
    store.record_cleanup(account_id, action, key, list(done), status, error)
    logger.info("%s %s: %d of %d messages", action, key.address, len(done), len(ids))

    return CleanupResult(
        action=action,
        key=key,
        requested=len(ids),
        affected=len(done),
        failed_ids=failed,
        remaining=aggregate.count if aggregate else 0,
    )
