"""Sync state machine that reconciles the mirror with the remote mailbox."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Iterable

from . import constants
from .classifier import classify
from .errors import AuthExpired, ClassificationSkip, StoreError, TransientError
from .models import (
    Account,
    ConnectionStatus,
    NormalizedMessage,
    SenderKey,
    SyncMode,
    SyncResult,
    SyncStatus,
)
from .policy import SyncPolicy
from .provider import ProviderClient
from .store import MirrorStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


@dataclass
class _SyncRun:
    """Per-invocation state shared by the sync phases."""

    account: Account
    now: datetime
    deadline: float
    monotonic: Callable[[], float]
    cancel: threading.Event | None = None
    progress: ProgressCallback | None = None

    def should_stop(self) -> bool:
        if self.cancel is not None and self.cancel.is_set():
            return True
        return self.monotonic() >= self.deadline


@dataclass
class _FetchOutcome:
    messages: list[NormalizedMessage]
    processed: int
    skipped: int = 0
    excluded: int = 0
    failed: int = 0
    complete: bool = True
    # Listed ids with no answer yet: fetch failures and chunks never submitted.
    unresolved: list[str] = field(default_factory=list)


class Reconciler:
    """Brings one account's mirror in line with its remote mailbox.

    Every run goes through the sync policy first, then picks incremental,
    full scan or the one-time orphan check. Metadata is fetched on a thread
    pool while all store writes stay on the calling thread. Aggregates are
    only ever rebuilt with ``MirrorStore.recompute_aggregate``.
    """

    def __init__(
        self,
        store: MirrorStore,
        provider_factory: Callable[[Account], ProviderClient],
        policy: SyncPolicy | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
        time_budget: float = constants.SYNC_TIME_BUDGET,
        workers: int = constants.FETCH_WORKERS,
        verify_window: int = constants.VERIFY_WINDOW,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.provider_factory = provider_factory
        self.policy = policy or SyncPolicy()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.time_budget = time_budget
        self.workers = max(1, workers)
        self.verify_window = verify_window
        self.monotonic = monotonic

    def sync(
        self,
        account_id: int,
        force_full: bool = False,
        progress: ProgressCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> SyncResult:
        """Run one sync for ``account_id`` and return its summary.

        Raises SyncThrottled before any provider call when the plan forbids a
        sync now, and AuthExpired (after marking the account expired) when the
        provider rejects the credentials. Exhausted transient failures come
        back as a FAILED result.
        """
        account = self.store.get_account(account_id)
        now = self.clock()
        self.policy.authorize(account, now)

        mode = self.select_mode(account, now, force_full)
        run = _SyncRun(
            account=account,
            now=now,
            deadline=self.monotonic() + self.time_budget,
            monotonic=self.monotonic,
            cancel=cancel,
            progress=progress,
        )
        logger.info("Syncing %s (%s)", account.address, mode.value)

        try:
            provider = self.provider_factory(account)
            if mode is SyncMode.FULL:
                result = self._full_scan(run, provider)
            else:
                result = self._incremental(run, provider)
        except AuthExpired as exc:
            logger.warning("Credentials for %s expired, marking account expired", account.address)
            self.store.set_account_status(account.id, ConnectionStatus.EXPIRED)
            self.store.record_sync(account.id, self._failed(account, mode, exc), now)
            raise
        except TransientError as exc:
            logger.error("Sync of %s failed: %s", account.address, exc)
            result = self._failed(account, mode, exc)
            self.store.record_sync(account.id, result, now)
            return result
        finally:
            self.store.set_sync_progress(account.id, None, None)

        self.store.record_sync(account.id, result, now)
        logger.info(
            "Synced %s: +%d -%d, %d skipped, %d failed, %d total",
            account.address,
            result.added,
            result.deleted,
            result.skipped,
            result.failed,
            result.total_messages,
        )
        return result

    @staticmethod
    def _failed(account: Account, mode: SyncMode, exc: Exception) -> SyncResult:
        return SyncResult(
            mode=mode,
            status=SyncStatus.FAILED,
            total_messages=account.total_messages,
            complete=False,
            error=str(exc),
        )

    def select_mode(self, account: Account, now: datetime, force_full: bool = False) -> SyncMode:
        if force_full or not account.history_cursor:
            return SyncMode.FULL
        if account.last_synced_at is None or now - account.last_synced_at > constants.STALE_SYNC_AFTER:
            return SyncMode.FULL
        return SyncMode.INCREMENTAL

    # --- incremental ---

    def _incremental(self, run: _SyncRun, provider: ProviderClient) -> SyncResult:
        account = run.account
        changes = provider.history_changes(account.history_cursor)
        if changes.expired:
            logger.info("Cursor for %s expired, falling back to a full scan", account.address)
            return replace(self._full_scan(run, provider), cursor_expired=True)

        result = SyncResult(mode=SyncMode.INCREMENTAL)
        if changes.empty:
            recent = provider.list_recent(constants.DEFAULT_QUERY, self.verify_window)
            known = self.store.existing_remote_ids(account.id, recent)
            unseen = [i for i in recent if i not in known]
            if unseen:
                logger.info("Change feed missed %d recent messages for %s", len(unseen), account.address)
                result += self._apply_additions(run, provider, unseen)
            elif not account.orphan_check_done and not run.should_stop():
                result = replace(result, mode=SyncMode.ORPHAN_CHECK) + self._orphan_check(run, provider)
        else:
            deleted = set(changes.deleted)
            result += self._apply_deletions(account.id, changes.deleted)
            result += self._apply_additions(run, provider, [i for i in changes.added if i not in deleted])

        if result.complete:
            return self._commit(run, changes.new_cursor or account.history_cursor, result)
        # Unapplied changes are re-reported from the old cursor next time.
        total = self.store.total_messages(account.id)
        self.store.commit_sync(account.id, account.last_synced_at, account.history_cursor, total)
        return replace(result, total_messages=total)

    def _apply_deletions(self, account_id: int, remote_ids: Iterable[str]) -> SyncResult:
        present = self.store.existing_remote_ids(account_id, remote_ids)
        if not present:
            return SyncResult(mode=SyncMode.INCREMENTAL)
        affected = self.store.delete_messages_by_remote_id(account_id, present)
        self._recompute(account_id, affected)
        return SyncResult(mode=SyncMode.INCREMENTAL, deleted=len(present))

    def _apply_additions(self, run: _SyncRun, provider: ProviderClient, remote_ids: list[str]) -> SyncResult:
        account_id = run.account.id
        candidates = list(dict.fromkeys(remote_ids))
        known = self.store.existing_remote_ids(account_id, candidates)
        wanted = [i for i in candidates if i not in known]
        if not wanted:
            return SyncResult(mode=SyncMode.INCREMENTAL)

        outcome = self._fetch_and_classify(run, provider, wanted)
        added, store_failed = self._store_messages(account_id, outcome.messages)
        self._recompute(account_id, {m.key for m in outcome.messages})
        return SyncResult(
            mode=SyncMode.INCREMENTAL,
            added=added,
            skipped=outcome.skipped,
            excluded=outcome.excluded,
            failed=outcome.failed + store_failed,
            complete=outcome.complete,
        )

    def _orphan_check(self, run: _SyncRun, provider: ProviderClient) -> SyncResult:
        """Drop mirrored messages the remote no longer has; runs once per account."""
        account_id = run.account.id
        remote = set(provider.list_all_ids())
        local = self.store.all_remote_ids(account_id)
        if not remote and local:
            logger.warning(
                "Orphan check for %s listed no remote messages, leaving %d mirrored messages alone",
                run.account.address,
                len(local),
            )
            return SyncResult(mode=SyncMode.ORPHAN_CHECK, suspect=True)

        orphans = local - remote
        if orphans:
            logger.info("Removing %d orphaned messages for %s", len(orphans), run.account.address)
            affected = self.store.delete_messages_by_remote_id(account_id, orphans)
            self._recompute(account_id, affected)
        self.store.mark_orphan_check_done(account_id)
        return SyncResult(mode=SyncMode.ORPHAN_CHECK, deleted=len(orphans))

    # --- full scan ---

    def _full_scan(self, run: _SyncRun, provider: ProviderClient) -> SyncResult:
        account = run.account
        budget = self.policy.max_message_budget(account)
        profile = provider.profile()
        ids = provider.list_all_ids(limit=budget)
        if not ids:
            logger.warning("Full scan of %s listed no messages; keeping the existing mirror", account.address)
            return SyncResult(
                mode=SyncMode.FULL, suspect=True, complete=False, total_messages=account.total_messages
            )

        outcome = self._fetch_and_classify(run, provider, ids)
        if outcome.processed == 0:
            logger.warning("Full scan of %s stopped before any message was fetched", account.address)
            return SyncResult(
                mode=SyncMode.FULL, suspect=True, complete=False, total_messages=account.total_messages
            )

        previous = self.store.all_remote_ids(account.id)
        # Listed but unanswered ids still exist remotely; their rows survive the rebuild.
        kept = previous & set(outcome.unresolved)
        if kept:
            logger.info("Keeping %d mirrored messages that could not be refetched", len(kept))
            affected = self.store.delete_messages_by_remote_id(account.id, previous - kept)
        else:
            affected = set()
            self.store.wipe_account(account.id)
        _, store_failed = self._store_messages(account.id, outcome.messages)
        self._recompute(account.id, affected | {m.key for m in outcome.messages})
        current = self.store.all_remote_ids(account.id)

        result = SyncResult(
            mode=SyncMode.FULL,
            added=len(current - previous),
            deleted=len(previous - current),
            skipped=outcome.skipped,
            excluded=outcome.excluded,
            failed=outcome.failed + store_failed,
            complete=outcome.complete,
        )
        if outcome.complete:
            return self._commit(run, profile.cursor, result)

        logger.info("Full scan of %s ran out of time; the next sync starts over", account.address)
        total = self.store.total_messages(account.id)
        self.store.commit_sync(account.id, None, None, total)
        return replace(result, total_messages=total)

    # --- shared steps ---

    def _fetch_and_classify(self, run: _SyncRun, provider: ProviderClient, ids: list[str]) -> _FetchOutcome:
        """Fetch metadata chunk by chunk on the pool and classify on this thread.

        No new chunk is submitted once the run is cancelled or past its
        deadline; chunks already in flight are still collected.
        """
        chunks = [ids[i : i + constants.BATCH_SIZE] for i in range(0, len(ids), constants.BATCH_SIZE)]
        outcome = _FetchOutcome(messages=[], processed=0)
        submitted = 0
        pending: dict[Future, list[str]] = {}

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="inbox-mirror-fetch") as pool:
            while True:
                while submitted < len(chunks) and len(pending) < self.workers and not run.should_stop():
                    chunk = chunks[submitted]
                    pending[pool.submit(provider.batch_get_metadata, chunk)] = chunk
                    submitted += 1
                if not pending:
                    break

                finished, _ = wait(pending, return_when=FIRST_COMPLETED)
                for future in finished:
                    chunk = pending.pop(future)
                    batch = future.result()
                    for raw in batch.messages:
                        try:
                            msg = classify(raw, run.account.address)
                        except ClassificationSkip as exc:
                            logger.debug("Skipping message %s", exc)
                            outcome.skipped += 1
                            continue
                        if msg is None:
                            outcome.excluded += 1
                        else:
                            outcome.messages.append(msg)
                    if batch.missing_ids:
                        logger.debug("%d messages vanished before they could be fetched", len(batch.missing_ids))
                    outcome.failed += len(batch.failed_ids)
                    outcome.unresolved.extend(batch.failed_ids)
                    outcome.processed += len(chunk)
                    self._report(run, outcome.processed, len(ids))

        if submitted < len(chunks):
            logger.info(
                "Stopped after %d of %d messages for %s", outcome.processed, len(ids), run.account.address
            )
            outcome.complete = False
            for chunk in chunks[submitted:]:
                outcome.unresolved.extend(chunk)
        return outcome

    def _store_messages(self, account_id: int, messages: list[NormalizedMessage]) -> tuple[int, int]:
        """Insert in batches; a failing batch is retried record by record. Returns (added, failed)."""
        added = failed = 0
        for start in range(0, len(messages), constants.STORE_BATCH_SIZE):
            batch = messages[start : start + constants.STORE_BATCH_SIZE]
            try:
                added += self.store.insert_messages(account_id, batch)
                continue
            except StoreError as exc:
                logger.warning("Batch insert failed, retrying one by one: %s", exc)
            for msg in batch:
                try:
                    if self.store.upsert_message(account_id, msg):
                        added += 1
                except StoreError as exc:
                    logger.error("%s", exc)
                    failed += 1
        return added, failed

    def _recompute(self, account_id: int, keys: Iterable[SenderKey]) -> None:
        for key in sorted(set(keys)):
            self.store.recompute_aggregate(account_id, key)

    def _commit(self, run: _SyncRun, cursor: str | None, result: SyncResult) -> SyncResult:
        total = self.store.total_messages(run.account.id)
        self.store.commit_sync(run.account.id, run.now, cursor, total)
        return replace(result, total_messages=total)

    def _report(self, run: _SyncRun, current: int, total: int) -> None:
        self.store.set_sync_progress(run.account.id, current, total)
        if run.progress is not None:
            run.progress(current, total)
