"""Exceptions raised by Inbox Mirror."""

from __future__ import annotations

from datetime import timedelta


class MirrorError(Exception):
    """Base class for all Inbox Mirror errors."""


class AuthExpired(MirrorError):
    """The provider rejected the account's credentials; the user must re-authenticate."""


class CursorExpired(MirrorError):
    """The history cursor is outside the provider's retention window."""


class TransientError(MirrorError):
    """Network failure, timeout, rate limit or 5xx from the provider."""


class ClassificationSkip(MirrorError):
    """A single message could not be normalized and is left out of the mirror."""

    def __init__(self, remote_id: str, reason: str) -> None:
        super().__init__(f"{remote_id}: {reason}")
        self.remote_id = remote_id
        self.reason = reason


class StoreError(MirrorError):
    """A write to the mirror failed."""


class AccountNotFound(MirrorError):
    """No account with the given id or address exists in the mirror."""


class SyncThrottled(MirrorError):
    """The account's plan does not allow another sync yet."""

    def __init__(self, retry_after: timedelta, plan: str = "") -> None:
        self.retry_after = retry_after
        self.plan = plan
        super().__init__(f"Sync limit reached. You can sync again in {_humanize(retry_after)}.")


def _humanize(delta: timedelta) -> str:
    minutes = max(1, -(-int(delta.total_seconds()) // 60))
    if minutes >= 60:
        hours = -(-minutes // 60)
        return f"{hours} hour{'s' if hours > 1 else ''}"
    return f"{minutes} minute{'s' if minutes > 1 else ''}"
