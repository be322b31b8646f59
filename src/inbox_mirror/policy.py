"""Plan-based sync gating."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from . import constants
from .errors import SyncThrottled
from .models import Account

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlanLimits:
    name: str
    min_sync_interval: timedelta
    max_message_budget: int

    @property
    def unlimited(self) -> bool:
        return self.min_sync_interval <= timedelta(0)


def limits_for(plan: str | None) -> PlanLimits:
    """Look up a plan tier; unknown tiers get the free limits."""
    key = (plan or "free").lower()
    if key not in constants.PLAN_LIMITS:
        logger.warning("Unknown plan %r, applying free tier limits", plan)
        key = "free"
    interval, budget = constants.PLAN_LIMITS[key]
    return PlanLimits(key, interval, min(budget, constants.FULL_SCAN_CAP))


class SyncPolicy:
    """Decides whether an account may sync now and how much a full scan may fetch."""

    def limits(self, account: Account) -> PlanLimits:
        return limits_for(account.plan)

    def min_sync_interval(self, account: Account) -> timedelta:
        return self.limits(account).min_sync_interval

    def max_message_budget(self, account: Account) -> int:
        return self.limits(account).max_message_budget

    def authorize(self, account: Account, now: datetime) -> None:
        """Raise SyncThrottled when the plan's sync interval has not elapsed."""
        limits = self.limits(account)
        if limits.unlimited or account.last_synced_at is None:
            return
        elapsed = now - account.last_synced_at
        if elapsed < limits.min_sync_interval:
            retry_after = limits.min_sync_interval - elapsed
            logger.info(
                "Sync for %s throttled by %s plan, retry in %s", account.address, limits.name, retry_after
            )
            raise SyncThrottled(retry_after, plan=limits.name)
