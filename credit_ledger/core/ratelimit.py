"""
Per-identity request rate limiting.

Fixed, clock-aligned windows: requests are counted per identity per UTC
hour; the daily count is the sum of the day's hourly windows. Checking
and recording are separate calls, so two racing requests can both pass
``check`` before either records. That overshoot is an accepted bound.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Optional

from credit_ledger.config.loader import Tier, TierLimits
from credit_ledger.storage.ledger import LedgerStore
from credit_ledger.storage.models import RATE_WINDOW_LENGTH, RateLimitWindow

logger = logging.getLogger(__name__)

DAY = timedelta(days=1)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def hour_bucket(now: datetime) -> datetime:
    return now.replace(minute=0, second=0, microsecond=0)


def day_bucket(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


@dataclass(frozen=True)
class RateStatus:
    """Result of a rate limit check."""
    allowed: bool
    tier: Tier
    remaining_hourly: int
    remaining_daily: Optional[int]  # None when the tier is unbounded per day
    reset_at: datetime


class RateLimiter:
    """Fixed-window rate limiter over the ledger store's window counters."""

    def __init__(
        self,
        store: LedgerStore,
        tiers: Mapping[Tier, TierLimits],
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.tiers = dict(tiers)
        self.clock = clock or utc_now

    def check(self, identity: str, tier: Tier) -> RateStatus:
        """Check whether ``identity`` may make another request now.

        Read-only; does not count the request.
        """
        limits = self.tiers[tier]
        now = self.clock()
        hour_start = hour_bucket(now)
        day_start = day_bucket(now)

        hourly_count = self.store.count_requests(identity, hour_start, hour_start + RATE_WINDOW_LENGTH)
        daily_count = self.store.count_requests(identity, day_start, day_start + DAY)

        hourly_ok = hourly_count < limits.hourly
        daily_ok = limits.daily is None or daily_count < limits.daily

        remaining_hourly = max(0, limits.hourly - hourly_count)
        remaining_daily = None if limits.daily is None else max(0, limits.daily - daily_count)

        # When the day is used up, waiting for the next hour does not help
        reset_at = hour_start + RATE_WINDOW_LENGTH if daily_ok else day_start + DAY

        allowed = hourly_ok and daily_ok
        if not allowed:
            logger.warning(
                "Rate limit reached for %s (%s): hourly=%d daily=%d, resets at %s",
                identity, tier.value, hourly_count, daily_count, reset_at.isoformat()
            )

        return RateStatus(
            allowed=allowed,
            tier=tier,
            remaining_hourly=remaining_hourly,
            remaining_daily=remaining_daily,
            reset_at=reset_at
        )

    def record(self, identity: str) -> RateLimitWindow:
        """Count one request against the window active right now."""
        return self.store.increment_rate_window(identity, hour_bucket(self.clock()))
