"""
Data models for storage layer.

Defines the credit account, its append-only transaction log, usage
records and rate limit windows.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Optional

ZERO = Decimal("0")
RATE_WINDOW_LENGTH = timedelta(hours=1)


class TransactionType(Enum):
    """Kinds of balance change recorded in the ledger."""
    PURCHASE = "purchase"
    CONSUMPTION = "consumption"
    DAILY_FREE = "daily_free"
    REFUND = "refund"
    BONUS = "bonus"


# Types that add credits to the balance
GRANT_TYPES = frozenset({TransactionType.PURCHASE, TransactionType.BONUS, TransactionType.REFUND})


class UsageStatus(Enum):
    """Final outcome of a metered operation."""
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class CreditAccount:
    """Durable balance record for one identity.

    Instances are immutable snapshots; every change goes through the
    ledger store as a compare-and-swap against ``version``.
    """
    identity: str
    balance: Decimal
    lifetime_purchased: Decimal
    lifetime_consumed: Decimal
    daily_free_used: int
    daily_free_window_start: datetime
    created_at: datetime
    updated_at: datetime
    version: int = 0

    def __post_init__(self):
        """Validate balance invariants."""
        if self.balance < 0:
            raise ValueError("balance cannot be negative")
        if self.lifetime_purchased < 0:
            raise ValueError("lifetime_purchased cannot be negative")
        if self.lifetime_consumed < 0:
            raise ValueError("lifetime_consumed cannot be negative")
        if self.daily_free_used < 0:
            raise ValueError("daily_free_used cannot be negative")

    @classmethod
    def new(cls, identity: str, now: datetime) -> "CreditAccount":
        """Lazily provisioned account with nothing purchased or used."""
        return cls(
            identity=identity,
            balance=ZERO,
            lifetime_purchased=ZERO,
            lifetime_consumed=ZERO,
            daily_free_used=0,
            daily_free_window_start=now,
            created_at=now,
            updated_at=now
        )

    def free_window_expired(self, now: datetime, window: timedelta) -> bool:
        return now >= self.daily_free_window_start + window

    def roll_free_window(self, now: datetime, window: timedelta) -> "CreditAccount":
        """Reset the free allowance if its window has expired.

        The window start advances by whole window lengths, so every
        caller observing the same expiry computes the same new start.
        Returns ``self`` unchanged when no reset is due.
        """
        if not self.free_window_expired(now, window):
            return self
        elapsed = (now - self.daily_free_window_start) // window
        return replace(
            self,
            daily_free_used=0,
            daily_free_window_start=self.daily_free_window_start + elapsed * window,
            updated_at=now
        )

    def free_remaining(self, limit: int) -> int:
        return max(0, limit - self.daily_free_used)


@dataclass(frozen=True)
class Transaction:
    """Immutable record of a balance change.

    ``amount`` is positive for credit-adding types and negative for
    consumption. ``daily_free`` rows draw on the free allowance only and
    do not move ``balance``.
    """
    identity: str
    type: TransactionType
    amount: Decimal
    balance_after: Decimal
    description: str
    created_at: datetime
    reference: Optional[str] = None
    related_usage_id: Optional[str] = None
    free_units: int = 0
    id: Optional[int] = None


@dataclass(frozen=True)
class UsageRecord:
    """One metered operation attempt, keyed by the caller's request reference."""
    request_ref: str
    identity: str
    provider: str
    model: str
    prompt_units: int
    completion_units: int
    credits_computed: Decimal
    credits_charged: Decimal
    status: UsageStatus
    balance_after: Decimal
    daily_free_remaining: int
    created_at: datetime
    shortfall: Decimal = ZERO
    response_time_ms: Optional[int] = None
    error_message: Optional[str] = None

    @property
    def total_units(self) -> int:
        return self.prompt_units + self.completion_units


@dataclass(frozen=True)
class RateLimitWindow:
    """Request counter for one identity in one clock-aligned hour."""
    identity: str
    window_start: datetime
    request_count: int = 0

    @property
    def window_end(self) -> datetime:
        return self.window_start + RATE_WINDOW_LENGTH
