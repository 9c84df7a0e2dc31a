"""
Usage analytics and ledger audit.

Read-only reports over usage records and the transaction log.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from credit_ledger.storage.ledger import LedgerStore
from credit_ledger.storage.models import ZERO, TransactionType, UsageRecord


@dataclass(frozen=True)
class ModelUsageStats:
    """Usage totals for one provider/model."""
    provider: str
    model: str
    requests: int
    credits_charged: Decimal
    average_units: float


@dataclass(frozen=True)
class DailyUsageStats:
    """Usage totals for one calendar day (UTC)."""
    day: date
    requests: int
    credits_charged: Decimal
    units: int


@dataclass(frozen=True)
class UsageSummary:
    """Usage over a reporting period."""
    start: datetime
    end: datetime
    requests: int
    credits_charged: Decimal
    total_units: int
    avg_response_time_ms: float
    by_model: List[ModelUsageStats]
    by_day: List[DailyUsageStats]


@dataclass(frozen=True)
class AuditReport:
    """Result of replaying an account's transaction log."""
    identity: str
    recorded_balance: Decimal
    replayed_balance: Decimal
    transaction_count: int
    free_units_drawn: int

    @property
    def balanced(self) -> bool:
        return self.recorded_balance == self.replayed_balance


def usage_summary(
    store: LedgerStore,
    now: datetime,
    identity: Optional[str] = None,
    days: int = 30
) -> UsageSummary:
    """Summarize usage records from the last ``days`` days.

    Args:
        store: Ledger store to read from
        now: End of the reporting period
        identity: Optional filter for a single identity
        days: Number of days to include

    Returns:
        UsageSummary with totals, per-model and per-day breakdowns
    """
    if days <= 0:
        raise ValueError("days must be > 0")

    start = now - timedelta(days=days)
    records = [u for u in store.list_usage(identity=identity, since=start) if u.created_at <= now]

    timed = [u.response_time_ms for u in records if u.response_time_ms is not None]
    avg_response = round(sum(timed) / len(timed), 2) if timed else 0.0

    return UsageSummary(
        start=start,
        end=now,
        requests=len(records),
        credits_charged=sum((u.credits_charged for u in records), ZERO),
        total_units=sum(u.total_units for u in records),
        avg_response_time_ms=avg_response,
        by_model=_by_model(records),
        by_day=_by_day(records)
    )


def _by_model(records: List[UsageRecord]) -> List[ModelUsageStats]:
    grouped: Dict[Tuple[str, str], List[UsageRecord]] = {}
    for record in records:
        grouped.setdefault((record.provider, record.model), []).append(record)

    stats = [
        ModelUsageStats(
            provider=provider,
            model=model,
            requests=len(group),
            credits_charged=sum((u.credits_charged for u in group), ZERO),
            average_units=sum(u.total_units for u in group) / len(group)
        )
        for (provider, model), group in grouped.items()
    ]
    # Busiest first, ties broken by name for stable output
    return sorted(stats, key=lambda s: (-s.requests, s.provider, s.model))


def _by_day(records: List[UsageRecord]) -> List[DailyUsageStats]:
    grouped: Dict[date, List[UsageRecord]] = {}
    for record in records:
        grouped.setdefault(record.created_at.date(), []).append(record)

    return [
        DailyUsageStats(
            day=day,
            requests=len(group),
            credits_charged=sum((u.credits_charged for u in group), ZERO),
            units=sum(u.total_units for u in group)
        )
        for day, group in sorted(grouped.items())
    ]


def audit_account(store: LedgerStore, identity: str) -> AuditReport:
    """Replay an account's transactions and compare with its balance.

    ``daily_free`` rows draw on the free allowance only, so they are
    excluded from the balance replay.

    Raises:
        ValueError: If the account does not exist
    """
    account = store.read_account(identity)
    if account is None:
        raise ValueError(f"No credit account for {identity}")

    transactions = store.list_transactions(identity)
    replayed = sum(
        (t.amount for t in transactions if t.type != TransactionType.DAILY_FREE),
        ZERO
    )
    free_units = sum(t.free_units for t in transactions if t.type == TransactionType.DAILY_FREE)

    return AuditReport(
        identity=identity,
        recorded_balance=account.balance,
        replayed_balance=replayed,
        transaction_count=len(transactions),
        free_units_drawn=free_units
    )
