"""
Credit engine entry point.

Wires the rate limiter, orchestrator and grant service over one ledger
store and exposes the operations the request layer calls.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional, Union

from credit_ledger.config.loader import CreditEngineConfig, Tier
from credit_ledger.storage.ledger import LedgerStore
from credit_ledger.storage.models import Transaction, TransactionType, UsageStatus

from .analytics import AuditReport, UsageSummary, audit_account, usage_summary
from .grants import GrantResult, GrantService
from .orchestrator import AuthDecision, BalanceView, ConsumptionOrchestrator, SettleResult
from .packages import grant_package
from .ratelimit import RateLimiter, RateStatus, utc_now
from .units import UnitUsage

RATE_WINDOW_RETENTION = timedelta(days=7)
USAGE_RETENTION = timedelta(days=365)


class CreditEngine:
    """Facade over the credit ledger and consumption engine.

    Usage:
        engine = CreditEngine(SQLiteLedgerStore("credits.db"), config)
        decision = engine.authorize(user_id, Tier.REGISTERED, "claude", "claude-3-sonnet", predicted)
        if not decision.allowed:
            ...  # render decision.error
        response = call_provider(...)
        engine.settle(user_id, "claude", "claude-3-sonnet", request_id, actual)
    """

    def __init__(
        self,
        store: LedgerStore,
        config: Optional[CreditEngineConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.config = config or CreditEngineConfig()
        self.clock = clock or utc_now
        self.rate_limiter = RateLimiter(store, self.config.tiers, self.clock)
        self.orchestrator = ConsumptionOrchestrator(store, self.config, self.rate_limiter, self.clock)
        self.grants = GrantService(store, self.clock)

    def authorize(
        self,
        identity: str,
        tier: Union[Tier, str],
        provider: str,
        model: str,
        predicted_units: UnitUsage
    ) -> AuthDecision:
        return self.orchestrator.authorize(identity, tier, provider, model, predicted_units)

    def settle(
        self,
        identity: str,
        provider: str,
        model: str,
        request_ref: str,
        actual_units: UnitUsage,
        status: Union[UsageStatus, str] = UsageStatus.COMPLETED,
        response_time_ms: Optional[int] = None,
        error_message: Optional[str] = None
    ) -> SettleResult:
        return self.orchestrator.settle(
            identity, provider, model, request_ref, actual_units,
            status, response_time_ms, error_message
        )

    def grant(
        self,
        identity: str,
        amount: Union[Decimal, int, str],
        type: Union[TransactionType, str] = TransactionType.PURCHASE,
        reference: Optional[str] = None
    ) -> GrantResult:
        return self.grants.grant(identity, amount, type, reference)

    def buy_package(self, identity: str, package_id: str, reference: str) -> GrantResult:
        return grant_package(self.grants, identity, package_id, reference)

    def get_balance(self, identity: str) -> BalanceView:
        return self.orchestrator.get_balance(identity)

    def get_rate_status(self, identity: str, tier: Union[Tier, str]) -> RateStatus:
        return self.orchestrator.get_rate_status(identity, tier)

    def history(self, identity: str, limit: int = 20) -> List[Transaction]:
        """Most recent transactions, newest first."""
        return list(reversed(self.store.list_transactions(identity, limit=limit)))

    def usage_summary(self, identity: Optional[str] = None, days: int = 30) -> UsageSummary:
        return usage_summary(self.store, self.clock(), identity=identity, days=days)

    def audit(self, identity: str) -> AuditReport:
        return audit_account(self.store, identity)

    def sweep(self) -> int:
        """Delete stale rate windows and old completed usage records."""
        now = self.clock()
        return self.store.sweep(now - RATE_WINDOW_RETENTION, now - USAGE_RETENTION)
