"""
Consumption orchestration.

Authorizes metered requests against rate limits and available credits,
then settles them once the caller reports actual usage.

State flow:
    ESTIMATING -> RATE_CHECKED -> AUTHORIZED -> SETTLING -> SETTLED
with terminal exits DENIED_RATE_LIMIT, DENIED_INSUFFICIENT_CREDITS and
FAILED_UPSTREAM.

Settlement draws on the daily free allowance first, then on the paid
balance. Each source produces its own transaction. If actual usage
outgrew the pre-flight estimate and neither source covers it, the charge
is clamped to what is available and the shortfall is recorded on the
usage record; the balance never goes negative.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import ROUND_CEILING, Decimal
from enum import Enum
from typing import Callable, List, Optional, Union

from credit_ledger.config.loader import CreditEngineConfig, Tier
from credit_ledger.storage.ledger import AccountChange, LedgerStore
from credit_ledger.storage.models import (
    ZERO,
    CreditAccount,
    Transaction,
    TransactionType,
    UsageRecord,
    UsageStatus,
)

from .errors import CreditEngineError, DuplicateRecord, InsufficientCredits, RateLimitExceeded, UpstreamFailed
from .estimator import estimate_credits
from .pricing import ModelPricing
from .ratelimit import RateLimiter, RateStatus, utc_now
from .units import UnitUsage

logger = logging.getLogger(__name__)


class ConsumptionState(Enum):
    """Lifecycle of one metered request."""
    ESTIMATING = "estimating"
    RATE_CHECKED = "rate_checked"
    AUTHORIZED = "authorized"
    SETTLING = "settling"
    SETTLED = "settled"
    DENIED_RATE_LIMIT = "denied_rate_limit"
    DENIED_INSUFFICIENT_CREDITS = "denied_insufficient_credits"
    FAILED_UPSTREAM = "failed_upstream"


@dataclass(frozen=True)
class AuthDecision:
    """Outcome of ``authorize``.

    Denials are returned, not raised; ``error`` carries the typed reason.
    """
    state: ConsumptionState
    identity: str
    provider: str
    model: str
    projected_cost: Decimal
    rate: RateStatus
    available: Optional[Decimal] = None
    error: Optional[CreditEngineError] = None

    @property
    def allowed(self) -> bool:
        return self.state == ConsumptionState.AUTHORIZED

    def raise_for_status(self) -> None:
        """Raise the denial reason, if any."""
        if self.error is not None:
            raise self.error


@dataclass(frozen=True)
class SettleResult:
    """Outcome of ``settle``. ``duplicate`` marks a replayed settlement."""
    state: ConsumptionState
    request_ref: str
    new_balance: Decimal
    credits_charged: Decimal
    credits_computed: Decimal
    daily_free_remaining: int
    shortfall: Decimal = ZERO
    duplicate: bool = False
    error: Optional[CreditEngineError] = None

    @classmethod
    def from_usage(cls, usage: UsageRecord, duplicate: bool = False) -> "SettleResult":
        if usage.status == UsageStatus.COMPLETED:
            state = ConsumptionState.SETTLED
            error = None
        else:
            state = ConsumptionState.FAILED_UPSTREAM
            error = UpstreamFailed(usage.status.value, usage.error_message)
        return cls(
            state=state,
            request_ref=usage.request_ref,
            new_balance=usage.balance_after,
            credits_charged=usage.credits_charged,
            credits_computed=usage.credits_computed,
            daily_free_remaining=usage.daily_free_remaining,
            shortfall=usage.shortfall,
            duplicate=duplicate,
            error=error
        )


@dataclass(frozen=True)
class BalanceView:
    """Read model for an account's spendable credits."""
    identity: str
    balance: Decimal
    daily_free_remaining: int
    lifetime_purchased: Decimal
    lifetime_consumed: Decimal
    free_window_resets_at: datetime


class ConsumptionOrchestrator:
    """Authorize and settle metered requests against the ledger."""

    def __init__(
        self,
        store: LedgerStore,
        config: CreditEngineConfig,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.config = config
        self.clock = clock or utc_now
        self.rate_limiter = rate_limiter or RateLimiter(store, config.tiers, self.clock)

    # Authorization

    def authorize(
        self,
        identity: str,
        tier: Union[Tier, str],
        provider: str,
        model: str,
        predicted_units: UnitUsage
    ) -> AuthDecision:
        """Decide whether a metered request may proceed.

        Raises:
            UnknownModel: If the provider/model has no active pricing
            ValueError: If identity is empty or tier is unknown
        """
        _require(identity, "identity")
        tier = Tier(tier)

        # ESTIMATING
        pricing = self.config.catalog.lookup(provider, model)
        projected = ZERO if pricing.is_free else estimate_credits(predicted_units, pricing)

        # RATE_CHECKED
        rate = self.rate_limiter.check(identity, tier)
        if not rate.allowed:
            return AuthDecision(
                state=ConsumptionState.DENIED_RATE_LIMIT,
                identity=identity,
                provider=provider,
                model=model,
                projected_cost=projected,
                rate=rate,
                error=RateLimitExceeded(rate.reset_at, rate.remaining_hourly, rate.remaining_daily)
            )

        if pricing.is_free:
            logger.debug("Authorized free-tier %s/%s for %s", provider, model, identity)
            return AuthDecision(
                state=ConsumptionState.AUTHORIZED,
                identity=identity,
                provider=provider,
                model=model,
                projected_cost=ZERO,
                rate=rate
            )

        account = self._snapshot(identity, self.clock())
        available = account.balance + account.free_remaining(self.config.daily_free_limit)

        if available < projected:
            logger.warning(
                "Insufficient credits for %s on %s/%s: required %s, available %s",
                identity, provider, model, projected, available
            )
            return AuthDecision(
                state=ConsumptionState.DENIED_INSUFFICIENT_CREDITS,
                identity=identity,
                provider=provider,
                model=model,
                projected_cost=projected,
                rate=rate,
                available=available,
                error=InsufficientCredits(projected, available)
            )

        return AuthDecision(
            state=ConsumptionState.AUTHORIZED,
            identity=identity,
            provider=provider,
            model=model,
            projected_cost=projected,
            rate=rate,
            available=available
        )

    # Settlement

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
        """Finalize a metered request and debit its actual cost.

        Idempotent per ``request_ref``: a repeated call returns the
        original result with ``duplicate=True`` and writes nothing.

        Raises:
            UnknownModel: If the provider/model has no active pricing
            LedgerUnavailable: If the debit kept conflicting
            ValueError: If inputs are invalid or the reference belongs
                to another identity
        """
        _require(identity, "identity")
        _require(request_ref, "request_ref")
        status = UsageStatus(status)

        existing = self._existing_settlement(identity, request_ref)
        if existing is not None:
            return existing

        pricing = self.config.catalog.lookup(provider, model)
        now = self.clock()

        if status != UsageStatus.COMPLETED:
            logger.info(
                "Upstream %s for %s (%s); nothing charged", status.value, identity, request_ref
            )
            return self._record_without_charge(
                identity, pricing, request_ref, actual_units, status,
                now, response_time_ms, error_message
            )

        if pricing.is_free:
            result = self._record_without_charge(
                identity, pricing, request_ref, actual_units, status,
                now, response_time_ms, error_message
            )
        else:
            cost = estimate_credits(actual_units, pricing)

            def mutate(account: CreditAccount) -> AccountChange:
                return self._debit(
                    account, pricing, request_ref, actual_units, cost,
                    now, response_time_ms, error_message
                )

            try:
                result = self.store.update_account(identity, mutate, now)
            except DuplicateRecord:
                duplicate = self._existing_settlement(identity, request_ref)
                if duplicate is None:
                    raise
                return duplicate

        if not result.duplicate:
            self.rate_limiter.record(identity)
        return result

    def _existing_settlement(self, identity: str, request_ref: str) -> Optional[SettleResult]:
        usage = self.store.get_usage(request_ref)
        if usage is None:
            return None
        if usage.identity != identity:
            raise ValueError(f"request_ref {request_ref} belongs to another identity")
        logger.warning("Duplicate settlement for %s (%s); returning original result", identity, request_ref)
        return SettleResult.from_usage(usage, duplicate=True)

    def _record_without_charge(
        self,
        identity: str,
        pricing: ModelPricing,
        request_ref: str,
        units: UnitUsage,
        status: UsageStatus,
        now: datetime,
        response_time_ms: Optional[int],
        error_message: Optional[str]
    ) -> SettleResult:
        account = self._snapshot(identity, now)
        usage = UsageRecord(
            request_ref=request_ref,
            identity=identity,
            provider=pricing.provider,
            model=pricing.model,
            prompt_units=units.prompt_units,
            completion_units=units.completion_units,
            credits_computed=ZERO,
            credits_charged=ZERO,
            status=status,
            balance_after=account.balance,
            daily_free_remaining=account.free_remaining(self.config.daily_free_limit),
            created_at=now,
            response_time_ms=response_time_ms,
            error_message=error_message
        )
        try:
            self.store.append_usage(usage)
        except DuplicateRecord:
            duplicate = self._existing_settlement(identity, request_ref)
            if duplicate is None:
                raise
            return duplicate
        return SettleResult.from_usage(usage)

    def _debit(
        self,
        account: CreditAccount,
        pricing: ModelPricing,
        request_ref: str,
        units: UnitUsage,
        cost: Decimal,
        now: datetime,
        response_time_ms: Optional[int],
        error_message: Optional[str]
    ) -> AccountChange:
        """Compute the two-step debit for one account snapshot.

        Free allowance units are whole; a fractional cost still consumes
        a whole unit, valued at no more than the cost it covers.
        """
        limit = self.config.daily_free_limit
        account = account.roll_free_window(now, self.config.free_window)
        description = f"{pricing.provider} {pricing.model} request"

        free_units = min(account.free_remaining(limit), int(cost.to_integral_value(rounding=ROUND_CEILING)))
        free_credits = min(cost, Decimal(free_units))
        paid_needed = cost - free_credits
        paid_credits = min(paid_needed, account.balance)
        shortfall = paid_needed - paid_credits
        charged = free_credits + paid_credits

        updated = replace(
            account,
            balance=account.balance - paid_credits,
            daily_free_used=account.daily_free_used + free_units,
            lifetime_consumed=account.lifetime_consumed + charged,
            updated_at=now
        )

        transactions: List[Transaction] = []
        if free_units > 0:
            transactions.append(Transaction(
                identity=account.identity,
                type=TransactionType.DAILY_FREE,
                amount=-free_credits,
                balance_after=account.balance,
                description=f"{description} (daily free allowance)",
                created_at=now,
                related_usage_id=request_ref,
                free_units=free_units
            ))
        if paid_credits > 0:
            transactions.append(Transaction(
                identity=account.identity,
                type=TransactionType.CONSUMPTION,
                amount=-paid_credits,
                balance_after=updated.balance,
                description=description,
                created_at=now,
                related_usage_id=request_ref
            ))

        if shortfall > 0:
            logger.warning(
                "Settlement %s for %s short by %s credits (computed %s, charged %s)",
                request_ref, account.identity, shortfall, cost, charged
            )

        usage = UsageRecord(
            request_ref=request_ref,
            identity=account.identity,
            provider=pricing.provider,
            model=pricing.model,
            prompt_units=units.prompt_units,
            completion_units=units.completion_units,
            credits_computed=cost,
            credits_charged=charged,
            status=UsageStatus.COMPLETED,
            balance_after=updated.balance,
            daily_free_remaining=updated.free_remaining(limit),
            created_at=now,
            shortfall=shortfall,
            response_time_ms=response_time_ms,
            error_message=error_message
        )

        return AccountChange(
            account=updated,
            transactions=tuple(transactions),
            usage=usage,
            result=SettleResult.from_usage(usage)
        )

    # Read models

    def get_balance(self, identity: str) -> BalanceView:
        """Spendable credits for an identity, provisioning the account if needed."""
        _require(identity, "identity")
        account = self._snapshot(identity, self.clock())
        return BalanceView(
            identity=identity,
            balance=account.balance,
            daily_free_remaining=account.free_remaining(self.config.daily_free_limit),
            lifetime_purchased=account.lifetime_purchased,
            lifetime_consumed=account.lifetime_consumed,
            free_window_resets_at=account.daily_free_window_start + self.config.free_window
        )

    def get_rate_status(self, identity: str, tier: Union[Tier, str]) -> RateStatus:
        _require(identity, "identity")
        return self.rate_limiter.check(identity, Tier(tier))

    def _snapshot(self, identity: str, now: datetime) -> CreditAccount:
        """Current account with an expired free window reset and persisted."""
        window = self.config.free_window

        def mutate(account: CreditAccount) -> AccountChange:
            rolled = account.roll_free_window(now, window)
            if rolled is not account:
                logger.info("Reset daily free allowance for %s", identity)
            return AccountChange(account=rolled, result=rolled)

        return self.store.update_account(identity, mutate, now)


def _require(value: str, name: str) -> None:
    if not value or not str(value).strip():
        raise ValueError(f"{name} is required and cannot be empty")
