"""
Error taxonomy for the credit engine.

Configuration errors are raised; rate and credit denials are carried on
typed results so the request layer can render a specific message.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional


class CreditEngineError(Exception):
    """Base class for all credit engine errors."""
    code = "CREDIT_ENGINE_ERROR"


class UnknownModel(CreditEngineError):
    """No active pricing entry exists for a provider/model pair."""
    code = "UNKNOWN_MODEL"

    def __init__(self, provider: str, model: str):
        super().__init__(f"No active pricing for {provider}/{model}")
        self.provider = provider
        self.model = model


class RateLimitExceeded(CreditEngineError):
    """The identity has used up its request window."""
    code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, reset_at: datetime, remaining_hourly: int, remaining_daily: Optional[int]):
        super().__init__(f"Rate limit exceeded, resets at {reset_at.isoformat()}")
        self.reset_at = reset_at
        self.remaining_hourly = remaining_hourly
        self.remaining_daily = remaining_daily


class InsufficientCredits(CreditEngineError):
    """Balance plus free allowance does not cover the projected cost."""
    code = "INSUFFICIENT_CREDITS"

    def __init__(self, required: Decimal, available: Decimal):
        super().__init__(f"Insufficient credits: required {required}, available {available}")
        self.required = required
        self.available = available


class UpstreamFailed(CreditEngineError):
    """The metered operation did not complete; nothing was charged."""
    code = "UPSTREAM_FAILED"

    def __init__(self, status: str, message: Optional[str] = None):
        detail = f": {message}" if message else ""
        super().__init__(f"Upstream operation {status}{detail}")
        self.status = status
        self.message = message


class LedgerConflict(CreditEngineError):
    """An account changed between read and compare-and-swap."""
    code = "LEDGER_CONFLICT"

    def __init__(self, identity: str):
        super().__init__(f"Concurrent update on account {identity}")
        self.identity = identity


class LedgerUnavailable(CreditEngineError):
    """The ledger could not complete a mutation within its retry budget."""
    code = "LEDGER_UNAVAILABLE"


class DuplicateRecord(CreditEngineError):
    """A usage request reference or grant reference was already recorded."""
    code = "DUPLICATE_RECORD"

    def __init__(self, key: str):
        super().__init__(f"Record already exists: {key}")
        self.key = key
