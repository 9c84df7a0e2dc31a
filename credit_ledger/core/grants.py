"""
Credit grants.

Adds purchased, bonus or refunded credits to an account. A grant carrying
an external reference (e.g. a payment provider's charge id) is applied at
most once; replays are no-ops that report the current balance.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional, Union

from credit_ledger.storage.ledger import AccountChange, LedgerStore
from credit_ledger.storage.models import GRANT_TYPES, CreditAccount, Transaction, TransactionType

from .errors import DuplicateRecord
from .ratelimit import utc_now

logger = logging.getLogger(__name__)

_DEFAULT_DESCRIPTIONS = {
    TransactionType.PURCHASE: "Credit purchase",
    TransactionType.BONUS: "Bonus credits",
    TransactionType.REFUND: "Credit refund",
}


@dataclass(frozen=True)
class GrantResult:
    """Outcome of a grant."""
    identity: str
    new_balance: Decimal
    amount: Decimal
    type: TransactionType
    reference: Optional[str] = None
    duplicate: bool = False


class GrantService:
    """Adds credits to accounts through the ledger store."""

    def __init__(self, store: LedgerStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or utc_now

    def grant(
        self,
        identity: str,
        amount: Union[Decimal, int, str],
        type: Union[TransactionType, str] = TransactionType.PURCHASE,
        reference: Optional[str] = None,
        description: Optional[str] = None
    ) -> GrantResult:
        """Add credits to an account.

        Args:
            identity: Account identity
            amount: Positive credit amount
            type: purchase, bonus or refund
            reference: External idempotency reference
            description: Ledger description; defaults per type

        Returns:
            GrantResult with the post-grant balance. A replayed reference
            returns the current balance with ``duplicate=True``.

        Raises:
            ValueError: If identity, amount or type is invalid
            LedgerUnavailable: If the ledger kept conflicting
        """
        if not identity or not identity.strip():
            raise ValueError("identity is required and cannot be empty")

        txn_type = TransactionType(type)
        if txn_type not in GRANT_TYPES:
            raise ValueError(f"Cannot grant credits with transaction type '{txn_type.value}'")

        credits = _parse_amount(amount)
        now = self.clock()

        if reference is not None:
            existing = self.store.find_transaction_by_reference(identity, reference)
            if existing is not None:
                return self._duplicate(identity, existing)

        def mutate(account: CreditAccount) -> AccountChange:
            updated = replace(
                account,
                balance=account.balance + credits,
                lifetime_purchased=(
                    account.lifetime_purchased + credits
                    if txn_type == TransactionType.PURCHASE
                    else account.lifetime_purchased
                ),
                updated_at=now
            )
            txn = Transaction(
                identity=identity,
                type=txn_type,
                amount=credits,
                balance_after=updated.balance,
                description=description or _DEFAULT_DESCRIPTIONS[txn_type],
                created_at=now,
                reference=reference
            )
            return AccountChange(
                account=updated,
                transactions=(txn,),
                result=GrantResult(
                    identity=identity,
                    new_balance=updated.balance,
                    amount=credits,
                    type=txn_type,
                    reference=reference
                )
            )

        try:
            result = self.store.update_account(identity, mutate, now)
        except DuplicateRecord:
            # Lost a race with a concurrent grant carrying the same reference
            if reference is None:
                raise
            existing = self.store.find_transaction_by_reference(identity, reference)
            if existing is None:
                raise
            return self._duplicate(identity, existing)

        logger.info(
            "Granted %s %s credits to %s (balance %s)",
            credits, txn_type.value, identity, result.new_balance
        )
        return result

    def _duplicate(self, identity: str, existing: Transaction) -> GrantResult:
        logger.warning("Duplicate grant reference %s for %s ignored", existing.reference, identity)
        account = self.store.read_account(identity)
        return GrantResult(
            identity=identity,
            new_balance=account.balance,
            amount=existing.amount,
            type=existing.type,
            reference=existing.reference,
            duplicate=True
        )


def _parse_amount(amount: Union[Decimal, int, str]) -> Decimal:
    if isinstance(amount, bool):
        raise ValueError("amount must be a number")
    try:
        credits = Decimal(str(amount))
    except InvalidOperation:
        raise ValueError(f"amount must be a number, got {amount!r}")
    if not credits.is_finite() or credits <= 0:
        raise ValueError("amount must be > 0")
    return credits
