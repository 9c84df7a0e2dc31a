"""
Purchasable credit packages.

Fixed price list for credit packs. Checkout and payment confirmation
happen elsewhere; once a payment clears, the webhook handler grants the
package through ``grant_package`` with the payment's reference.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Union

from credit_ledger.storage.models import TransactionType

from .grants import GrantResult, GrantService

# Nominal value of one credit
CREDIT_VALUE_USD = Decimal("0.10")


@dataclass(frozen=True)
class CreditPackage:
    """A credit pack offered for purchase."""
    id: str
    name: str
    credits: Decimal
    price_usd: Decimal
    description: str

    @property
    def price_per_credit(self) -> Decimal:
        return (self.price_usd / self.credits).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)


CREDIT_PACKAGES = (
    CreditPackage(
        "starter", "Starter Pack", Decimal("100"), Decimal("10.00"),
        "Perfect for getting started"
    ),
    CreditPackage(
        "professional", "Professional Pack", Decimal("500"), Decimal("45.00"),
        "Great for regular use"
    ),
    CreditPackage(
        "business", "Business Pack", Decimal("2000"), Decimal("160.00"),
        "Best value for power users and teams"
    ),
    CreditPackage(
        "enterprise", "Enterprise Pack", Decimal("10000"), Decimal("800.00"),
        "Volume pricing for large organizations"
    ),
)


def get_package(package_id: str) -> CreditPackage:
    """Look up a package by id.

    Raises:
        ValueError: If the package does not exist
    """
    for package in CREDIT_PACKAGES:
        if package.id == package_id:
            return package
    raise ValueError(f"Unknown credit package: {package_id}")


def credits_to_usd(credits: Union[Decimal, int]) -> Decimal:
    """Nominal USD value of a credit amount, rounded to cents."""
    return (Decimal(credits) * CREDIT_VALUE_USD).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def grant_package(grants: GrantService, identity: str, package_id: str, reference: str) -> GrantResult:
    """Credit a paid-for package to an account, at most once per reference."""
    if not reference:
        raise ValueError("reference is required for package purchases")
    package = get_package(package_id)
    return grants.grant(
        identity,
        package.credits,
        TransactionType.PURCHASE,
        reference=reference,
        description=f"{package.name} purchase ({package.credits} credits)"
    )
