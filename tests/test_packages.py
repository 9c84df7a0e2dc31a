"""
Unit tests for credit packages.
"""

from decimal import Decimal

import pytest

from credit_ledger.core.grants import GrantService
from credit_ledger.core.packages import CREDIT_PACKAGES, credits_to_usd, get_package, grant_package
from credit_ledger.storage.ledger import MemoryLedgerStore
from credit_ledger.storage.models import TransactionType


class TestCreditPackages:
    """Test the package price list."""

    def test_package_lookup(self):
        package = get_package("professional")
        assert package.credits == Decimal("500")
        assert package.price_usd == Decimal("45.00")

    def test_unknown_package_raises(self):
        with pytest.raises(ValueError, match="Unknown credit package: platinum"):
            get_package("platinum")

    def test_larger_packs_are_cheaper_per_credit(self):
        per_credit = [p.price_per_credit for p in CREDIT_PACKAGES]
        assert per_credit == [Decimal("0.1000"), Decimal("0.0900"), Decimal("0.0800"), Decimal("0.0800")]
        assert per_credit == sorted(per_credit, reverse=True)

    def test_credits_to_usd(self):
        assert credits_to_usd(500) == Decimal("50.00")
        assert credits_to_usd(Decimal("0.06")) == Decimal("0.01")


class TestGrantPackage:
    """Test crediting a purchased package."""

    def setup_method(self):
        self.store = MemoryLedgerStore()
        self.grants = GrantService(self.store)

    def test_grant_package_credits_account(self):
        result = grant_package(self.grants, "alice", "starter", "cs_test_123")

        assert result.new_balance == Decimal("100")
        assert result.type == TransactionType.PURCHASE
        [txn] = self.store.list_transactions("alice")
        assert txn.reference == "cs_test_123"
        assert "Starter Pack" in txn.description

    def test_replayed_payment_is_noop(self):
        grant_package(self.grants, "alice", "starter", "cs_test_123")
        replay = grant_package(self.grants, "alice", "starter", "cs_test_123")

        assert replay.duplicate
        assert self.store.read_account("alice").balance == Decimal("100")

    def test_reference_required(self):
        with pytest.raises(ValueError, match="reference is required"):
            grant_package(self.grants, "alice", "starter", "")
