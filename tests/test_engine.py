"""
Unit tests for the credit engine entry point.

Runs the full authorize/settle cycle against a SQLite ledger.
"""

import os
import tempfile
from datetime import timedelta
from decimal import Decimal

import pytest

from credit_ledger.config.loader import CreditEngineConfig, Tier
from credit_ledger.core.engine import CreditEngine
from credit_ledger.core.errors import InsufficientCredits
from credit_ledger.core.orchestrator import ConsumptionState
from credit_ledger.core.units import UnitUsage
from credit_ledger.storage.models import TransactionType
from credit_ledger.storage.repository import SQLiteLedgerStore, initialize_schema

from conftest import FrozenClock


class TestCreditEngine:
    """Test the engine facade end to end."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.clock = FrozenClock()
        self.engine = CreditEngine(SQLiteLedgerStore(self.db_path), CreditEngineConfig(), self.clock)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_request_lifecycle(self):
        self.engine.grant("alice", 50, "purchase", "ref1")

        decision = self.engine.authorize("alice", Tier.REGISTERED, "claude", "claude-3-sonnet", UnitUsage(0, 36000))
        assert decision.allowed

        result = self.engine.settle("alice", "claude", "claude-3-sonnet", "req_1", UnitUsage(0, 144000))

        assert result.state == ConsumptionState.SETTLED
        assert result.new_balance == Decimal("48.00")

        view = self.engine.get_balance("alice")
        assert view.balance == Decimal("48.00")
        assert view.daily_free_remaining == 0
        assert view.lifetime_purchased == Decimal("50")
        assert view.lifetime_consumed == Decimal("12.00")

        assert self.engine.get_rate_status("alice", "registered").remaining_hourly == 9
        assert self.engine.audit("alice").balanced

    def test_denied_request(self):
        self.engine.settle("alice", "claude", "claude-3-sonnet", "req_1", UnitUsage(0, 120000))

        decision = self.engine.authorize("alice", "registered", "claude", "claude-3-sonnet", UnitUsage(0, 36000))

        with pytest.raises(InsufficientCredits):
            decision.raise_for_status()

    def test_duplicate_grant(self):
        self.engine.grant("alice", 50, "purchase", "ref1")
        replay = self.engine.grant("alice", 50, "purchase", "ref1")

        assert replay.duplicate
        assert self.engine.get_balance("alice").balance == Decimal("50")

    def test_buy_package(self):
        result = self.engine.buy_package("alice", "business", "cs_live_1")

        assert result.new_balance == Decimal("2000")
        assert self.engine.get_balance("alice").lifetime_purchased == Decimal("2000")

    def test_history_newest_first(self):
        self.engine.grant("alice", 50, "purchase", "ref1")
        self.engine.grant("alice", 5, "bonus")
        self.engine.settle("alice", "claude", "claude-3-sonnet", "req_1", UnitUsage(0, 144000))

        history = self.engine.history("alice")
        assert [t.type for t in history] == [
            TransactionType.CONSUMPTION,
            TransactionType.DAILY_FREE,
            TransactionType.BONUS,
            TransactionType.PURCHASE,
        ]
        assert [t.type for t in self.engine.history("alice", limit=1)] == [TransactionType.CONSUMPTION]
        assert self.engine.history("nobody") == []

    def test_usage_summary(self):
        self.engine.settle("alice", "claude", "claude-3-sonnet", "req_1", UnitUsage(1000, 500))
        self.engine.settle("bob", "claude", "claude-3-sonnet", "req_2", UnitUsage(1000, 500))

        assert self.engine.usage_summary().requests == 2
        assert self.engine.usage_summary(identity="alice").credits_charged == Decimal("0.06")

    def test_sweep_applies_retention(self):
        self.engine.settle("alice", "claude", "claude-3-sonnet", "req_old", UnitUsage(1000, 500))
        self.clock.advance(days=400)
        self.engine.settle("alice", "claude", "claude-3-sonnet", "req_new", UnitUsage(1000, 500))

        deleted = self.engine.sweep()

        # The old hour's rate window and the old usage record
        assert deleted == 2
        assert self.engine.store.get_usage("req_old") is None
        assert self.engine.store.get_usage("req_new") is not None
        # Ledger rows are never swept
        assert len(self.engine.history("alice")) == 2
        assert self.engine.audit("alice").balanced

    def test_free_window_survives_restart(self):
        """A fresh engine over the same database sees the same allowance."""
        self.engine.settle("alice", "claude", "claude-3-sonnet", "req_1", UnitUsage(0, 36000))

        restarted = CreditEngine(SQLiteLedgerStore(self.db_path), CreditEngineConfig(), self.clock)
        assert restarted.get_balance("alice").daily_free_remaining == 7

        self.clock.advance(hours=24, minutes=1)
        view = restarted.get_balance("alice")
        assert view.daily_free_remaining == 10
        assert view.free_window_resets_at == self.clock() - timedelta(minutes=1) + timedelta(hours=24)
