"""
Concurrency tests for the ledger.

Many settlements and grants race on one account; the balance must never
go negative and the transaction log must always replay to it.
"""

import os
import tempfile
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

from credit_ledger.config.loader import CreditEngineConfig
from credit_ledger.core.engine import CreditEngine
from credit_ledger.core.orchestrator import ConsumptionState
from credit_ledger.core.units import UnitUsage
from credit_ledger.storage.ledger import MemoryLedgerStore
from credit_ledger.storage.models import TransactionType
from credit_ledger.storage.repository import SQLiteLedgerStore, initialize_schema

from conftest import START, FrozenClock

# 3.00 and 10.00 credits on claude-3-sonnet
THREE_CREDITS = UnitUsage(0, 36000)
TEN_CREDITS = UnitUsage(0, 120000)
WORKERS = 8


class _ConcurrentLedgerChecks:
    """Race scenarios shared by every store."""

    engine = None
    clock = None

    def _settle(self, ref, units=THREE_CREDITS):
        return self.engine.settle("alice", "claude", "claude-3-sonnet", ref, units)

    def test_parallel_settlements_never_overdraw(self):
        self.engine.grant("alice", 20)

        def settle(i):
            return self.engine.settle("alice", "claude", "claude-3-sonnet", f"req_{i}", THREE_CREDITS)

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            results = list(pool.map(settle, range(20)))

        account = self.engine.store.read_account("alice")
        charged = sum(r.credits_charged for r in results)

        assert account.balance >= 0
        assert account.balance == Decimal("0")
        # 20 paid + 10 free allowance, the rest is recorded shortfall
        assert charged == Decimal("30")
        assert sum(r.shortfall for r in results) == Decimal("30")
        assert account.daily_free_used == 10
        assert self.engine.audit("alice").balanced

    def test_parallel_retries_settle_once(self):
        self.engine.grant("alice", 100)

        def settle(_):
            return self.engine.settle("alice", "claude", "claude-3-sonnet", "req_same", THREE_CREDITS)

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            results = list(pool.map(settle, range(16)))

        assert sum(1 for r in results if not r.duplicate) == 1
        assert len({r.new_balance for r in results}) == 1
        assert len(self.engine.store.list_usage(identity="alice")) == 1
        # Settled from the free allowance; balance untouched
        assert self.engine.store.read_account("alice").balance == Decimal("100")

    def test_parallel_grants_with_same_reference(self):
        def grant(_):
            return self.engine.grant("alice", 50, "purchase", "pay_1")

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            results = list(pool.map(grant, range(16)))

        assert sum(1 for r in results if not r.duplicate) == 1
        assert self.engine.store.read_account("alice").balance == Decimal("50")
        assert len(self.engine.history("alice")) == 1

    def test_mixed_grants_and_settlements(self):
        self.engine.grant("alice", 10)

        def work(i):
            if i % 2:
                return self.engine.grant("alice", 3, "bonus")
            return self.engine.settle("alice", "claude", "claude-3-sonnet", f"req_{i}", THREE_CREDITS)

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            list(pool.map(work, range(20)))

        account = self.engine.store.read_account("alice")
        assert account.balance >= 0
        assert self.engine.audit("alice").balanced

    def test_funded_account_settles_every_request(self):
        self.engine.grant("alice", 1000)

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            results = list(pool.map(lambda i: self._settle(f"req_{i}"), range(40)))

        assert all(r.state == ConsumptionState.SETTLED for r in results)
        assert all(r.shortfall == 0 for r in results)
        # 120 credits: 10 from the allowance, 110 from the balance
        assert self.engine.store.read_account("alice").balance == Decimal("890.00")
        assert len(self.engine.store.list_usage(identity="alice")) == 40
        assert self.engine.audit("alice").balanced

    def test_free_window_resets_once_under_contention(self):
        self.engine.grant("alice", 100)
        self._settle("req_old", TEN_CREDITS)
        self.clock.advance(hours=24)
        reset_at = self.clock()

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            list(pool.map(lambda i: self._settle(f"req_{i}"), range(16)))

        account = self.engine.store.read_account("alice")
        drawn = sum(
            t.free_units for t in self.engine.history("alice", limit=100)
            if t.type == TransactionType.DAILY_FREE and t.created_at >= reset_at
        )

        assert account.daily_free_window_start == START + timedelta(hours=24)
        assert account.daily_free_used == drawn == 10
        # 48 credits after the reset: 10 free, 38 paid
        assert account.balance == Decimal("62.00")
        assert self.engine.audit("alice").balanced


class TestMemoryConcurrency(_ConcurrentLedgerChecks):
    def setup_method(self):
        config = CreditEngineConfig()
        self.clock = FrozenClock()
        self.engine = CreditEngine(MemoryLedgerStore(config.max_attempts), config, self.clock)


class TestSQLiteConcurrency(_ConcurrentLedgerChecks):
    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(db_path)
        config = CreditEngineConfig()
        self.clock = FrozenClock()
        self.engine = CreditEngine(SQLiteLedgerStore(db_path, config.max_attempts), config, self.clock)

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)
