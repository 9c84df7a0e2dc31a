"""
Ledger store interface.

Storage-agnostic capability set for credit accounts, the transaction log,
usage records and rate limit windows. Account mutations are optimistic:
read a snapshot, compute the new state, swap it in only if the stored
version is unchanged, retry on conflict.
"""

import itertools
import logging
import random
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from credit_ledger.core.errors import DuplicateRecord, LedgerConflict, LedgerUnavailable

from .models import CreditAccount, RateLimitWindow, Transaction, UsageRecord, UsageStatus

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
# Upper bound in seconds of the first retry delay; grows linearly per attempt
CONFLICT_BACKOFF = 0.002


@dataclass(frozen=True)
class AccountChange:
    """Outcome of an account mutation function.

    ``account`` is the desired new state. ``transactions`` and ``usage``
    are committed atomically with the swap. ``result`` is handed back to
    the caller of ``update_account``.
    """
    account: CreditAccount
    transactions: Tuple[Transaction, ...] = ()
    usage: Optional[UsageRecord] = None
    result: Any = None


class LedgerStore(ABC):
    """Abstract ledger store.

    Implementations must make ``compare_and_swap_account`` atomic per
    account and ``increment_rate_window`` atomic per window. Distinct
    identities never contend.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    # Accounts

    @abstractmethod
    def read_account(self, identity: str) -> Optional[CreditAccount]:
        """Current snapshot of an account, or None if never provisioned."""

    @abstractmethod
    def insert_account(self, account: CreditAccount) -> CreditAccount:
        """Insert an account if absent; return whatever is stored."""

    @abstractmethod
    def compare_and_swap_account(
        self,
        expected: CreditAccount,
        updated: CreditAccount,
        transactions: Sequence[Transaction] = (),
        usage: Optional[UsageRecord] = None
    ) -> CreditAccount:
        """Swap in ``updated`` if the stored version still equals ``expected.version``.

        Appends ``transactions`` and ``usage`` in the same atomic unit.

        Returns:
            The stored account with its bumped version

        Raises:
            LedgerConflict: If the account changed since ``expected`` was read
            DuplicateRecord: If the usage reference or a grant reference exists
        """

    # Append-only records

    @abstractmethod
    def append_usage(self, usage: UsageRecord) -> None:
        """Record a usage attempt that moved no money.

        Raises:
            DuplicateRecord: If the request reference was already recorded
        """

    @abstractmethod
    def get_usage(self, request_ref: str) -> Optional[UsageRecord]:
        """Usage record for a request reference."""

    @abstractmethod
    def list_usage(
        self,
        identity: Optional[str] = None,
        since: Optional[datetime] = None
    ) -> List[UsageRecord]:
        """Usage records oldest first, optionally filtered."""

    @abstractmethod
    def find_transaction_by_reference(self, identity: str, reference: str) -> Optional[Transaction]:
        """Transaction carrying an external reference, e.g. a payment id."""

    @abstractmethod
    def list_transactions(self, identity: str, limit: Optional[int] = None) -> List[Transaction]:
        """Transactions for an identity in creation order.

        With ``limit``, only the most recent ``limit`` rows are returned
        (still oldest first).
        """

    # Rate limit windows

    @abstractmethod
    def increment_rate_window(self, identity: str, window_start: datetime) -> RateLimitWindow:
        """Atomically create-or-increment a window counter."""

    @abstractmethod
    def count_requests(self, identity: str, start: datetime, end: datetime) -> int:
        """Sum of window counters with ``start <= window_start < end``."""

    # Retention

    @abstractmethod
    def sweep(self, rate_cutoff: datetime, usage_cutoff: datetime) -> int:
        """Delete rate windows ending before ``rate_cutoff`` and completed
        usage older than ``usage_cutoff``. Returns the deleted row count."""

    # Composite operations

    def get_or_create_account(self, identity: str, now: datetime) -> CreditAccount:
        account = self.read_account(identity)
        if account is None:
            account = self.insert_account(CreditAccount.new(identity, now))
            logger.info("Provisioned credit account for %s", identity)
        return account

    def update_account(
        self,
        identity: str,
        mutate: Callable[[CreditAccount], AccountChange],
        now: datetime
    ) -> Any:
        """Run a read-modify-write cycle with bounded, jittered conflict retries.

        ``mutate`` must be a pure function of the snapshot it receives;
        it is called again on every retry.

        Raises:
            LedgerUnavailable: If every attempt conflicted
            DuplicateRecord: Propagated from the store
        """
        for attempt in range(1, self.max_attempts + 1):
            current = self.get_or_create_account(identity, now)
            change = mutate(current)

            if change.account == current and not change.transactions and change.usage is None:
                return change.result

            try:
                self.compare_and_swap_account(current, change.account, change.transactions, change.usage)
            except LedgerConflict:
                logger.warning(
                    "Ledger conflict on %s (attempt %d/%d)", identity, attempt, self.max_attempts
                )
                if attempt < self.max_attempts:
                    time.sleep(random.uniform(0, CONFLICT_BACKOFF * attempt))
                continue
            return change.result

        logger.error("Ledger conflicts exhausted %d attempts for %s", self.max_attempts, identity)
        raise LedgerUnavailable(
            f"Account {identity} could not be updated after {self.max_attempts} attempts"
        )


class MemoryLedgerStore(LedgerStore):
    """Thread-safe in-process ledger store for tests and embedding."""

    def __init__(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self.max_attempts = max_attempts
        self._accounts: Dict[str, CreditAccount] = {}
        self._transactions: List[Transaction] = []
        self._usage: Dict[str, UsageRecord] = {}
        self._windows: Dict[Tuple[str, datetime], int] = {}
        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    def read_account(self, identity: str) -> Optional[CreditAccount]:
        with self._lock:
            return self._accounts.get(identity)

    def insert_account(self, account: CreditAccount) -> CreditAccount:
        with self._lock:
            return self._accounts.setdefault(account.identity, account)

    def compare_and_swap_account(
        self,
        expected: CreditAccount,
        updated: CreditAccount,
        transactions: Sequence[Transaction] = (),
        usage: Optional[UsageRecord] = None
    ) -> CreditAccount:
        with self._lock:
            stored = self._accounts.get(expected.identity)
            if stored is None or stored.version != expected.version:
                raise LedgerConflict(expected.identity)

            if usage is not None and usage.request_ref in self._usage:
                raise DuplicateRecord(usage.request_ref)
            for txn in transactions:
                if txn.reference is not None and self._find_reference(txn.identity, txn.reference):
                    raise DuplicateRecord(txn.reference)

            swapped = replace(updated, version=expected.version + 1)
            self._accounts[expected.identity] = swapped
            for txn in transactions:
                self._transactions.append(replace(txn, id=next(self._ids)))
            if usage is not None:
                self._usage[usage.request_ref] = usage
            return swapped

    def append_usage(self, usage: UsageRecord) -> None:
        with self._lock:
            if usage.request_ref in self._usage:
                raise DuplicateRecord(usage.request_ref)
            self._usage[usage.request_ref] = usage

    def get_usage(self, request_ref: str) -> Optional[UsageRecord]:
        with self._lock:
            return self._usage.get(request_ref)

    def list_usage(
        self,
        identity: Optional[str] = None,
        since: Optional[datetime] = None
    ) -> List[UsageRecord]:
        with self._lock:
            records = [
                u for u in self._usage.values()
                if (identity is None or u.identity == identity)
                and (since is None or u.created_at >= since)
            ]
        return sorted(records, key=lambda u: u.created_at)

    def find_transaction_by_reference(self, identity: str, reference: str) -> Optional[Transaction]:
        with self._lock:
            return self._find_reference(identity, reference)

    def _find_reference(self, identity: str, reference: str) -> Optional[Transaction]:
        for txn in self._transactions:
            if txn.identity == identity and txn.reference == reference:
                return txn
        return None

    def list_transactions(self, identity: str, limit: Optional[int] = None) -> List[Transaction]:
        with self._lock:
            rows = [t for t in self._transactions if t.identity == identity]
        if limit is not None:
            rows = rows[-limit:] if limit > 0 else []
        return rows

    def increment_rate_window(self, identity: str, window_start: datetime) -> RateLimitWindow:
        with self._lock:
            key = (identity, window_start)
            self._windows[key] = self._windows.get(key, 0) + 1
            return RateLimitWindow(identity, window_start, self._windows[key])

    def count_requests(self, identity: str, start: datetime, end: datetime) -> int:
        with self._lock:
            return sum(
                count for (ident, window_start), count in self._windows.items()
                if ident == identity and start <= window_start < end
            )

    def sweep(self, rate_cutoff: datetime, usage_cutoff: datetime) -> int:
        with self._lock:
            stale_windows = [
                key for key in self._windows
                if RateLimitWindow(key[0], key[1]).window_end < rate_cutoff
            ]
            for key in stale_windows:
                del self._windows[key]

            stale_usage = [
                ref for ref, u in self._usage.items()
                if u.status == UsageStatus.COMPLETED and u.created_at < usage_cutoff
            ]
            for ref in stale_usage:
                del self._usage[ref]

            return len(stale_windows) + len(stale_usage)
