"""
Repository pattern for data access.

SQLite implementation of the ledger store. Amounts are stored as decimal
text so replaying the transaction log is exact; timestamps are stored as
UTC ISO-8601 text with fixed precision so they sort lexically.
"""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterator, List, Optional, Sequence

from credit_ledger.core.errors import DuplicateRecord, LedgerConflict

from .db import DEFAULT_DB_PATH, get_connection
from .ledger import DEFAULT_MAX_ATTEMPTS, AccountChange, LedgerStore
from .models import (
    RATE_WINDOW_LENGTH,
    CreditAccount,
    RateLimitWindow,
    Transaction,
    TransactionType,
    UsageRecord,
    UsageStatus,
)

logger = logging.getLogger(__name__)

_ACCOUNT_COLUMNS = """
    identity, balance, lifetime_purchased, lifetime_consumed,
    daily_free_used, daily_free_window_start, created_at, updated_at, version
"""

_TRANSACTION_COLUMNS = """
    id, identity, type, amount, balance_after, description,
    reference, related_usage_id, free_units, created_at
"""

_USAGE_COLUMNS = """
    request_ref, identity, provider, model, prompt_units, completion_units,
    credits_computed, credits_charged, status, balance_after,
    daily_free_remaining, created_at, shortfall, response_time_ms, error_message
"""


def _ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create ledger tables if they don't exist.

    ``credit_transaction`` and ``usage_record`` are append-only: rows are
    never updated, and only the retention sweep deletes old completed
    usage rows.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS credit_account (
                identity TEXT PRIMARY KEY,
                balance TEXT NOT NULL,
                lifetime_purchased TEXT NOT NULL,
                lifetime_consumed TEXT NOT NULL,
                daily_free_used INTEGER NOT NULL DEFAULT 0 CHECK (daily_free_used >= 0),
                daily_free_window_start TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS credit_transaction (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                identity TEXT NOT NULL REFERENCES credit_account(identity),
                type TEXT NOT NULL CHECK (
                    type IN ('purchase', 'consumption', 'daily_free', 'refund', 'bonus')
                ),
                amount TEXT NOT NULL,
                balance_after TEXT NOT NULL,
                description TEXT NOT NULL,
                reference TEXT,
                related_usage_id TEXT,
                free_units INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_credit_transaction_reference
                ON credit_transaction(identity, reference) WHERE reference IS NOT NULL;
            CREATE INDEX IF NOT EXISTS idx_credit_transaction_identity
                ON credit_transaction(identity, id);

            CREATE TABLE IF NOT EXISTS usage_record (
                request_ref TEXT PRIMARY KEY,
                identity TEXT NOT NULL,
                provider TEXT NOT NULL,
                model TEXT NOT NULL,
                prompt_units INTEGER NOT NULL CHECK (prompt_units >= 0),
                completion_units INTEGER NOT NULL CHECK (completion_units >= 0),
                total_units INTEGER NOT NULL,
                credits_computed TEXT NOT NULL,
                credits_charged TEXT NOT NULL,
                status TEXT NOT NULL CHECK (
                    status IN ('completed', 'failed', 'timeout', 'cancelled')
                ),
                balance_after TEXT NOT NULL,
                daily_free_remaining INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                shortfall TEXT NOT NULL DEFAULT '0',
                response_time_ms INTEGER,
                error_message TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_usage_record_identity
                ON usage_record(identity, created_at);

            CREATE TABLE IF NOT EXISTS rate_limit_window (
                identity TEXT NOT NULL,
                window_start TEXT NOT NULL,
                window_end TEXT NOT NULL,
                request_count INTEGER NOT NULL DEFAULT 0 CHECK (request_count >= 0),
                PRIMARY KEY (identity, window_start)
            );
        """)
    finally:
        conn.close()


class SQLiteLedgerStore(LedgerStore):
    """Ledger store backed by a SQLite file.

    Each operation opens its own connection, so one store instance can be
    shared across threads. Writes run inside ``BEGIN IMMEDIATE`` so the
    version check and the appends commit together. ``update_account``
    holds that lock across the read as well, so same-account writers
    queue instead of conflicting.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
            max_attempts: Retry budget of the optimistic loop; unused by
                the serialized ``update_account``
        """
        self.db_path = db_path
        self.max_attempts = max_attempts

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        conn = get_connection(self.db_path)
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _txn(self) -> Iterator[sqlite3.Connection]:
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    # Accounts

    def read_account(self, identity: str) -> Optional[CreditAccount]:
        with self._read() as conn:
            return _select_account(conn, identity)

    def insert_account(self, account: CreditAccount) -> CreditAccount:
        with self._txn() as conn:
            _insert_account(conn, account)
            return _select_account(conn, account.identity)

    def compare_and_swap_account(
        self,
        expected: CreditAccount,
        updated: CreditAccount,
        transactions: Sequence[Transaction] = (),
        usage: Optional[UsageRecord] = None
    ) -> CreditAccount:
        with self._txn() as conn:
            return _swap_account(conn, expected, updated, transactions, usage)

    def update_account(
        self,
        identity: str,
        mutate: Callable[[CreditAccount], AccountChange],
        now: datetime
    ) -> Any:
        """Run a read-modify-write cycle inside one ``BEGIN IMMEDIATE``.

        The write lock is held from the read to the commit, so writers to
        the same database queue on ``busy_timeout`` and the version check
        cannot fail. A ``mutate`` or ``DuplicateRecord`` error rolls back
        everything, including a freshly provisioned account.

        Raises:
            DuplicateRecord: If an appended row collides with an existing one
        """
        with self._txn() as conn:
            current = _select_account(conn, identity)
            if current is None:
                current = CreditAccount.new(identity, now)
                _insert_account(conn, current)
                logger.info("Provisioned credit account for %s", identity)

            change = mutate(current)
            if change.account == current and not change.transactions and change.usage is None:
                return change.result

            _swap_account(conn, current, change.account, change.transactions, change.usage)
        return change.result

    # Append-only records

    def append_usage(self, usage: UsageRecord) -> None:
        with self._txn() as conn:
            try:
                _insert_usage(conn, usage)
            except sqlite3.IntegrityError as e:
                raise DuplicateRecord(usage.request_ref) from e

    def get_usage(self, request_ref: str) -> Optional[UsageRecord]:
        with self._read() as conn:
            row = conn.execute(
                f"SELECT {_USAGE_COLUMNS} FROM usage_record WHERE request_ref = ?",
                (request_ref,)
            ).fetchone()
        return _row_to_usage(row) if row else None

    def list_usage(
        self,
        identity: Optional[str] = None,
        since: Optional[datetime] = None
    ) -> List[UsageRecord]:
        query = f"SELECT {_USAGE_COLUMNS} FROM usage_record"
        params = []
        conditions = []

        if identity:
            conditions.append("identity = ?")
            params.append(identity)
        if since is not None:
            conditions.append("created_at >= ?")
            params.append(_ts(since))

        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at ASC"

        with self._read() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_usage(row) for row in rows]

    def find_transaction_by_reference(self, identity: str, reference: str) -> Optional[Transaction]:
        with self._read() as conn:
            row = conn.execute(
                f"SELECT {_TRANSACTION_COLUMNS} FROM credit_transaction "
                "WHERE identity = ? AND reference = ?",
                (identity, reference)
            ).fetchone()
        return _row_to_transaction(row) if row else None

    def list_transactions(self, identity: str, limit: Optional[int] = None) -> List[Transaction]:
        query = f"SELECT {_TRANSACTION_COLUMNS} FROM credit_transaction WHERE identity = ? ORDER BY id DESC"
        params = [identity]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._read() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_transaction(row) for row in reversed(rows)]

    # Rate limit windows

    def increment_rate_window(self, identity: str, window_start: datetime) -> RateLimitWindow:
        with self._txn() as conn:
            conn.execute(
                """
                INSERT INTO rate_limit_window (identity, window_start, window_end, request_count)
                VALUES (?, ?, ?, 1)
                ON CONFLICT (identity, window_start)
                DO UPDATE SET request_count = request_count + 1
                """,
                (identity, _ts(window_start), _ts(window_start + RATE_WINDOW_LENGTH))
            )
            row = conn.execute(
                "SELECT request_count FROM rate_limit_window WHERE identity = ? AND window_start = ?",
                (identity, _ts(window_start))
            ).fetchone()
        return RateLimitWindow(identity, window_start, row[0])

    def count_requests(self, identity: str, start: datetime, end: datetime) -> int:
        with self._read() as conn:
            row = conn.execute(
                """
                SELECT COALESCE(SUM(request_count), 0) FROM rate_limit_window
                WHERE identity = ? AND window_start >= ? AND window_start < ?
                """,
                (identity, _ts(start), _ts(end))
            ).fetchone()
        return row[0]

    # Retention

    def sweep(self, rate_cutoff: datetime, usage_cutoff: datetime) -> int:
        with self._txn() as conn:
            deleted = conn.execute(
                "DELETE FROM rate_limit_window WHERE window_end < ?",
                (_ts(rate_cutoff),)
            ).rowcount
            deleted += conn.execute(
                "DELETE FROM usage_record WHERE status = ? AND created_at < ?",
                (UsageStatus.COMPLETED.value, _ts(usage_cutoff))
            ).rowcount
        return deleted


def _select_account(conn: sqlite3.Connection, identity: str) -> Optional[CreditAccount]:
    row = conn.execute(
        f"SELECT {_ACCOUNT_COLUMNS} FROM credit_account WHERE identity = ?",
        (identity,)
    ).fetchone()
    return _row_to_account(row) if row else None


def _insert_account(conn: sqlite3.Connection, account: CreditAccount) -> None:
    conn.execute(
        f"INSERT OR IGNORE INTO credit_account ({_ACCOUNT_COLUMNS}) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
        _account_params(account)
    )


def _swap_account(
    conn: sqlite3.Connection,
    expected: CreditAccount,
    updated: CreditAccount,
    transactions: Sequence[Transaction],
    usage: Optional[UsageRecord]
) -> CreditAccount:
    """Version-checked account update plus appends on an open transaction."""
    new_version = expected.version + 1
    cursor = conn.execute(
        """
        UPDATE credit_account
        SET balance = ?, lifetime_purchased = ?, lifetime_consumed = ?,
            daily_free_used = ?, daily_free_window_start = ?,
            updated_at = ?, version = ?
        WHERE identity = ? AND version = ?
        """,
        (
            str(updated.balance),
            str(updated.lifetime_purchased),
            str(updated.lifetime_consumed),
            updated.daily_free_used,
            _ts(updated.daily_free_window_start),
            _ts(updated.updated_at),
            new_version,
            expected.identity,
            expected.version
        )
    )
    if cursor.rowcount == 0:
        raise LedgerConflict(expected.identity)

    try:
        for txn in transactions:
            _insert_transaction(conn, txn)
        if usage is not None:
            _insert_usage(conn, usage)
    except sqlite3.IntegrityError as e:
        raise DuplicateRecord(str(e)) from e

    return replace(updated, version=new_version)


def _account_params(account: CreditAccount) -> tuple:
    return (
        account.identity,
        str(account.balance),
        str(account.lifetime_purchased),
        str(account.lifetime_consumed),
        account.daily_free_used,
        _ts(account.daily_free_window_start),
        _ts(account.created_at),
        _ts(account.updated_at),
        account.version
    )


def _row_to_account(row) -> CreditAccount:
    return CreditAccount(
        identity=row[0],
        balance=Decimal(row[1]),
        lifetime_purchased=Decimal(row[2]),
        lifetime_consumed=Decimal(row[3]),
        daily_free_used=row[4],
        daily_free_window_start=_parse_ts(row[5]),
        created_at=_parse_ts(row[6]),
        updated_at=_parse_ts(row[7]),
        version=row[8]
    )


def _insert_transaction(conn: sqlite3.Connection, txn: Transaction) -> None:
    conn.execute(
        """
        INSERT INTO credit_transaction
        (identity, type, amount, balance_after, description,
         reference, related_usage_id, free_units, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            txn.identity,
            txn.type.value,
            str(txn.amount),
            str(txn.balance_after),
            txn.description,
            txn.reference,
            txn.related_usage_id,
            txn.free_units,
            _ts(txn.created_at)
        )
    )


def _row_to_transaction(row) -> Transaction:
    return Transaction(
        id=row[0],
        identity=row[1],
        type=TransactionType(row[2]),
        amount=Decimal(row[3]),
        balance_after=Decimal(row[4]),
        description=row[5],
        reference=row[6],
        related_usage_id=row[7],
        free_units=row[8],
        created_at=_parse_ts(row[9])
    )


def _insert_usage(conn: sqlite3.Connection, usage: UsageRecord) -> None:
    conn.execute(
        """
        INSERT INTO usage_record
        (request_ref, identity, provider, model, prompt_units, completion_units,
         total_units, credits_computed, credits_charged, status, balance_after,
         daily_free_remaining, created_at, shortfall, response_time_ms, error_message)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            usage.request_ref,
            usage.identity,
            usage.provider,
            usage.model,
            usage.prompt_units,
            usage.completion_units,
            usage.total_units,
            str(usage.credits_computed),
            str(usage.credits_charged),
            usage.status.value,
            str(usage.balance_after),
            usage.daily_free_remaining,
            _ts(usage.created_at),
            str(usage.shortfall),
            usage.response_time_ms,
            usage.error_message
        )
    )


def _row_to_usage(row) -> UsageRecord:
    return UsageRecord(
        request_ref=row[0],
        identity=row[1],
        provider=row[2],
        model=row[3],
        prompt_units=row[4],
        completion_units=row[5],
        credits_computed=Decimal(row[6]),
        credits_charged=Decimal(row[7]),
        status=UsageStatus(row[8]),
        balance_after=Decimal(row[9]),
        daily_free_remaining=row[10],
        created_at=_parse_ts(row[11]),
        shortfall=Decimal(row[12]),
        response_time_ms=row[13],
        error_message=row[14]
    )
