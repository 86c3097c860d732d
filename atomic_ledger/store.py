"""
Ledger Store Module

Provides the scoped-transaction interface the transfer protocol runs against,
with implementations for in-memory (testing), SQLite (local development) and
PostgreSQL/CockroachDB (production). All monetary values are Decimal.

Backends translate their native errors into three classes:
RetryableStoreError (the store aborted the transaction, rerun it),
StoreUnavailableError (the store cannot serve the request) and StoreError
(anything else).
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Set, Union
from pathlib import Path
from urllib.parse import urlparse
import itertools
import sqlite3
import threading

from .errors import StoreError, RetryableStoreError, StoreUnavailableError
from .logging_config import get_logger
from .models import Account, LedgerEntry, to_money


logger = get_logger("atomic_ledger.store")


class LedgerTransaction(ABC):
    """One open transaction against the accounts and transactions tables"""

    @abstractmethod
    def get_balance(self, account_id: int) -> Optional[Decimal]:
        """Read an account balance; None if the account does not exist"""
        pass

    @abstractmethod
    def apply_delta(self, account_id: int, delta: Decimal) -> Optional[Decimal]:
        """Add delta to an account balance; returns the new balance, None if missing"""
        pass

    @abstractmethod
    def insert_entry(self, from_id: int, to_id: int, amount: Decimal) -> LedgerEntry:
        """Append a ledger entry"""
        pass

    @abstractmethod
    def commit(self) -> None:
        pass

    @abstractmethod
    def rollback(self) -> None:
        pass

    def close(self) -> None:
        """Release resources held by the transaction (default no-op)"""
        pass


class LedgerStore(ABC):
    """Abstract interface for ledger storage backends"""

    @abstractmethod
    def _begin(self) -> LedgerTransaction:
        """Open a new transaction"""
        pass

    @contextmanager
    def transaction(self) -> Iterator[LedgerTransaction]:
        """
        Scoped transaction: commits on clean exit, rolls back on any exception
        (cancellation and KeyboardInterrupt included) and always releases the
        underlying connection.
        """
        tx = self._begin()
        try:
            try:
                yield tx
            except BaseException:
                self._safe_rollback(tx)
                raise
            try:
                tx.commit()
            except BaseException:
                self._safe_rollback(tx)
                raise
        finally:
            tx.close()

    @staticmethod
    def _safe_rollback(tx: LedgerTransaction) -> None:
        # Rollback errors must not mask the exception in flight
        try:
            tx.rollback()
        except Exception:
            logger.warning("Rollback failed", exc_info=True)

    @abstractmethod
    def create_schema(self) -> None:
        """Create the accounts and transactions tables if missing"""
        pass

    @abstractmethod
    def create_account(self, balance: Decimal) -> Account:
        """Insert an account with an opening balance"""
        pass

    @abstractmethod
    def get_account(self, account_id: int) -> Optional[Account]:
        pass

    @abstractmethod
    def list_accounts(self) -> List[Account]:
        """All accounts ordered by id"""
        pass

    @abstractmethod
    def recent_entries(self, limit: int = 20) -> List[LedgerEntry]:
        """Most recent ledger entries, newest first"""
        pass

    def total_balance(self) -> Decimal:
        """Sum of all balances"""
        return sum((a.balance for a in self.list_accounts()), Decimal("0.00"))

    def close(self) -> None:
        """Close storage connections (default no-op)"""
        pass


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

@dataclass
class _Row:
    balance: Decimal
    version: int = 0


class InMemoryTransaction(LedgerTransaction):
    """
    Optimistic transaction over InMemoryLedgerStore.

    Reads record the row version they observed; writes are buffered. Commit
    validates that none of the touched rows changed since they were first
    observed (first committer wins) and raises RetryableStoreError otherwise,
    which is how a serializable distributed store reports contention.
    """

    def __init__(self, store: 'InMemoryLedgerStore'):
        self._store = store
        self._observed: Dict[int, int] = {}
        self._writes: Dict[int, Decimal] = {}
        self._entries: List[LedgerEntry] = []
        self._done = False

    def _check_open(self) -> None:
        if self._done:
            raise StoreError("Transaction already finished")

    def _read(self, account_id: int) -> Optional[Decimal]:
        if account_id in self._writes:
            return self._writes[account_id]
        with self._store._lock:
            row = self._store._accounts.get(account_id)
            if row is None:
                return None
            self._observed.setdefault(account_id, row.version)
            return row.balance

    def get_balance(self, account_id: int) -> Optional[Decimal]:
        self._check_open()
        return self._read(account_id)

    def apply_delta(self, account_id: int, delta: Decimal) -> Optional[Decimal]:
        self._check_open()
        current = self._read(account_id)
        if current is None:
            return None
        new_balance = to_money(current + delta)
        if new_balance < 0:
            raise StoreError(
                f"CHECK constraint violated: balance of account {account_id} would be negative"
            )
        self._writes[account_id] = new_balance
        return new_balance

    def insert_entry(self, from_id: int, to_id: int, amount: Decimal) -> LedgerEntry:
        self._check_open()
        for account_id in (from_id, to_id):
            if self._read(account_id) is None:
                raise StoreError(f"Foreign key violation: account {account_id} does not exist")
        if amount <= 0:
            raise StoreError("CHECK constraint violated: amount must be positive")
        entry = LedgerEntry(
            id=next(self._store._entry_ids),
            from_id=from_id,
            to_id=to_id,
            amount=to_money(amount),
            created_at=datetime.now(timezone.utc),
        )
        self._entries.append(entry)
        return entry

    def commit(self) -> None:
        self._check_open()
        store = self._store
        with store._lock:
            self._done = True
            if store._cluster is not None and not store._cluster.has_quorum():
                raise StoreUnavailableError("Lost quorum: too many replicas are down")
            for account_id, version in self._observed.items():
                row = store._accounts.get(account_id)
                if row is None or row.version != version:
                    raise RetryableStoreError(
                        f"restart transaction: serialization failure on account {account_id}"
                    )
            for account_id, balance in self._writes.items():
                row = store._accounts[account_id]
                row.balance = balance
                row.version += 1
            store._entries.extend(self._entries)

    def rollback(self) -> None:
        self._done = True
        self._writes.clear()
        self._entries.clear()


class InMemoryLedgerStore(LedgerStore):
    """In-memory ledger store for testing. Thread-safe."""

    def __init__(self, cluster=None):
        """
        Args:
            cluster: optional object exposing has_quorum(); commits fail with
                StoreUnavailableError while it reports no quorum
        """
        self._accounts: Dict[int, _Row] = {}
        self._entries: List[LedgerEntry] = []
        self._account_ids = itertools.count(1)
        self._entry_ids = itertools.count(1)
        self._lock = threading.RLock()
        self._cluster = cluster

    def _begin(self) -> LedgerTransaction:
        return InMemoryTransaction(self)

    def create_schema(self) -> None:
        pass

    def create_account(self, balance: Decimal) -> Account:
        balance = to_money(balance)
        if balance < 0:
            raise StoreError("CHECK constraint violated: balance must not be negative")
        with self._lock:
            account_id = next(self._account_ids)
            self._accounts[account_id] = _Row(balance)
            return Account(account_id, balance)

    def get_account(self, account_id: int) -> Optional[Account]:
        with self._lock:
            row = self._accounts.get(account_id)
            return Account(account_id, row.balance) if row else None

    def list_accounts(self) -> List[Account]:
        with self._lock:
            return [Account(i, row.balance) for i, row in sorted(self._accounts.items())]

    def recent_entries(self, limit: int = 20) -> List[LedgerEntry]:
        with self._lock:
            return list(reversed(self._entries))[:limit]


# ---------------------------------------------------------------------------
# SQLite
# ---------------------------------------------------------------------------

SQLITE_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        balance TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transactions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        from_id INTEGER NOT NULL REFERENCES accounts(id),
        to_id INTEGER NOT NULL REFERENCES accounts(id),
        amount TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_transactions_created_at ON transactions(created_at)",
)


def _classify_sqlite_error(exc: sqlite3.Error) -> StoreError:
    message = str(exc).lower()
    if isinstance(exc, sqlite3.OperationalError) and ("locked" in message or "busy" in message):
        return RetryableStoreError(str(exc))
    return StoreError(str(exc))


class SQLiteTransaction(LedgerTransaction):
    """Write transaction on a dedicated SQLite connection"""

    def __init__(self, connection: sqlite3.Connection):
        self._connection = connection
        self._execute("BEGIN IMMEDIATE")

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._connection.execute(sql, params)
        except sqlite3.Error as exc:
            raise _classify_sqlite_error(exc) from exc

    def get_balance(self, account_id: int) -> Optional[Decimal]:
        row = self._execute("SELECT balance FROM accounts WHERE id = ?", (account_id,)).fetchone()
        return Decimal(row[0]) if row else None

    def apply_delta(self, account_id: int, delta: Decimal) -> Optional[Decimal]:
        # SQLite has no exact decimal type; arithmetic happens here under the write lock
        current = self.get_balance(account_id)
        if current is None:
            return None
        new_balance = to_money(current + delta)
        if new_balance < 0:
            raise StoreError(
                f"CHECK constraint violated: balance of account {account_id} would be negative"
            )
        self._execute(
            "UPDATE accounts SET balance = ? WHERE id = ?", (str(new_balance), account_id)
        )
        return new_balance

    def insert_entry(self, from_id: int, to_id: int, amount: Decimal) -> LedgerEntry:
        created_at = datetime.now(timezone.utc)
        amount = to_money(amount)
        cursor = self._execute(
            "INSERT INTO transactions (from_id, to_id, amount, created_at) VALUES (?, ?, ?, ?)",
            (from_id, to_id, str(amount), created_at.isoformat()),
        )
        return LedgerEntry(cursor.lastrowid, from_id, to_id, amount, created_at)

    def commit(self) -> None:
        self._execute("COMMIT")

    def rollback(self) -> None:
        if self._connection.in_transaction:
            self._execute("ROLLBACK")

    def close(self) -> None:
        self._connection.close()


class SQLiteLedgerStore(LedgerStore):
    """SQLite ledger store; each transaction gets its own connection"""

    def __init__(self, db_path: Union[str, Path], busy_timeout: float = 5.0):
        self.db_path = str(db_path)
        self.busy_timeout = busy_timeout
        self._uri = False
        self._anchor = None
        if self.db_path == ":memory:":
            # Named shared-cache database kept alive by an anchor connection
            self.db_path = f"file:atomic_ledger_{id(self)}?mode=memory&cache=shared"
            self._uri = True
            self._anchor = self._connect()

    def _connect(self) -> sqlite3.Connection:
        try:
            connection = sqlite3.connect(
                self.db_path,
                timeout=self.busy_timeout,
                isolation_level=None,  # transactions are issued explicitly
                check_same_thread=False,
                uri=self._uri,
            )
            connection.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error as exc:
            raise StoreUnavailableError(str(exc)) from exc
        return connection

    def _begin(self) -> LedgerTransaction:
        connection = self._connect()
        try:
            return SQLiteTransaction(connection)
        except Exception:
            connection.close()
            raise

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        connection = self._connect()
        try:
            yield connection
        except sqlite3.Error as exc:
            raise _classify_sqlite_error(exc) from exc
        finally:
            connection.close()

    def create_schema(self) -> None:
        with self._reader() as connection:
            for statement in SQLITE_SCHEMA:
                connection.execute(statement)

    def create_account(self, balance: Decimal) -> Account:
        balance = to_money(balance)
        if balance < 0:
            raise StoreError("CHECK constraint violated: balance must not be negative")
        with self._reader() as connection:
            cursor = connection.execute(
                "INSERT INTO accounts (balance) VALUES (?)", (str(balance),)
            )
            return Account(cursor.lastrowid, balance)

    def get_account(self, account_id: int) -> Optional[Account]:
        with self._reader() as connection:
            row = connection.execute(
                "SELECT id, balance FROM accounts WHERE id = ?", (account_id,)
            ).fetchone()
            return Account(row[0], Decimal(row[1])) if row else None

    def list_accounts(self) -> List[Account]:
        with self._reader() as connection:
            rows = connection.execute("SELECT id, balance FROM accounts ORDER BY id").fetchall()
            return [Account(r[0], Decimal(r[1])) for r in rows]

    def recent_entries(self, limit: int = 20) -> List[LedgerEntry]:
        with self._reader() as connection:
            rows = connection.execute(
                """
                SELECT id, from_id, to_id, amount, created_at FROM transactions
                ORDER BY created_at DESC, id DESC LIMIT ?
                """,
                (limit,),
            ).fetchall()
            return [
                LedgerEntry(r[0], r[1], r[2], Decimal(r[3]), datetime.fromisoformat(r[4]))
                for r in rows
            ]

    def close(self) -> None:
        if self._anchor is not None:
            self._anchor.close()
            self._anchor = None


# ---------------------------------------------------------------------------
# PostgreSQL / CockroachDB
# ---------------------------------------------------------------------------

POSTGRES_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id BIGSERIAL PRIMARY KEY,
        balance DECIMAL(19, 2) NOT NULL CHECK (balance >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transactions (
        id BIGSERIAL PRIMARY KEY,
        from_id BIGINT NOT NULL REFERENCES accounts(id),
        to_id BIGINT NOT NULL REFERENCES accounts(id),
        amount DECIMAL(19, 2) NOT NULL CHECK (amount > 0),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_transactions_created_at ON transactions(created_at)",
)

# SQLSTATE codes after which rerunning the whole transaction is safe
RETRYABLE_SQLSTATES: Set[str] = {
    "40001",  # serialization_failure (CockroachDB restart transaction)
    "40P01",  # deadlock_detected
}
UNAVAILABLE_SQLSTATES: Set[str] = {
    "57014",  # query_canceled (statement_timeout)
    "57P01",  # admin_shutdown
    "57P03",  # cannot_connect_now
}


def classify_postgres_error(exc: Exception, committing: bool = False) -> StoreError:
    """
    Map a psycopg2 error onto the store error classes.

    A connection dropped mid-transaction is retryable: nothing was committed.
    A connection dropped during COMMIT is not, because the outcome is unknown
    (CockroachDB reports this as 40003 statement_completion_unknown).
    """
    import psycopg2

    pgcode = getattr(exc, "pgcode", None)
    if pgcode in RETRYABLE_SQLSTATES:
        return RetryableStoreError(str(exc))
    if pgcode in UNAVAILABLE_SQLSTATES:
        return StoreUnavailableError(str(exc))
    if pgcode is None and isinstance(exc, (psycopg2.OperationalError, psycopg2.InterfaceError)):
        if committing:
            return StoreError(f"Commit outcome unknown: {exc}")
        return RetryableStoreError(str(exc))
    return StoreError(str(exc))


class PostgreSQLTransaction(LedgerTransaction):
    """SERIALIZABLE transaction on a pooled psycopg2 connection"""

    def __init__(self, store: 'PostgreSQLLedgerStore', connection):
        self._store = store
        self._connection = connection
        self._broken = False

    @contextmanager
    def cursor(self):
        """Cursor on this transaction's connection; driver errors are classified"""
        cursor = self._connection.cursor()
        try:
            yield cursor
        except self._store.psycopg2.Error as exc:
            self._broken = self._connection.closed != 0
            raise classify_postgres_error(exc) from exc
        finally:
            cursor.close()

    def _execute(self, sql: str, params: tuple = ()):
        with self.cursor() as cursor:
            cursor.execute(sql, params)
            return cursor.fetchone() if cursor.description else None

    def get_balance(self, account_id: int) -> Optional[Decimal]:
        # FOR UPDATE makes concurrent transfers from the same account queue
        # instead of aborting at commit
        row = self._execute("SELECT balance FROM accounts WHERE id = %s FOR UPDATE", (account_id,))
        return Decimal(row[0]) if row else None

    def apply_delta(self, account_id: int, delta: Decimal) -> Optional[Decimal]:
        row = self._execute(
            "UPDATE accounts SET balance = balance + %s WHERE id = %s RETURNING balance",
            (delta, account_id),
        )
        return Decimal(row[0]) if row else None

    def insert_entry(self, from_id: int, to_id: int, amount: Decimal) -> LedgerEntry:
        row = self._execute(
            """
            INSERT INTO transactions (from_id, to_id, amount) VALUES (%s, %s, %s)
            RETURNING id, from_id, to_id, amount, created_at
            """,
            (from_id, to_id, amount),
        )
        return LedgerEntry(row[0], row[1], row[2], Decimal(row[3]), row[4])

    def commit(self) -> None:
        try:
            self._connection.commit()
        except self._store.psycopg2.Error as exc:
            self._broken = self._connection.closed != 0
            raise classify_postgres_error(exc, committing=True) from exc

    def rollback(self) -> None:
        if self._connection.closed:
            self._broken = True
            return
        self._connection.rollback()

    def close(self) -> None:
        self._store._pool.putconn(self._connection, close=self._broken)


class PostgreSQLLedgerStore(LedgerStore):
    """PostgreSQL/CockroachDB ledger store with a threaded connection pool"""

    def __init__(self, connection_string: str, min_connections: int = 1,
                 max_connections: int = 10, connect_timeout: int = 5,
                 statement_timeout_ms: int = 5000):
        try:
            import psycopg2
            import psycopg2.extensions
            import psycopg2.pool
            self.psycopg2 = psycopg2
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        try:
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                min_connections,
                max_connections,
                connection_string,
                connect_timeout=connect_timeout,
                options=f"-c statement_timeout={statement_timeout_ms}",
            )
        except psycopg2.Error as exc:
            raise StoreUnavailableError(f"Could not connect to database: {exc}") from exc
        self._isolation = psycopg2.extensions.ISOLATION_LEVEL_SERIALIZABLE

    def _getconn(self):
        try:
            connection = self._pool.getconn()
        except self.psycopg2.pool.PoolError as exc:
            raise StoreUnavailableError(f"Connection pool exhausted: {exc}") from exc
        except self.psycopg2.Error as exc:
            raise StoreUnavailableError(f"Could not connect to database: {exc}") from exc
        try:
            connection.set_session(isolation_level=self._isolation, autocommit=False)
        except self.psycopg2.Error as exc:
            self._pool.putconn(connection, close=True)
            raise classify_postgres_error(exc) from exc
        return connection

    def _begin(self) -> LedgerTransaction:
        return PostgreSQLTransaction(self, self._getconn())

    @contextmanager
    def _cursor(self):
        with self.transaction() as tx, tx.cursor() as cursor:
            yield cursor

    def create_schema(self) -> None:
        with self._cursor() as cursor:
            for statement in POSTGRES_SCHEMA:
                cursor.execute(statement)

    def create_account(self, balance: Decimal) -> Account:
        with self._cursor() as cursor:
            cursor.execute(
                "INSERT INTO accounts (balance) VALUES (%s) RETURNING id, balance",
                (to_money(balance),),
            )
            row = cursor.fetchone()
            return Account(row[0], Decimal(row[1]))

    def get_account(self, account_id: int) -> Optional[Account]:
        with self._cursor() as cursor:
            cursor.execute("SELECT id, balance FROM accounts WHERE id = %s", (account_id,))
            row = cursor.fetchone()
            return Account(row[0], Decimal(row[1])) if row else None

    def list_accounts(self) -> List[Account]:
        with self._cursor() as cursor:
            cursor.execute("SELECT id, balance FROM accounts ORDER BY id")
            return [Account(r[0], Decimal(r[1])) for r in cursor.fetchall()]

    def recent_entries(self, limit: int = 20) -> List[LedgerEntry]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT id, from_id, to_id, amount, created_at FROM transactions
                ORDER BY created_at DESC, id DESC LIMIT %s
                """,
                (limit,),
            )
            return [
                LedgerEntry(r[0], r[1], r[2], Decimal(r[3]), r[4])
                for r in cursor.fetchall()
            ]

    def close(self) -> None:
        self._pool.closeall()


def create_store(database_url: str, config=None) -> LedgerStore:
    """
    Build a store from a database URL.

    memory://              InMemoryLedgerStore
    sqlite:///path/to.db   SQLiteLedgerStore (sqlite:///:memory: also accepted)
    postgresql://...       PostgreSQLLedgerStore
    cockroachdb://...      PostgreSQLLedgerStore
    """
    scheme = urlparse(database_url).scheme
    if scheme == "memory":
        return InMemoryLedgerStore()
    if scheme == "sqlite":
        return SQLiteLedgerStore(database_url[len("sqlite:///"):] or ":memory:")
    if scheme in ("postgresql", "postgres", "cockroachdb"):
        if scheme == "cockroachdb":
            database_url = "postgresql" + database_url[len("cockroachdb"):]
        kwargs = {}
        if config is not None:
            kwargs = dict(
                min_connections=config.db_pool_min,
                max_connections=config.db_pool_max,
                connect_timeout=config.db_connect_timeout,
                statement_timeout_ms=config.db_statement_timeout_ms,
            )
        return PostgreSQLLedgerStore(database_url, **kwargs)
    raise ValueError(f"Unsupported database URL scheme: {scheme!r}")
