"""
Test suite for the transfer coordinator

Covers the atomic transfer protocol: validation, not-found and insufficient
funds handling, rollback on mid-protocol faults, bounded retry on store
conflicts, conservation of balances and concurrent contention.
"""

import random
import time
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from atomic_ledger.errors import (
    InvalidTransfer, AccountNotFound, InsufficientFunds, TransientConflict,
    PersistenceFailure, StoreError, RetryableStoreError, StoreUnavailableError,
)
from atomic_ledger.store import InMemoryLedgerStore, LedgerStore, LedgerTransaction, SQLiteLedgerStore
from atomic_ledger.transfers import TransferCoordinator


def no_sleep(seconds):
    pass


class FaultingTransaction(LedgerTransaction):
    """Delegates to a real transaction, raising at a chosen step"""

    def __init__(self, inner, store):
        self._inner = inner
        self._store = store

    def _maybe_fail(self, step):
        if self._store.should_fail(step):
            raise self._store.error_factory()

    def get_balance(self, account_id):
        self._maybe_fail("get_balance")
        return self._inner.get_balance(account_id)

    def apply_delta(self, account_id, delta):
        result = self._inner.apply_delta(account_id, delta)
        self._maybe_fail("apply_delta")
        return result

    def insert_entry(self, from_id, to_id, amount):
        self._maybe_fail("insert_entry")
        return self._inner.insert_entry(from_id, to_id, amount)

    def commit(self):
        self._maybe_fail("commit")
        self._inner.commit()

    def rollback(self):
        self._inner.rollback()


class FaultingStore(LedgerStore):
    """Wraps an InMemoryLedgerStore and injects errors into its transactions"""

    def __init__(self, inner, fail_on, error_factory, failures=None):
        self.inner = inner
        self.fail_on = fail_on
        self.error_factory = error_factory
        self.remaining = failures
        self.begun = 0

    def should_fail(self, step):
        if step != self.fail_on:
            return False
        if self.remaining is None:
            return True
        if self.remaining > 0:
            self.remaining -= 1
            return True
        return False

    def _begin(self):
        self.begun += 1
        return FaultingTransaction(self.inner._begin(), self)

    def create_schema(self):
        self.inner.create_schema()

    def create_account(self, balance):
        return self.inner.create_account(balance)

    def get_account(self, account_id):
        return self.inner.get_account(account_id)

    def list_accounts(self):
        return self.inner.list_accounts()

    def recent_entries(self, limit=20):
        return self.inner.recent_entries(limit)


class SlowReadStore(InMemoryLedgerStore):
    """Widens the window between read and commit so concurrent transfers collide"""

    def _begin(self):
        tx = super()._begin()
        read = tx.get_balance

        def slow_get_balance(account_id):
            balance = read(account_id)
            time.sleep(0.001)
            return balance

        tx.get_balance = slow_get_balance
        return tx


class TestTransferProtocol:
    """Happy path and terminal errors"""

    def setup_method(self):
        self.store = InMemoryLedgerStore()
        self.coordinator = TransferCoordinator(self.store, sleep=no_sleep)
        self.a = self.store.create_account(Decimal("1000.00")).id
        self.b = self.store.create_account(Decimal("1000.00")).id

    def balances(self):
        return (
            self.store.get_account(self.a).balance,
            self.store.get_account(self.b).balance,
        )

    def test_transfer_then_insufficient_funds(self):
        """A=1000, B=1000; move 300, then fail to move 2000"""
        result = self.coordinator.transfer(self.a, self.b, Decimal("300"))

        assert self.balances() == (Decimal("700.00"), Decimal("1300.00"))
        assert result.attempts == 1
        assert result.from_balance == Decimal("700.00")
        assert result.to_balance == Decimal("1300.00")
        entries = self.store.recent_entries()
        assert len(entries) == 1
        assert entries[0].amount == Decimal("300.00")
        assert entries[0].from_id == self.a
        assert entries[0].to_id == self.b
        assert result.entry == entries[0]

        with pytest.raises(InsufficientFunds):
            self.coordinator.transfer(self.a, self.b, Decimal("2000"))

        assert self.balances() == (Decimal("700.00"), Decimal("1300.00"))
        assert len(self.store.recent_entries()) == 1

    def test_transfer_entire_balance(self):
        self.coordinator.transfer(self.a, self.b, "1000.00")
        assert self.balances() == (Decimal("0.00"), Decimal("2000.00"))

    def test_sender_not_found(self):
        with pytest.raises(AccountNotFound) as exc_info:
            self.coordinator.transfer(999, self.b, Decimal("10"))

        assert exc_info.value.details["account_id"] == 999
        assert self.balances() == (Decimal("1000.00"), Decimal("1000.00"))
        assert self.store.recent_entries() == []

    def test_receiver_not_found_rolls_back_debit(self):
        with pytest.raises(AccountNotFound) as exc_info:
            self.coordinator.transfer(self.a, 999, Decimal("10"))

        assert "Receiver" in exc_info.value.message
        assert self.balances() == (Decimal("1000.00"), Decimal("1000.00"))
        assert self.store.recent_entries() == []

    def test_self_transfer_rejected(self):
        with pytest.raises(InvalidTransfer):
            self.coordinator.transfer(self.a, self.a, Decimal("10"))
        assert self.store.recent_entries() == []

    @pytest.mark.parametrize("amount", [0, -5, "0.00", "1.001", "abc", "NaN", "Infinity", "1e30", "1e17"])
    def test_invalid_amount_rejected(self, amount):
        with pytest.raises(InvalidTransfer):
            self.coordinator.transfer(self.a, self.b, amount)
        assert self.balances() == (Decimal("1000.00"), Decimal("1000.00"))

    def test_float_amount_is_exact(self):
        self.coordinator.transfer(self.a, self.b, 0.1)
        assert self.balances() == (Decimal("999.90"), Decimal("1000.10"))

    def test_terminal_errors_are_not_retried(self):
        store = FaultingStore(self.store, fail_on=None, error_factory=None)
        coordinator = TransferCoordinator(store, sleep=no_sleep)

        with pytest.raises(InsufficientFunds):
            coordinator.transfer(self.a, self.b, Decimal("5000"))
        assert store.begun == 1


class TestTransferFaults:
    """Rollback and retry behaviour when the store misbehaves"""

    def setup_method(self):
        self.inner = InMemoryLedgerStore()
        self.a = self.inner.create_account(Decimal("1000.00")).id
        self.b = self.inner.create_account(Decimal("1000.00")).id

    def balances(self):
        return (
            self.inner.get_account(self.a).balance,
            self.inner.get_account(self.b).balance,
        )

    def test_fault_after_debit_leaves_no_partial_effect(self):
        store = FaultingStore(self.inner, "insert_entry", lambda: StoreError("disk full"))
        coordinator = TransferCoordinator(store, sleep=no_sleep)

        with pytest.raises(PersistenceFailure) as exc_info:
            coordinator.transfer(self.a, self.b, Decimal("300"))

        assert isinstance(exc_info.value.__cause__, StoreError)
        assert self.balances() == (Decimal("1000.00"), Decimal("1000.00"))
        assert self.inner.recent_entries() == []

    def test_unexpected_exception_is_persistence_failure(self):
        store = FaultingStore(self.inner, "apply_delta", lambda: RuntimeError("driver bug"))
        coordinator = TransferCoordinator(store, sleep=no_sleep)

        with pytest.raises(PersistenceFailure):
            coordinator.transfer(self.a, self.b, Decimal("300"))
        assert self.balances() == (Decimal("1000.00"), Decimal("1000.00"))

    def test_conflict_on_commit_is_retried(self):
        store = FaultingStore(
            self.inner, "commit", lambda: RetryableStoreError("restart transaction"), failures=2
        )
        sleeps = []
        coordinator = TransferCoordinator(store, max_attempts=5, sleep=sleeps.append)

        result = coordinator.transfer(self.a, self.b, Decimal("300"))

        assert result.attempts == 3
        assert store.begun == 3
        assert len(sleeps) == 2
        assert all(0 <= s <= coordinator.backoff_max for s in sleeps)
        assert self.balances() == (Decimal("700.00"), Decimal("1300.00"))
        assert len(self.inner.recent_entries()) == 1

    def test_conflict_on_read_is_retried(self):
        store = FaultingStore(
            self.inner, "get_balance", lambda: RetryableStoreError("restart transaction"), failures=1
        )
        coordinator = TransferCoordinator(store, sleep=no_sleep)

        assert coordinator.transfer(self.a, self.b, Decimal("1")).attempts == 2

    def test_retries_exhausted(self):
        store = FaultingStore(self.inner, "commit", lambda: RetryableStoreError("restart transaction"))
        coordinator = TransferCoordinator(store, max_attempts=3, sleep=no_sleep)

        with pytest.raises(TransientConflict) as exc_info:
            coordinator.transfer(self.a, self.b, Decimal("300"))

        assert exc_info.value.details["attempts"] == 3
        assert store.begun == 3
        assert self.balances() == (Decimal("1000.00"), Decimal("1000.00"))
        assert self.inner.recent_entries() == []

    def test_unavailable_store_is_not_retried(self):
        store = FaultingStore(self.inner, "commit", lambda: StoreUnavailableError("no quorum"))
        coordinator = TransferCoordinator(store, sleep=no_sleep)

        with pytest.raises(PersistenceFailure):
            coordinator.transfer(self.a, self.b, Decimal("300"))
        assert store.begun == 1

    def test_max_attempts_validated(self):
        with pytest.raises(ValueError):
            TransferCoordinator(self.inner, max_attempts=0)


class TestConservation:
    """Balances are conserved across arbitrary transfer sequences"""

    def test_random_sequence_conserves_total(self):
        store = InMemoryLedgerStore()
        coordinator = TransferCoordinator(store, sleep=no_sleep)
        ids = [store.create_account(Decimal("500.00")).id for _ in range(5)]
        total_before = store.total_balance()
        rng = random.Random(42)

        committed = 0
        for _ in range(200):
            from_id, to_id = rng.sample(ids, 2)
            amount = Decimal(rng.randint(1, 40000)) / 100
            try:
                coordinator.transfer(from_id, to_id, amount)
                committed += 1
            except InsufficientFunds:
                pass

        assert store.total_balance() == total_before
        assert all(a.balance >= 0 for a in store.list_accounts())
        assert len(store.recent_entries(limit=1000)) == committed


class TestConcurrentContention:
    """Concurrent transfers against the same accounts"""

    def test_no_lost_updates(self):
        n, amount = 20, Decimal("5.00")
        store = SlowReadStore()
        x = store.create_account(n * amount).id
        y = store.create_account(Decimal("100.00")).id
        coordinator = TransferCoordinator(
            store, max_attempts=200, backoff_initial=0.001, backoff_max=0.01
        )

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: coordinator.transfer(x, y, amount), range(n)))

        assert len(results) == n
        assert store.get_account(x).balance == Decimal("0.00")
        assert store.get_account(y).balance == Decimal("100.00") + n * amount
        assert len(store.recent_entries(limit=100)) == n

    def test_concurrent_transfers_sqlite(self, tmp_path):
        n, amount = 10, Decimal("2.50")
        store = SQLiteLedgerStore(tmp_path / "ledger.db", busy_timeout=0.05)
        store.create_schema()
        x = store.create_account(n * amount).id
        y = store.create_account(Decimal("0.00")).id
        coordinator = TransferCoordinator(
            store, max_attempts=200, backoff_initial=0.001, backoff_max=0.02
        )

        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(lambda _: coordinator.transfer(x, y, amount), range(n)))

        assert store.get_account(x).balance == Decimal("0.00")
        assert store.get_account(y).balance == n * amount
        assert len(store.recent_entries(limit=100)) == n
        store.close()


class TestFromConfig:

    def test_retry_policy_from_config(self):
        from atomic_ledger.config import LedgerConfig

        config = LedgerConfig(
            transfer_max_attempts=7,
            transfer_backoff_initial=0.2,
            transfer_backoff_max=2.0,
            transfer_retry_deadline=30.0,
        )
        coordinator = TransferCoordinator.from_config(InMemoryLedgerStore(), config)

        assert coordinator.max_attempts == 7
        assert coordinator.backoff_initial == 0.2
        assert coordinator.backoff_max == 2.0
        assert coordinator.retry_deadline == 30.0
