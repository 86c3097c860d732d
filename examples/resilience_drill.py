#!/usr/bin/env python3
"""
Example: Resilience drill against a live CockroachDB cluster

Opens two accounts, runs a burst of concurrent transfers, stops one replica
through the fault injector, runs a second burst and checks that the total
balance is unchanged. Point ATOMIC_LEDGER_DATABASE_URL at the cluster and
ATOMIC_LEDGER_CHAOS_NODE at the container to stop.

Set ATOMIC_LEDGER_DATABASE_URL=memory:// to dry-run without a cluster; the
node stop then goes to an in-process fake.
"""

import os
import sys
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from atomic_ledger.chaos import FakeNodeController, FaultInjector
from atomic_ledger.config import get_config
from atomic_ledger.errors import LedgerError
from atomic_ledger.logging_config import setup_logging
from atomic_ledger.store import InMemoryLedgerStore, create_store
from atomic_ledger.transfers import TransferCoordinator


def burst(coordinator, from_id, to_id, count, amount):
    """Run count concurrent transfers; returns (succeeded, failures by category)"""
    def one(_):
        try:
            coordinator.transfer(from_id, to_id, amount)
            return None
        except LedgerError as e:
            return e.category

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(one, range(count)))
    failures = Counter(c for c in outcomes if c is not None)
    return outcomes.count(None), dict(failures)


def main():
    config = get_config()
    setup_logging(config.log_level, fmt="text")

    print("Atomic Ledger - Resilience Drill")
    print("=" * 60)
    print(f"Database URL: {config.database_url}")

    store = create_store(config.database_url, config)
    store.create_schema()
    coordinator = TransferCoordinator.from_config(store, config)
    if isinstance(store, InMemoryLedgerStore):
        injector = FaultInjector(FakeNodeController(), config.chaos_node)
    else:
        injector = FaultInjector.from_config(config)

    a = store.create_account(Decimal("1000.00"))
    b = store.create_account(Decimal("1000.00"))
    total_before = a.balance + b.balance
    print(f"Accounts {a.id} and {b.id} opened with 1000.00 each")

    ok, failed = burst(coordinator, a.id, b.id, 20, Decimal("10.00"))
    print(f"Healthy cluster: {ok}/20 transfers committed, failures={failed}")

    try:
        result = injector.stop_node()
        print(f"Chaos: {result.message}")
    except LedgerError as e:
        print(f"Chaos failed: {e.message}")

    ok, failed = burst(coordinator, b.id, a.id, 20, Decimal("5.00"))
    print(f"Degraded cluster: {ok}/20 transfers committed, failures={failed}")

    a_after = store.get_account(a.id).balance
    b_after = store.get_account(b.id).balance
    print(f"Balances: {a.id}={a_after} {b.id}={b_after}")
    if a_after + b_after == total_before:
        print("Conservation holds")
    else:
        print("CONSERVATION VIOLATED")
        sys.exit(1)

    injector.close()
    store.close()


if __name__ == "__main__":
    main()
