"""
Atomic Ledger

Atomic fund transfers between accounts held in a replicated SQL store
(CockroachDB), with a fault-injection hook that stops a replica node to
check that transfers keep succeeding.
"""

__version__ = "1.0.0"
