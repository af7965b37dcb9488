"""
labstore — persistence layer.

File: src/labstore/persistence/__init__.py

Purpose
- Connection profiles, bounded retry, transactions, checkpoints, migrations,
  table field maps, sync strategies, and the ``StoreEngine`` facade.
"""

from labstore.persistence.connection import ConnectionState
from labstore.persistence.engine import StoreEngine
from labstore.persistence.statements import RetryPolicy, StatementExecutor, StatementResult
from labstore.persistence.sync import DeltaSync, FullSync, SyncReport, strategy_for
from labstore.persistence.transactions import TransactionExecutor

__all__ = [
    "ConnectionState",
    "DeltaSync",
    "FullSync",
    "RetryPolicy",
    "StatementExecutor",
    "StatementResult",
    "StoreEngine",
    "SyncReport",
    "TransactionExecutor",
    "strategy_for",
]
