"""Transaction executor: atomicity, depth tracking, gate ownership, post-commit hooks."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from labstore.errors import IntegrityError, StoreError
from labstore.persistence.checkpoint import CheckpointScheduler, CheckpointThresholds
from labstore.persistence.connection import close_connection_state, open_writer
from labstore.persistence.statements import RetryPolicy, StatementExecutor
from labstore.persistence.transactions import TransactionExecutor

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture
def executors(tmp_path: Path) -> Iterator[tuple[StatementExecutor, TransactionExecutor, list[str]]]:
    state = open_writer(tmp_path / "store" / "tx.sqlite", mode="local")
    state.writer.execute("CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT NOT NULL)")
    commits: list[str] = []
    statements = StatementExecutor(state, retry=RetryPolicy(base_delay_ms=0))
    transactions = TransactionExecutor(statements, on_commit=commits.append, clock=lambda: 42.0)
    yield statements, transactions, commits
    close_connection_state(state)


async def test_failed_transaction_leaves_no_partial_rows(
    executors: tuple[StatementExecutor, TransactionExecutor, list[str]],
) -> None:
    statements, transactions, commits = executors
    await statements.execute("INSERT INTO items (id, name) VALUES (1, 'before')")

    async def insert_then_collide(tx: StatementExecutor) -> None:
        for item_id in (2, 3, 4):
            await tx.execute("INSERT INTO items (id, name) VALUES (?, ?)", (item_id, f"item-{item_id}"))
        await tx.execute("INSERT INTO items (id, name) VALUES (1, 'duplicate')")

    with pytest.raises(IntegrityError):
        await transactions.transaction(insert_then_collide)

    rows = await statements.select("SELECT id, name FROM items ORDER BY id")
    assert rows == [{"id": 1, "name": "before"}]
    assert statements.state.transaction_depth == 0
    assert commits == []


async def test_commit_resets_checkpoint_counters_and_signals(
    executors: tuple[StatementExecutor, TransactionExecutor, list[str]],
) -> None:
    statements, transactions, commits = executors

    async def insert(tx: StatementExecutor) -> int:
        result = await tx.execute("INSERT INTO items (name) VALUES ('a')")
        assert result.last_row_id is not None
        return result.last_row_id

    new_id = await transactions.transaction(insert)

    assert new_id == 1
    assert commits == ["commit"]
    assert statements.state.writes_since_checkpoint == 0
    assert statements.state.last_checkpoint_time == 42.0
    assert statements.state.transaction_depth == 0


async def test_nested_transaction_from_same_task_is_rejected(
    executors: tuple[StatementExecutor, TransactionExecutor, list[str]],
) -> None:
    _, transactions, _ = executors

    async def nested(tx: StatementExecutor) -> None:
        await transactions.transaction(lambda inner: inner.execute("SELECT 1"))

    with pytest.raises(StoreError, match="nested transactions"):
        await transactions.transaction(nested)


async def test_checkpoint_is_suppressed_while_a_transaction_is_open(
    executors: tuple[StatementExecutor, TransactionExecutor, list[str]],
) -> None:
    statements, transactions, _ = executors
    scheduler = CheckpointScheduler(
        statements.state,
        CheckpointThresholds(write_threshold=1, min_interval_ms=0, wal_size_threshold_bytes=1),
        clock=lambda: 1_000.0,
        wal_size=lambda: 10_000_000,
    )
    seen: list[object] = []

    async def write_many(tx: StatementExecutor) -> None:
        for index in range(5):
            await tx.execute("INSERT INTO items (name) VALUES (?)", (f"n{index}",))
            seen.append(scheduler.evaluate())

    await transactions.transaction(write_many)

    assert seen == [None] * 5
    assert scheduler.evaluate() is not None


async def test_standalone_statements_queue_behind_an_open_transaction(
    executors: tuple[StatementExecutor, TransactionExecutor, list[str]],
) -> None:
    statements, transactions, _ = executors
    release = asyncio.Event()
    entered = asyncio.Event()
    order: list[str] = []

    async def slow(tx: StatementExecutor) -> None:
        await tx.execute("INSERT INTO items (name) VALUES ('tx')")
        entered.set()
        await release.wait()
        order.append("tx-commit")

    async def standalone() -> None:
        await entered.wait()
        await statements.execute("INSERT INTO items (name) VALUES ('standalone')")
        order.append("standalone")

    tx_task = asyncio.create_task(transactions.transaction(slow))
    other = asyncio.create_task(standalone())
    await entered.wait()
    await asyncio.sleep(0.05)
    assert order == []
    release.set()
    await asyncio.gather(tx_task, other)

    assert order == ["tx-commit", "standalone"]
    rows = await statements.select("SELECT name FROM items ORDER BY id")
    assert [row["name"] for row in rows] == ["tx", "standalone"]
