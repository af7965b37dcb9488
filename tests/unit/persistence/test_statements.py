"""Statement layer: bounded lock retry, error classification, write accounting."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING

import pytest

from labstore.errors import IntegrityError, StoreError, TransientLockError
from labstore.persistence.connection import is_lock_error
from labstore.persistence.statements import RetryPolicy, is_write_statement

from . import fake_executor, locked_error

if TYPE_CHECKING:
    from pathlib import Path


def test_retry_policy_delay_is_linear_in_attempt() -> None:
    policy = RetryPolicy(max_retries=3, base_delay_ms=100)

    assert [policy.delay_seconds(attempt) for attempt in (1, 2, 3)] == [0.1, 0.2, 0.3]


async def test_lock_errors_are_retried_up_to_the_bound(tmp_path: Path) -> None:
    executor, conn = fake_executor(tmp_path, [locked_error()] * 3)

    result = await executor.execute("INSERT INTO inventory (id) VALUES (?)", (1,))

    assert conn.calls == 4
    assert result.changes == 1


async def test_lock_errors_past_the_bound_raise_transient_lock_error(tmp_path: Path) -> None:
    executor, conn = fake_executor(tmp_path, [locked_error()] * 4)

    with pytest.raises(TransientLockError) as excinfo:
        await executor.execute("UPDATE inventory SET quantity = 1")

    assert excinfo.value.attempts == 4
    assert conn.calls == 4
    assert isinstance(excinfo.value.__cause__, sqlite3.OperationalError)


async def test_zero_retry_budget_fails_on_first_lock(tmp_path: Path) -> None:
    executor, conn = fake_executor(tmp_path, [locked_error()], max_retries=0)

    with pytest.raises(TransientLockError):
        await executor.execute("DELETE FROM inventory")
    assert conn.calls == 1


async def test_non_lock_errors_are_not_retried(tmp_path: Path) -> None:
    executor, conn = fake_executor(tmp_path, [sqlite3.OperationalError("no such table: nope")])

    with pytest.raises(StoreError, match="no such table"):
        await executor.execute("SELECT * FROM nope")
    assert conn.calls == 1


async def test_integrity_violations_are_classified(tmp_path: Path) -> None:
    executor, _ = fake_executor(tmp_path, [sqlite3.IntegrityError("UNIQUE constraint failed: inventory.id")])

    with pytest.raises(IntegrityError):
        await executor.execute("INSERT INTO inventory (id) VALUES (1)")


async def test_successful_writes_are_counted_and_signalled(tmp_path: Path) -> None:
    signals: list[str] = []
    executor, _ = fake_executor(tmp_path, [], on_write=signals.append)

    await executor.execute("INSERT INTO inventory (id) VALUES (1)")
    await executor.execute("SELECT 1")
    await executor.execute("PRAGMA wal_checkpoint(TRUNCATE)", track_write=False)

    assert executor.state.writes_since_checkpoint == 1
    assert signals == ["write"]


def test_write_statement_classification() -> None:
    assert is_write_statement("  insert into t values (1)")
    assert is_write_statement("CREATE TABLE t (id INTEGER)")
    assert is_write_statement("VACUUM")
    assert is_write_statement("PRAGMA foreign_keys=ON")
    assert not is_write_statement("SELECT * FROM t")
    assert not is_write_statement("PRAGMA query_only=1")


def test_lock_error_classification_by_message() -> None:
    assert is_lock_error(sqlite3.OperationalError("database is locked"))
    assert is_lock_error(sqlite3.OperationalError("database table is locked: inventory"))
    assert not is_lock_error(sqlite3.OperationalError("disk I/O error"))
    assert not is_lock_error(RuntimeError("database is locked"))
