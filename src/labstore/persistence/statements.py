"""
labstore — statement execution with bounded lock-contention retry.

File: src/labstore/persistence/statements.py

Purpose
- Run single statements, batches, and selects against the connection state.
- Retry SQLITE_BUSY/SQLITE_LOCKED with linear backoff (base delay x attempt).
- Classify successful writes and signal the maintenance channel without waiting on it.

Functional requirements
- At most ``max_retries`` retries; exhaustion raises ``TransientLockError``.
- Integrity violations raise ``IntegrityError``; anything else raises ``StoreError``.
- Selects prefer the read-only handle and fall back to the writer on any failure.
"""

from __future__ import annotations

import asyncio
import logging
import re
import sqlite3
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Final, TypeVar

from labstore.constants import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_BASE_DELAY_MS
from labstore.errors import IntegrityError, StoreError, TransientLockError
from labstore.persistence.connection import ConnectionState, is_lock_error

_logger = logging.getLogger(__name__)

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
Row = dict[str, Any]
T = TypeVar("T")

_WRITE_PREFIX: Final[re.Pattern[str]] = re.compile(
    r"^(INSERT|UPDATE|DELETE|REPLACE|CREATE|DROP|ALTER|VACUUM)\b"
)

WriteListener = Callable[[str], None]


@dataclass(frozen=True, slots=True)
class StatementResult:
    last_row_id: int | None
    changes: int


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay_ms: int = DEFAULT_RETRY_BASE_DELAY_MS

    def delay_seconds(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""

        return (self.base_delay_ms * attempt) / 1000.0


def is_write_statement(sql: str) -> bool:
    normalized = sql.strip().upper()
    if _WRITE_PREFIX.match(normalized):
        return True
    return normalized.startswith("PRAGMA") and "QUERY_ONLY" not in normalized


class StatementExecutor:
    """Execute statements on a :class:`ConnectionState`.

    A standalone executor takes the state's ``write_gate`` for each writer call.
    The executor handed to a transaction callback is *scoped*: it runs on the
    connection the transaction already holds and must not take the gate again.
    """

    def __init__(
        self,
        state: ConnectionState,
        *,
        retry: RetryPolicy | None = None,
        on_write: WriteListener | None = None,
        scoped: bool = False,
    ) -> None:
        self._state = state
        self._retry = retry or RetryPolicy()
        self._on_write = on_write
        self._scoped = scoped

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    @property
    def scoped(self) -> bool:
        return self._scoped

    def scoped_copy(self) -> StatementExecutor:
        return StatementExecutor(self._state, retry=self._retry, on_write=self._on_write, scoped=True)

    async def execute(
        self, sql: str, params: SQLParams = (), *, track_write: bool = True
    ) -> StatementResult:
        """Run one statement; ``track_write=False`` skips write accounting (maintenance statements)."""

        bound = tuple(params)
        result = await self._on_writer(
            lambda conn: _run_statement(conn, sql, bound),
            operation=_describe(sql),
        )
        if track_write:
            self._after_success(sql)
        return result

    async def execute_many(self, sql: str, rows: Iterable[SQLParams]) -> StatementResult:
        materialized = [tuple(row) for row in rows]
        if not materialized:
            return StatementResult(last_row_id=None, changes=0)
        result = await self._on_writer(
            lambda conn: _run_many(conn, sql, materialized),
            operation=_describe(sql),
        )
        self._after_success(sql)
        return result

    async def select(self, sql: str, params: SQLParams = ()) -> list[Row]:
        bound = tuple(params)
        reader = self._state.reader
        if reader is not None and not self._scoped:
            try:
                return await self._with_retry(
                    lambda: asyncio.to_thread(_run_select, reader, sql, bound),
                    operation=_describe(sql),
                )
            except StoreError as exc:
                _logger.debug(
                    "read-only select failed; retrying on writer",
                    extra={"operation": _describe(sql), "error": str(exc)},
                )
        return await self._on_writer(lambda conn: _run_select(conn, sql, bound), operation=_describe(sql))

    async def select_one(self, sql: str, params: SQLParams = ()) -> Row | None:
        rows = await self.select(sql, params)
        return rows[0] if rows else None

    async def _on_writer(self, work: Callable[[sqlite3.Connection], T], *, operation: str) -> T:
        writer = self._state.writer

        async def attempt() -> T:
            return await asyncio.to_thread(work, writer)

        if self._scoped:
            return await self._with_retry(attempt, operation=operation)
        async with self._state.write_gate:
            return await self._with_retry(attempt, operation=operation)

    async def _with_retry(self, attempt: Callable[[], Any], *, operation: str) -> Any:
        max_retries = max(0, self._retry.max_retries)
        for attempt_number in range(max_retries + 1):
            try:
                return await attempt()
            except sqlite3.IntegrityError as exc:
                raise IntegrityError(f"{operation} violated a constraint on {self._state.path}: {exc}") from exc
            except sqlite3.Error as exc:
                if not is_lock_error(exc):
                    raise StoreError(f"{operation} failed for {self._state.path}: {exc}") from exc
                if attempt_number >= max_retries:
                    raise TransientLockError(
                        f"{operation} hit a locked store at {self._state.path} after "
                        f"{attempt_number + 1} attempt(s): {exc}",
                        attempts=attempt_number + 1,
                    ) from exc
                retry_number = attempt_number + 1
                _logger.warning(
                    "store busy; retrying statement",
                    extra={
                        "operation": operation,
                        "attempt": retry_number,
                        "max_attempts": max_retries + 1,
                    },
                )
                await asyncio.sleep(self._retry.delay_seconds(retry_number))
        raise TransientLockError(f"{operation} exhausted retries unexpectedly", attempts=max_retries + 1)

    def _after_success(self, sql: str) -> None:
        if not is_write_statement(sql):
            return
        self._state.writes_since_checkpoint += 1
        if self._on_write is not None:
            self._on_write("write")


def _run_statement(conn: sqlite3.Connection, sql: str, params: tuple[SQLValue, ...]) -> StatementResult:
    cursor = conn.execute(sql, params)
    try:
        if cursor.description is not None:
            cursor.fetchall()
        return StatementResult(last_row_id=cursor.lastrowid, changes=max(cursor.rowcount, 0))
    finally:
        cursor.close()


def _run_many(
    conn: sqlite3.Connection, sql: str, rows: list[tuple[SQLValue, ...]]
) -> StatementResult:
    cursor = conn.executemany(sql, rows)
    try:
        return StatementResult(last_row_id=cursor.lastrowid, changes=max(cursor.rowcount, 0))
    finally:
        cursor.close()


def _run_select(conn: sqlite3.Connection, sql: str, params: tuple[SQLValue, ...]) -> list[Row]:
    cursor = conn.execute(sql, params)
    try:
        columns = [column[0] for column in cursor.description or ()]
        return [dict(zip(columns, tuple(row), strict=True)) for row in cursor.fetchall()]
    finally:
        cursor.close()


def _describe(sql: str) -> str:
    collapsed = " ".join(sql.split())
    return collapsed if len(collapsed) <= 80 else collapsed[:77] + "..."


__all__ = [
    "RetryPolicy",
    "Row",
    "SQLParams",
    "SQLValue",
    "StatementExecutor",
    "StatementResult",
    "WriteListener",
    "is_write_statement",
]
