"""Atomic transactions over the writable handle."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from labstore.errors import StoreError
from labstore.persistence.statements import StatementExecutor, WriteListener

_logger = logging.getLogger(__name__)

T = TypeVar("T")

TransactionCallback = Callable[[StatementExecutor], Awaitable[T]]


class TransactionExecutor:
    """Run a callback between ``BEGIN`` and ``COMMIT`` on a single connection.

    The state's ``write_gate`` is held for the whole transaction, so at most one
    transaction is open per executor and standalone statements queue behind it.
    The callback must use the scoped executor it receives; calling the standalone
    executor from inside the callback would wait on the gate forever, and calling
    :meth:`transaction` again from the same task raises ``StoreError``.
    """

    def __init__(
        self,
        statements: StatementExecutor,
        *,
        on_commit: WriteListener | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._statements = statements
        self._on_commit = on_commit
        self._clock = clock
        self._owner: asyncio.Task[object] | None = None

    @property
    def statements(self) -> StatementExecutor:
        return self._statements

    async def transaction(self, callback: TransactionCallback[T]) -> T:
        state = self._statements.state
        current = asyncio.current_task()
        if current is not None and self._owner is current:
            raise StoreError(f"nested transactions are not supported on {state.path}")

        async with state.write_gate:
            self._owner = current
            try:
                result = await self._run(callback)
            finally:
                self._owner = None

        if self._on_commit is not None:
            self._on_commit("commit")
        return result

    async def _run(self, callback: TransactionCallback[T]) -> T:
        state = self._statements.state
        scoped = self._statements.scoped_copy()

        await scoped.execute("BEGIN", track_write=False)
        state.transaction_depth += 1
        try:
            result = await callback(scoped)
            await scoped.execute("COMMIT", track_write=False)
        except BaseException:
            await self._rollback(scoped)
            state.transaction_depth = max(0, state.transaction_depth - 1)
            raise

        if state.is_local:
            try:
                await scoped.execute("PRAGMA wal_checkpoint(TRUNCATE)", track_write=False)
            except StoreError as exc:
                _logger.warning(
                    "post-commit checkpoint failed",
                    extra={"store_path": str(state.path), "error": str(exc)},
                )
        state.mark_checkpoint(self._clock())
        state.transaction_depth = max(0, state.transaction_depth - 1)
        return result

    async def _rollback(self, scoped: StatementExecutor) -> None:
        if not getattr(scoped.state.writer, "in_transaction", True):
            return
        try:
            await scoped.execute("ROLLBACK", track_write=False)
        except StoreError as exc:
            _logger.error(
                "rollback failed",
                extra={"store_path": str(scoped.state.path), "error": str(exc)},
            )


__all__ = [
    "TransactionCallback",
    "TransactionExecutor",
]
