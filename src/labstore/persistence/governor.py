"""Admission control for store operations with deferred idle compaction."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from labstore.constants import DEFAULT_IDLE_VACUUM_DELAY_MS, DEFAULT_MAX_CONCURRENT_OPERATIONS

_logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationGovernor:
    """Bound the number of in-flight operations.

    An operation is admitted immediately while fewer than ``limit`` are active;
    otherwise it waits for the most recently submitted operation to settle, so
    waiters are released in submission order. The failure of one operation is
    never propagated to the operations queued behind it.

    When the active count drops to zero and auto-vacuum is enabled, ``on_idle``
    is scheduled after ``idle_delay_ms``. Any later admission cancels it.
    """

    def __init__(
        self,
        *,
        limit: int = DEFAULT_MAX_CONCURRENT_OPERATIONS,
        auto_vacuum: bool = False,
        idle_delay_ms: int = DEFAULT_IDLE_VACUUM_DELAY_MS,
        on_idle: Callable[[], None] | None = None,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self._limit = limit
        self._auto_vacuum = auto_vacuum
        self._idle_delay_ms = idle_delay_ms
        self._on_idle = on_idle
        self._active = 0
        self._tail: asyncio.Future[None] | None = None
        self._idle_handle: asyncio.TimerHandle | None = None

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active(self) -> int:
        return self._active

    @property
    def auto_vacuum(self) -> bool:
        return self._auto_vacuum

    @property
    def idle_compaction_pending(self) -> bool:
        return self._idle_handle is not None

    def set_auto_vacuum(self, enabled: bool) -> None:
        self._auto_vacuum = enabled
        if not enabled:
            self._cancel_idle()

    async def submit(self, operation: Callable[[], Awaitable[T]]) -> T:
        self._cancel_idle()
        loop = asyncio.get_running_loop()
        previous = self._tail
        settled: asyncio.Future[None] = loop.create_future()
        self._tail = settled

        try:
            if self._active >= self._limit and previous is not None and not previous.done():
                # asyncio.wait never cancels the awaited future.
                await asyncio.wait([previous])
        except BaseException:
            _settle(settled)
            raise

        self._active += 1
        try:
            return await operation()
        finally:
            self._active -= 1
            _settle(settled)
            if self._active == 0 and self._auto_vacuum:
                self._schedule_idle(loop)

    def close(self) -> None:
        self._cancel_idle()

    def _schedule_idle(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._on_idle is None:
            return
        self._cancel_idle()
        self._idle_handle = loop.call_later(self._idle_delay_ms / 1000.0, self._fire_idle)

    def _fire_idle(self) -> None:
        self._idle_handle = None
        if self._active or not self._auto_vacuum or self._on_idle is None:
            return
        _logger.debug("store idle; requesting compaction")
        self._on_idle()

    def _cancel_idle(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None


def _settle(future: asyncio.Future[None]) -> None:
    if not future.done():
        future.set_result(None)


__all__ = ["OperationGovernor"]
