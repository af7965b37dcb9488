"""Async helpers for fire-and-forget work that must stay observable."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Coroutine

T = TypeVar("T")

_logger = logging.getLogger(__name__)


class BackgroundTaskSet:
    """Hold strong references to detached tasks and log their failures.

    Failures never propagate to whoever spawned the task; ``drain`` lets tests and
    shutdown paths wait for outstanding work deterministically.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._tasks: set[asyncio.Task[object]] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coroutine: Coroutine[object, object, T], *, label: str) -> asyncio.Task[T]:
        task = asyncio.get_running_loop().create_task(coroutine, name=f"{self._name}:{label}")
        self._tasks.add(task)  # type: ignore[arg-type]
        task.add_done_callback(self._on_done)
        return task

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*tuple(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = tuple(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            with suppress(Exception):
                await asyncio.gather(*tasks, return_exceptions=True)

    def _on_done(self, task: asyncio.Task[object]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _logger.warning(
                "background task failed",
                extra={"task": task.get_name(), "error": repr(exc)},
            )


def has_running_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


__all__ = [
    "BackgroundTaskSet",
    "has_running_loop",
]
