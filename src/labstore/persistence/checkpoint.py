"""
labstore — WAL checkpoint scheduling and the background maintenance worker.

File: src/labstore/persistence/checkpoint.py

Purpose
- Decide when a truncating WAL checkpoint is due (write count, elapsed time, WAL size).
- Run checkpoints and idle compaction on a background task that the write path
  only signals, so maintenance latency never lands on a caller.

Functional requirements
- No checkpoint in network mode or while a transaction is open.
- Maintenance failures are logged and never reach the caller that triggered them.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from labstore.constants import (
    DEFAULT_CHECKPOINT_MIN_INTERVAL_MS,
    DEFAULT_CHECKPOINT_WRITE_THRESHOLD,
    DEFAULT_WAL_SIZE_THRESHOLD_BYTES,
)
from labstore.errors import LabStoreError
from labstore.persistence.connection import ConnectionState
from labstore.persistence.statements import StatementExecutor
from labstore.utils.fs import file_size, wal_path

_logger = logging.getLogger(__name__)


class CheckpointTrigger(str, Enum):
    """Which threshold caused a checkpoint."""

    WAL_SIZE = "wal_size"
    WRITES = "writes"
    INTERVAL = "interval"


class MaintenanceTask(str, Enum):
    CHECKPOINT = "checkpoint"
    VACUUM = "vacuum"


@dataclass(frozen=True, slots=True)
class CheckpointThresholds:
    write_threshold: int = DEFAULT_CHECKPOINT_WRITE_THRESHOLD
    min_interval_ms: int = DEFAULT_CHECKPOINT_MIN_INTERVAL_MS
    wal_size_threshold_bytes: int = DEFAULT_WAL_SIZE_THRESHOLD_BYTES


class CheckpointScheduler:
    """Evaluate checkpoint triggers against a :class:`ConnectionState`."""

    def __init__(
        self,
        state: ConnectionState,
        thresholds: CheckpointThresholds | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        wal_size: Callable[[], int] | None = None,
    ) -> None:
        self._state = state
        self._thresholds = thresholds or CheckpointThresholds()
        self._clock = clock
        self._wal_size = wal_size or (lambda: file_size(wal_path(state.path)))

    @property
    def thresholds(self) -> CheckpointThresholds:
        return self._thresholds

    def evaluate(self) -> CheckpointTrigger | None:
        state = self._state
        if state.is_network or state.in_transaction or state.write_gate.locked():
            return None

        if self._wal_size() >= self._thresholds.wal_size_threshold_bytes:
            return CheckpointTrigger.WAL_SIZE
        if state.writes_since_checkpoint >= self._thresholds.write_threshold:
            return CheckpointTrigger.WRITES
        elapsed_ms = (self._clock() - state.last_checkpoint_time) * 1000.0
        if elapsed_ms >= self._thresholds.min_interval_ms:
            return CheckpointTrigger.INTERVAL
        return None

    async def maybe_checkpoint(self, statements: StatementExecutor) -> CheckpointTrigger | None:
        trigger = self.evaluate()
        if trigger is None:
            return None
        writes = self._state.writes_since_checkpoint
        await statements.execute("PRAGMA wal_checkpoint(TRUNCATE)", track_write=False)
        self._state.mark_checkpoint(self._clock())
        _logger.info(
            "wal checkpoint completed",
            extra={"trigger": trigger.value, "writes_since_checkpoint": writes},
        )
        return trigger


class MaintenanceWorker:
    """Single background consumer for checkpoint and compaction requests.

    ``notify`` and ``request_vacuum`` never block; repeated checkpoint requests
    coalesce while one is already queued.
    """

    def __init__(self, scheduler: CheckpointScheduler, statements: StatementExecutor) -> None:
        self._scheduler = scheduler
        self._statements = statements
        self._queue: asyncio.Queue[MaintenanceTask | None] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._checkpoint_pending = False
        self.last_trigger: CheckpointTrigger | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="labstore:maintenance")

    def notify(self, reason: str = "write") -> None:
        if not self.running or self._checkpoint_pending:
            return
        self._checkpoint_pending = True
        _logger.debug("checkpoint evaluation requested", extra={"reason": reason})
        self._queue.put_nowait(MaintenanceTask.CHECKPOINT)

    def request_vacuum(self) -> None:
        if self.running:
            self._queue.put_nowait(MaintenanceTask.VACUUM)

    async def drain(self) -> None:
        """Wait until every queued request has been handled."""

        if self.running:
            await self._queue.join()

    async def stop(self) -> None:
        if self._task is None:
            return
        if not self._task.done():
            self._queue.put_nowait(None)
            await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is None:
                    return
                await self._handle(item)
            finally:
                self._queue.task_done()

    async def _handle(self, item: MaintenanceTask) -> None:
        try:
            if item is MaintenanceTask.CHECKPOINT:
                self._checkpoint_pending = False
                trigger = await self._scheduler.maybe_checkpoint(self._statements)
                if trigger is not None:
                    self.last_trigger = trigger
            else:
                await self._statements.execute("VACUUM", track_write=False)
                _logger.info("idle compaction completed")
        except LabStoreError as exc:
            _logger.warning(
                "maintenance task failed",
                extra={"task": item.value, "error": str(exc)},
            )


__all__ = [
    "CheckpointScheduler",
    "CheckpointThresholds",
    "CheckpointTrigger",
    "MaintenanceTask",
    "MaintenanceWorker",
]
