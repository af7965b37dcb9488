"""Checkpoint scheduler triggers and the background maintenance worker."""

from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING

import pytest

from labstore.persistence.checkpoint import (
    CheckpointScheduler,
    CheckpointThresholds,
    CheckpointTrigger,
    MaintenanceWorker,
)
from labstore.persistence.connection import ConnectionState

from . import fake_executor

if TYPE_CHECKING:
    from pathlib import Path


def _scheduler(
    state: ConnectionState, *, now: float = 0.5, wal: int = 0, writes: int = 20, interval_ms: int = 2_000
) -> CheckpointScheduler:
    return CheckpointScheduler(
        state,
        CheckpointThresholds(write_threshold=writes, min_interval_ms=interval_ms, wal_size_threshold_bytes=512),
        clock=lambda: now,
        wal_size=lambda: wal,
    )


def test_each_threshold_fires_independently(tmp_path: Path) -> None:
    executor, _ = fake_executor(tmp_path, [])
    state = executor.state

    assert _scheduler(state).evaluate() is None
    assert _scheduler(state, wal=512).evaluate() is CheckpointTrigger.WAL_SIZE

    state.writes_since_checkpoint = 20
    assert _scheduler(state).evaluate() is CheckpointTrigger.WRITES

    state.writes_since_checkpoint = 0
    assert _scheduler(state, now=2.0).evaluate() is CheckpointTrigger.INTERVAL
    assert _scheduler(state, now=1.999).evaluate() is None


def test_network_mode_never_checkpoints(tmp_path: Path) -> None:
    executor, _ = fake_executor(tmp_path, [])
    state = executor.state
    state.mode = "network"
    state.writes_since_checkpoint = 1_000

    assert _scheduler(state, now=1e9, wal=1 << 30).evaluate() is None


async def test_open_transaction_or_held_gate_suppresses_checkpoint(tmp_path: Path) -> None:
    executor, _ = fake_executor(tmp_path, [])
    state = executor.state
    state.writes_since_checkpoint = 100
    scheduler = _scheduler(state)

    state.transaction_depth = 1
    assert scheduler.evaluate() is None
    state.transaction_depth = 0

    async with state.write_gate:
        assert scheduler.evaluate() is None
    assert scheduler.evaluate() is CheckpointTrigger.WRITES


async def test_maybe_checkpoint_resets_counters(tmp_path: Path) -> None:
    executor, conn = fake_executor(tmp_path, [])
    state = executor.state
    state.writes_since_checkpoint = 25

    trigger = await _scheduler(state, now=7.0).maybe_checkpoint(executor)

    assert trigger is CheckpointTrigger.WRITES
    assert conn.calls == 1
    assert state.writes_since_checkpoint == 0
    assert state.last_checkpoint_time == 7.0


async def test_worker_coalesces_requests_and_runs_in_background(tmp_path: Path) -> None:
    executor, conn = fake_executor(tmp_path, [])
    state = executor.state
    state.writes_since_checkpoint = 25
    worker = MaintenanceWorker(_scheduler(state, now=7.0), executor)
    worker.start()
    try:
        for _ in range(5):
            worker.notify("write")
        await worker.drain()
    finally:
        await worker.stop()

    assert conn.calls == 1
    assert worker.last_trigger is CheckpointTrigger.WRITES
    assert not worker.running


async def test_notify_before_start_is_ignored(tmp_path: Path) -> None:
    executor, conn = fake_executor(tmp_path, [])
    worker = MaintenanceWorker(_scheduler(executor.state, wal=10_000), executor)

    worker.notify("write")
    worker.request_vacuum()
    await worker.drain()

    assert conn.calls == 0


async def test_worker_logs_and_survives_checkpoint_failures(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    executor, conn = fake_executor(tmp_path, [sqlite3.OperationalError("disk I/O error")])
    worker = MaintenanceWorker(_scheduler(executor.state, wal=10_000), executor)
    worker.start()
    try:
        with caplog.at_level(logging.WARNING, logger="labstore.persistence.checkpoint"):
            worker.notify("write")
            await worker.drain()
        worker.request_vacuum()
        await worker.drain()
    finally:
        await worker.stop()

    assert any(record.getMessage() == "maintenance task failed" for record in caplog.records)
    assert conn.calls == 2
