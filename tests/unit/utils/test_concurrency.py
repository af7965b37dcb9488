"""Detached task bookkeeping used by threshold-triggered backups."""

from __future__ import annotations

import asyncio
import logging

import pytest

from labstore.utils.concurrency import BackgroundTaskSet, has_running_loop


async def test_drain_waits_for_tasks_spawned_while_draining() -> None:
    tasks = BackgroundTaskSet("test")
    finished: list[str] = []

    async def second() -> None:
        await asyncio.sleep(0)
        finished.append("second")

    async def first() -> None:
        await asyncio.sleep(0)
        finished.append("first")
        tasks.spawn(second(), label="second")

    tasks.spawn(first(), label="first")
    await tasks.drain()

    assert finished == ["first", "second"]
    assert len(tasks) == 0


async def test_failures_are_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    tasks = BackgroundTaskSet("test")

    async def boom() -> None:
        raise RuntimeError("disk full")

    with caplog.at_level(logging.WARNING, logger="labstore.utils.concurrency"):
        task = tasks.spawn(boom(), label="boom")
        await tasks.drain()

    assert task.done()
    assert any("background task failed" in record.getMessage() for record in caplog.records)
    assert any(getattr(record, "task", "") == "test:boom" for record in caplog.records)


async def test_cancel_all_stops_pending_work() -> None:
    tasks = BackgroundTaskSet("test")
    blocker = asyncio.Event()
    task = tasks.spawn(blocker.wait(), label="blocked")

    await tasks.cancel_all()

    assert task.cancelled()
    assert len(tasks) == 0


async def test_has_running_loop_inside_coroutine() -> None:
    assert has_running_loop()


def test_has_running_loop_outside_coroutine() -> None:
    assert not has_running_loop()
