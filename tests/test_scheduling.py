"""Tests for recurring background tasks."""

from __future__ import annotations

import asyncio

import pytest

from nvr_clips.scheduling import PeriodicTask


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError):
        PeriodicTask("bad", lambda: asyncio.sleep(0), interval=0)


def test_run_once_is_single_flight() -> None:
    calls = 0
    release = None

    async def job() -> None:
        nonlocal calls
        calls += 1
        await release.wait()

    async def scenario() -> tuple[bool, bool]:
        nonlocal release
        release = asyncio.Event()
        task = PeriodicTask("job", job, interval=60)
        first = asyncio.create_task(task.run_once())
        await asyncio.sleep(0)
        assert task.running
        skipped = await task.run_once()
        release.set()
        return await first, skipped

    ran, skipped = asyncio.run(scenario())

    assert ran is True
    assert skipped is False
    assert calls == 1


def test_loop_keeps_running_after_failures() -> None:
    calls = 0

    async def job() -> None:
        nonlocal calls
        calls += 1
        raise RuntimeError("boom")

    async def scenario() -> None:
        task = PeriodicTask("failing", job, interval=0.01)
        task.start()
        assert task.active
        await asyncio.sleep(0.1)
        await task.aclose()
        assert not task.active

    asyncio.run(scenario())

    assert calls >= 2


def test_delayed_start_waits_one_interval() -> None:
    calls = 0

    async def job() -> None:
        nonlocal calls
        calls += 1

    async def scenario() -> None:
        task = PeriodicTask("delayed", job, interval=10, run_immediately=False)
        task.start()
        await asyncio.sleep(0.05)
        await task.aclose()

    asyncio.run(scenario())

    assert calls == 0
