"""Cancellable recurring background tasks."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable


class PeriodicTask:
    """Run an async callable every ``interval`` seconds until closed.

    Runs never overlap: :meth:`run_once` returns ``False`` without calling the
    job when a previous run is still in progress.
    """

    def __init__(
        self,
        name: str,
        job: Callable[[], Awaitable[object]],
        *,
        interval: float,
        run_immediately: bool = True,
        logger: logging.Logger | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._name = name
        self._job = job
        self._interval = float(interval)
        self._run_immediately = run_immediately
        self._logger = logger or logging.getLogger(__name__)
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._running = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def active(self) -> bool:
        return self._task is not None

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the background loop on the running event loop."""

        if self._task is not None:
            return
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._task = loop.create_task(self._run(), name=self._name)

    async def aclose(self) -> None:
        """Stop the loop and wait for an in-flight run to finish."""

        task = self._task
        if task is None:
            return
        assert self._stop_event is not None
        self._stop_event.set()
        try:
            await task
        finally:
            self._task = None
            self._stop_event = None

    async def run_once(self) -> bool:
        """Run the job now unless a run is already in progress."""

        if self._running:
            self._logger.debug("%s still running; skipping", self._name)
            return False
        self._running = True
        try:
            await self._job()
        except asyncio.CancelledError:
            raise
        except Exception:
            self._logger.exception("%s run failed", self._name)
        finally:
            self._running = False
        return True

    async def _run(self) -> None:
        assert self._stop_event is not None
        if not self._run_immediately:
            if await self._wait_or_stop():
                return
        while not self._stop_event.is_set():
            await self.run_once()
            if await self._wait_or_stop():
                return

    async def _wait_or_stop(self) -> bool:
        assert self._stop_event is not None
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
        except asyncio.TimeoutError:
            return False
        return True


__all__ = ["PeriodicTask"]
