"""Periodic maintenance tasks on the running asyncio loop.

Cache sweeps, circuit-breaker maintenance, rate-limit cleanup, metrics
reporting and queue draining all run as PeriodicTask instances started
by the Dispatcher. Callbacks share the same predicates as the on-demand
checks, so overlapping runs are idempotent.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run a sync or async callback every `interval` seconds until stopped."""

    def __init__(self, name: str, interval: float, callback: Callable[[], Any]):
        if interval <= 0:
            raise ValueError(f"Interval for {name} must be positive")
        self.name = name
        self.interval = interval
        self.callback = callback
        self.is_running = False
        self.runs = 0
        self.failures = 0
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self.is_running:
            logger.warning("Periodic task %s is already running", self.name)
            return

        self.is_running = True
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=f"periodic:{self.name}")
        logger.debug("Periodic task %s started (every %.1fs)", self.name, self.interval)

    async def stop(self) -> None:
        if not self.is_running:
            return

        self.is_running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.debug("Periodic task %s stopped", self.name)

    async def run_once(self) -> None:
        """Invoke the callback once, logging (not raising) failures."""
        self.runs += 1
        try:
            result = self.callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failures += 1
            logger.exception("Periodic task %s failed", self.name)

    async def _loop(self) -> None:
        while self.is_running:
            await asyncio.sleep(self.interval)
            await self.run_once()
