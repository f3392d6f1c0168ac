"""Fixed-interval background sweeps (cache TTL purge, idle identity cleanup,
credential reinstatement).

Each sweep runs as its own asyncio task on the gateway's event loop, so it
interleaves cooperatively with foreground calls rather than preempting them.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class PeriodicSweeper:
    """Run a synchronous callback every *interval* seconds until stopped."""

    def __init__(self, name: str, callback: Callable[[], object], interval: float):
        self.name = name
        self.interval = interval
        self._callback = callback
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=f"sweep:{self.name}")
        logger.debug("Sweeper %s started (interval=%.1fs)", self.name, self.interval)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.debug("Sweeper %s stopped", self.name)

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                self._callback()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Sweeper %s failed: %s", self.name, e)
