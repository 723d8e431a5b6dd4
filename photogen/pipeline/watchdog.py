"""Execution watchdog that finishes a task before the host kills the worker."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Any, Awaitable, Callable

from photogen.metrics.prometheus_exporter import watchdog_fired_total

logger = logging.getLogger(__name__)


class Watchdog:
    """One-shot timer running ``on_timeout`` after ``timeout`` seconds.

    ``disarm`` only stops a watchdog that has not started firing. Once the
    callback runs it completes, and the terminal write it performs competes
    with the pipeline through the store's conditional update.
    """

    def __init__(self, timeout: float, on_timeout: Callable[[], Awaitable[Any]]) -> None:
        if timeout <= 0:
            raise ValueError("Watchdog timeout must be positive.")
        self._timeout = timeout
        self._on_timeout = on_timeout
        self._task: asyncio.Task[None] | None = None
        self._firing = False
        self._fired = asyncio.Event()

    @property
    def armed(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def firing(self) -> bool:
        return self._firing

    def arm(self) -> None:
        if self._task is not None:
            raise RuntimeError("Watchdog is already armed.")
        self._task = asyncio.create_task(self._countdown())

    def disarm(self) -> bool:
        """Cancel the countdown. Returns ``False`` if the watchdog already fired."""

        if self._task is None or self._firing:
            return False
        self._task.cancel()
        return True

    async def wait_fired(self) -> None:
        await self._fired.wait()

    async def join(self) -> None:
        """Wait until the countdown is cancelled or the timeout callback finished."""

        if self._task is None:
            return
        with suppress(asyncio.CancelledError):
            await self._task

    async def _countdown(self) -> None:
        await asyncio.sleep(self._timeout)
        self._firing = True
        watchdog_fired_total.inc()
        logger.warning("Watchdog fired after %.1fs.", self._timeout)
        try:
            await self._on_timeout()
        finally:
            self._fired.set()
