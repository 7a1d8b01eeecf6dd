"""Rate limiting primitives for playback writes and position reports."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class TrailingThrottle:
    """Coalesce requests into one callback per window.

    The first request arms a timer for ``window`` seconds; requests arriving
    before it fires are folded into the same run. Because the next timer can
    only be armed after the previous callback ran, two runs are always at
    least one window apart.
    """

    def __init__(self, window: float, callback: Callable[[], Awaitable[None]], *, name: str = "throttle") -> None:
        self._window = window
        self._callback = callback
        self._name = name
        self._task: asyncio.Task[Any] | None = None
        self._firing = False
        self._rearm = False

    @property
    def window(self) -> float:
        return self._window

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def request(self) -> None:
        if self._firing:
            self._rearm = True
            return
        if self.pending:
            return
        self._task = asyncio.create_task(self._run(), name=self._name)

    async def _run(self) -> None:
        if self._window > 0:
            await asyncio.sleep(self._window)
        self._firing = True
        try:
            await self._callback()
        except Exception:
            logger.exception("Throttled callback failed", extra={"throttle": self._name})
        finally:
            self._firing = False
            if self._rearm:
                self._rearm = False
                self._task = asyncio.create_task(self._run(), name=self._name)

    async def flush(self) -> None:
        """Run a pending callback now instead of waiting for the window."""

        task = self._task
        if task is None or task.done():
            return
        if self._firing:
            with contextlib.suppress(asyncio.CancelledError):
                await task
            return
        self.cancel()
        await self._callback()

    def cancel(self) -> None:
        """Drop any pending run; safe to call from synchronous teardown."""

        self._rearm = False
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()


class IntervalGuard:
    """Last-fired timestamp guard: allows one event per interval."""

    def __init__(self, interval: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._interval = interval
        self._clock = clock
        self._last_fired: float | None = None

    def ready(self) -> bool:
        now = self._clock()
        if self._last_fired is not None and now - self._last_fired < self._interval:
            return False
        self._last_fired = now
        return True

    def reset(self) -> None:
        self._last_fired = None


__all__ = ["IntervalGuard", "TrailingThrottle"]
