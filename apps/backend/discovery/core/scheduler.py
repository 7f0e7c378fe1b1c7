"""
scheduler.py — Cancellable timers on top of the running asyncio loop.

The discovery core is single-threaded and cooperative: debounce and backoff
are timers, not threads. Wrapping loop.call_later in an explicit handle
lets callers express "only the latest pending run fires" as "replace the
previous handle, cancelling it" instead of relying on implicit timer
behaviour.

Usage:
    debouncer = Debouncer(delay_ms=10)
    debouncer.schedule(publish, render_set)   # cancels any earlier pending call
    ...
    debouncer.cancel()                        # on screen teardown
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


class TimerHandle:
    """A single scheduled callback. Coroutine callbacks run as tasks."""

    def __init__(self, delay_seconds: float, callback: Callable[..., Any], *args: Any) -> None:
        loop = asyncio.get_running_loop()
        self._callback = callback
        self._args = args
        self._task: asyncio.Task | None = None
        self._fired = False
        self._cancelled = False
        self._settled = asyncio.Event()
        self._handle = loop.call_later(max(delay_seconds, 0.0), self._fire)

    def _fire(self) -> None:
        self._fired = True
        try:
            result = self._callback(*self._args)
            if inspect.isawaitable(result):
                self._task = asyncio.ensure_future(result)
                self._task.add_done_callback(_log_task_failure)
        finally:
            self._settled.set()

    def cancel(self) -> None:
        """Cancel the timer, or the task it started if it already fired."""
        self._cancelled = True
        self._handle.cancel()
        self._settled.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    @property
    def pending(self) -> bool:
        return not self._fired and not self._cancelled

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def wait(self) -> None:
        """Wait until the callback (and any task it started) has finished."""
        await self._settled.wait()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)


class Debouncer:
    """Keeps at most one pending TimerHandle; scheduling replaces the last one."""

    def __init__(self, delay_ms: float) -> None:
        self.delay_ms = delay_ms
        self._handle: TimerHandle | None = None

    def schedule(self, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        if self._handle is not None and self._handle.pending:
            self._handle.cancel()
        self._handle = TimerHandle(self.delay_ms / 1000.0, callback, *args)
        return self._handle

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    @property
    def pending(self) -> bool:
        return self._handle is not None and self._handle.pending

    async def wait(self) -> None:
        if self._handle is not None:
            await self._handle.wait()


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Scheduled callback failed: %s", exc, exc_info=exc)
