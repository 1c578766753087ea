"""Timer abstraction so backoff timing can be tested without wall-clock delays."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol

logger = logging.getLogger("fieldsync.sync.scheduler")

TimerCallback = Callable[[], Awaitable[Any]]


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    """Runs a coroutine factory after a delay (seconds)."""

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        ...


class _AsyncioTimer:
    def __init__(self) -> None:
        self.handle: Optional[asyncio.TimerHandle] = None
        self.task: Optional[asyncio.Task] = None
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True
        if self.handle is not None:
            self.handle.cancel()
        if self.task is not None and not self.task.done():
            self.task.cancel()


class AsyncioScheduler:
    """Scheduler backed by the running event loop."""

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        loop = asyncio.get_running_loop()
        timer = _AsyncioTimer()

        def _fire() -> None:
            if timer.cancelled:
                return
            timer.task = loop.create_task(_run(callback))

        timer.handle = loop.call_later(max(0.0, delay), _fire)
        return timer


async def _run(callback: TimerCallback) -> None:
    try:
        await callback()
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("Scheduled callback failed")


def backoff_delay(retry_count: int, base: float = 1.0, cap: float = 30.0) -> float:
    """Exponential backoff: ``min(base * 2**retry_count, cap)`` seconds."""

    if retry_count < 0:
        retry_count = 0
    # Avoid huge intermediates once the cap is certainly reached.
    if retry_count > 62:
        return cap
    return min(base * (2 ** retry_count), cap)


__all__ = ["Scheduler", "TimerHandle", "TimerCallback", "AsyncioScheduler", "backoff_delay"]
