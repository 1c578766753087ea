"""Observer interface used by the connectivity monitor and the orchestrator."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Generic, List, TypeVar

logger = logging.getLogger("fieldsync.sync.events")

T = TypeVar("T")
Handler = Callable[[T], Any]
Unsubscribe = Callable[[], None]


class EventBus(Generic[T]):
    """Delivers events to subscribers in registration order.

    A handler that raises is logged and skipped so the remaining handlers
    still receive the event. Handlers may be coroutine functions; their
    coroutines are scheduled on the running loop.
    """

    def __init__(self, name: str = "events") -> None:
        self.name = name
        self._handlers: List[Handler] = []
        self._tasks: "set[asyncio.Task]" = set()

    def subscribe(self, handler: Handler) -> Unsubscribe:
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            try:
                self._handlers.remove(handler)
            except ValueError:
                pass

        return _unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    def emit(self, event: T) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(event)
            except Exception:
                logger.exception("%s subscriber %r failed", self.name, handler)
                continue
            if inspect.isawaitable(result):
                self._track(asyncio.ensure_future(result))

    def clear(self) -> None:
        self._handlers.clear()

    def _track(self, task: "asyncio.Future") -> None:
        self._tasks.add(task)

        def _done(fut: "asyncio.Future") -> None:
            self._tasks.discard(fut)
            if fut.cancelled():
                return
            exc = fut.exception()
            if exc is not None:
                logger.error(
                    "%s async subscriber failed: %s",
                    self.name,
                    exc,
                    exc_info=(type(exc), exc, exc.__traceback__),
                )

        task.add_done_callback(_done)


__all__ = ["EventBus", "Handler", "Unsubscribe"]
