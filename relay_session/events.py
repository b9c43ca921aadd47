# =============================================================================
# Relay Session -- Event Emitter
# =============================================================================
#
# Minimal per-handler pub/sub. Listeners are removed by reference only;
# there is no "remove all listeners" call.
# =============================================================================

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Callable

from ._logging import logger

Handler = Callable[..., Any]


class EventEmitter:
    """Synchronous dispatch with support for coroutine handlers.

    Coroutine handlers are scheduled as tasks (strong references kept until
    they finish). A failing handler is logged and does not stop the others.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._once: set[tuple[str, int]] = set()
        self._background_tasks: set[asyncio.Task[Any]] = set()

    def on(self, event: str, handler: Handler) -> Handler:
        self._handlers[event].append(handler)
        return handler

    def once(self, event: str, handler: Handler) -> Handler:
        self._handlers[event].append(handler)
        self._once.add((event, id(handler)))
        return handler

    def off(self, event: str, handler: Handler) -> None:
        """Remove one registration of *handler*; unknown handlers are ignored."""
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if handler not in handlers:
                self._once.discard((event, id(handler)))

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))

    def emit(self, event: str, *args: Any) -> int:
        """Call every handler for *event*. Returns the number called."""
        handlers = list(self._handlers.get(event, ()))
        for handler in handlers:
            if (event, id(handler)) in self._once:
                self.off(event, handler)
            try:
                result = handler(*args)
                if asyncio.iscoroutine(result):
                    self._fire_task(result)
            except Exception as exc:
                logger.error("Handler error for '%s': %s", event, exc, exc_info=True)
        return len(handlers)

    def _fire_task(self, coro: Any) -> None:
        """Schedule a coroutine with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._background_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Async handler failed: %s", task.exception())

    async def drain(self) -> None:
        """Wait for coroutine handlers that are still running."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
