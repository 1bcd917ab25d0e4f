"""In-process publish/subscribe for alert changes.

Subscribers are plain callables receiving an AlertEvent.  A coroutine
function is scheduled on the running loop.  A failing subscriber is logged
and never propagates into the store or the evaluator.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

from stockalert.schemas.alerts import AutoAlert

logger = logging.getLogger(__name__)

# appended | acknowledged | evicted | critical
APPENDED = "appended"
ACKNOWLEDGED = "acknowledged"
EVICTED = "evicted"
CRITICAL = "critical"


@dataclass(frozen=True)
class AlertEvent:
    kind: str
    alerts: tuple[AutoAlert, ...]


Subscriber = Callable[[AlertEvent], Any]


class EventBus:
    def __init__(self):
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()
        self._tasks: set[asyncio.Future] = set()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, kind: str, alerts: list[AutoAlert] | tuple[AutoAlert, ...]) -> None:
        if not alerts:
            return
        event = AlertEvent(kind=kind, alerts=tuple(alerts))
        with self._lock:
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    self._schedule(result)
            except Exception:
                logger.exception("Alert subscriber %r failed on %s event", callback, kind)

    def _schedule(self, awaitable) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; dropping async subscriber result")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = asyncio.ensure_future(awaitable, loop=loop)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async alert subscriber failed", exc_info=exc)

    async def drain(self) -> None:
        """Wait for scheduled async subscribers to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
