"""Observability events: the EventSink capability injected into every component.

Components publish named events with a structured payload on every state
change. Delivery is fire-and-forget: a failing or slow subscriber never
blocks, or changes the outcome of, the operation that published.

Usage:
    bus = EventBus()
    unsubscribe = bus.subscribe("circuit.*", lambda event, payload: print(event, payload))

    cache = CacheManager(events=bus)
"""

from __future__ import annotations

import asyncio
import fnmatch
import inspect
import itertools
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, dict[str, Any]], Any]


@runtime_checkable
class EventSink(Protocol):
    """Anything that accepts published events."""

    def publish(self, event: str, payload: dict[str, Any]) -> None: ...


class NullEventSink:
    """Discards every event. Default sink for standalone components."""

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        return None


@dataclass
class _Subscription:
    id: int
    pattern: str
    handler: EventHandler
    once: bool = False

    def matches(self, event: str) -> bool:
        if self.pattern == event:
            return True
        return fnmatch.fnmatchcase(event, self.pattern)


class EventBus:
    """In-process publish/subscribe bus.

    Patterns are exact event names or shell-style wildcards
    ("cache.*", "*"). Handlers are called as handler(event, payload);
    coroutine handlers are scheduled on the running loop.
    """

    def __init__(self, clock: Callable[[], float] | None = None):
        self._clock = clock or time.time
        self._subscriptions: list[_Subscription] = []
        self._ids = itertools.count(1)
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, pattern: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to events matching pattern. Returns an unsubscribe callable."""
        return self._add(pattern, handler, once=False)

    def subscribe_once(self, pattern: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe for the first matching event only."""
        return self._add(pattern, handler, once=True)

    def unsubscribe(self, pattern: str, handler: EventHandler | None = None) -> int:
        """Remove subscriptions for pattern (optionally only for handler). Returns count removed."""
        before = len(self._subscriptions)
        self._subscriptions = [
            s
            for s in self._subscriptions
            if not (s.pattern == pattern and (handler is None or s.handler == handler))
        ]
        return before - len(self._subscriptions)

    def clear(self) -> None:
        self._subscriptions.clear()

    def subscription_count(self, pattern: str | None = None) -> int:
        if pattern is None:
            return len(self._subscriptions)
        return sum(1 for s in self._subscriptions if s.pattern == pattern)

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        """Deliver event to matching subscribers without waiting on them."""
        payload = dict(payload)
        payload.setdefault("timestamp", self._clock())

        logger.debug("event %s %s", event, payload, extra={"event": event})

        matched = [s for s in self._subscriptions if s.matches(event)]
        if not matched:
            return

        once_ids = {s.id for s in matched if s.once}
        if once_ids:
            self._subscriptions = [s for s in self._subscriptions if s.id not in once_ids]

        for subscription in matched:
            try:
                result = subscription.handler(event, payload)
            except Exception:
                logger.exception("Event handler for '%s' failed", event)
                continue

            if inspect.isawaitable(result):
                self._schedule(event, result)

    def _add(self, pattern: str, handler: EventHandler, once: bool) -> Callable[[], None]:
        subscription = _Subscription(id=next(self._ids), pattern=pattern, handler=handler, once=once)
        self._subscriptions.append(subscription)

        def _unsubscribe() -> None:
            self._subscriptions = [s for s in self._subscriptions if s.id != subscription.id]

        return _unsubscribe

    def _schedule(self, event: str, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Async handler for '%s' dropped: no running event loop", event)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = loop.create_task(self._run_handler(event, awaitable))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @staticmethod
    async def _run_handler(event: str, awaitable: Any) -> None:
        try:
            await awaitable
        except Exception:
            logger.exception("Async event handler for '%s' failed", event)
