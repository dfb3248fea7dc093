"""
Typed event channel for module lifecycle notifications.

Each module owns one :class:`EventChannel`. Consumers subscribe to a topic
(``"cache:hit"``, ``"migration:failed"``) or to ``"*"`` for everything.
There is no global listener registry.
"""

from __future__ import annotations

import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

WILDCARD = "*"


@dataclass(frozen=True)
class Event:
    """A published event."""

    topic: str
    payload: dict[str, Any]
    source: str
    timestamp: float = field(default_factory=time.time)


EventHandler = Callable[[Event], Awaitable[None] | None]


@dataclass
class EventChannel:
    """
    Publishes module events to subscribers.

    Handlers may be plain callables or coroutine functions. They run in
    subscription order. A failing handler is logged and skipped; it never
    fails the operation that published the event.
    """

    source: str
    _subscribers: dict[str, list[EventHandler]] = field(default_factory=dict)
    _enabled: bool = True

    def subscribe(self, topic: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to a topic. Returns a callable that removes the subscription."""
        self._subscribers.setdefault(topic, []).append(handler)

        def _unsubscribe() -> None:
            self.unsubscribe(topic, handler)

        return _unsubscribe

    def unsubscribe(self, topic: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(topic)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                del self._subscribers[topic]

    def topics(self) -> list[str]:
        """Topics that currently have at least one subscriber."""
        return sorted(self._subscribers)

    def enable(self) -> None:
        self._enabled = True

    def disable(self) -> None:
        self._enabled = False

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    async def publish(self, topic: str, payload: dict[str, Any] | None = None) -> Event:
        """Publish an event to the topic's subscribers and to wildcard subscribers."""
        event = Event(topic=topic, payload=dict(payload or {}), source=self.source)
        if not self._enabled:
            return event

        handlers = list(self._subscribers.get(topic, ()))
        if topic != WILDCARD:
            handlers.extend(self._subscribers.get(WILDCARD, ()))

        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event handler failed for %s (%s)", topic, self.source)

        return event
