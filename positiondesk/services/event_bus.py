"""In-process domain event bus.

Views subscribe to ``order-changed`` and refresh when any order is
mutated, whichever view made the change. Handlers may be plain
functions or coroutines; a failing handler is logged and does not stop
delivery to the others.
"""
from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Protocol, Union

import structlog

logger = structlog.get_logger()

ORDER_CHANGED = "order-changed"

Handler = Callable[[Any], Union[None, Awaitable[None]]]


class EventPublisher(Protocol):
    async def broadcast(self, event: str, payload: Any) -> None: ...


class EventBus:
    """Publish-subscribe by event name."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Handler]] = {}

    def subscribe(self, event: str, handler: Handler) -> None:
        self._subscribers.setdefault(event, []).append(handler)
        logger.debug("Event handler subscribed", event_name=event)

    def unsubscribe(self, event: str, handler: Handler) -> None:
        handlers = self._subscribers.get(event, [])
        try:
            handlers.remove(handler)
        except ValueError:
            logger.warning("Event handler not found", event_name=event)

    def subscriber_count(self, event: str) -> int:
        return len(self._subscribers.get(event, []))

    async def broadcast(self, event: str, payload: Any) -> None:
        # Copy: handlers may unsubscribe themselves during delivery
        handlers = list(self._subscribers.get(event, []))
        logger.debug("Broadcasting event", event_name=event, handlers=len(handlers))
        for handler in handlers:
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "Event handler failed",
                    event_name=event,
                    error=str(e),
                    exc_info=True,
                )
