"""Domain event dispatch."""

import logging
from collections.abc import Awaitable, Callable, Iterable

from fhirvault.models.resource import DomainEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventDispatcher:
    """Publishes resource lifecycle events to subscribed handlers.

    Handlers run in subscription order. A failing handler is logged and does
    not stop delivery to the others; the writes behind the events are
    already committed.
    """

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []
        self.published: int = 0

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    async def publish(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            logger.debug(
                "Resource %s: %s/%s version %d",
                event.kind.value,
                event.resource_type,
                event.resource_id,
                event.version_id,
            )
            self.published += 1
            for handler in self._handlers:
                try:
                    await handler(event)
                except Exception:
                    logger.exception(
                        "Event handler failed for %s %s/%s",
                        event.kind.value,
                        event.resource_type,
                        event.resource_id,
                    )
