from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
import logging
from typing import Any


logger = logging.getLogger("imobcrm.events")


class EventName(StrEnum):
    LEAD_CREATED = "lead.created"


@dataclass(frozen=True)
class InternalEvent:
    name: EventName
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous fan-out of domain events to handlers registered at startup."""

    def __init__(self) -> None:
        self._subscribers: dict[EventName, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: EventName, handler: EventHandler) -> None:
        if handler not in self._subscribers[event_name]:
            self._subscribers[event_name].append(handler)

    def handlers(self, event_name: EventName) -> tuple[EventHandler, ...]:
        return tuple(self._subscribers.get(event_name, ()))

    def publish(self, event_name: EventName, payload: dict[str, Any]) -> int:
        """Deliver to every handler in subscription order; returns how many ran."""

        event = InternalEvent(name=EventName(event_name), payload=payload)
        delivered = self.handlers(event.name)
        for handler in delivered:
            handler(event)
        logger.debug("event_published", extra={"event_name": event.name.value, "outcome": len(delivered)})
        return len(delivered)


event_bus = InProcessEventBus()
