from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]

    @property
    def correlation_id(self) -> str | None:
        return self.payload.get("correlation_id")


EventHandler = Callable[[InternalEvent], None]


def _matches(pattern: str, event_name: str) -> bool:
    if pattern.endswith(".*"):
        return event_name.startswith(pattern[:-1])
    return pattern == event_name


class InProcessEventBus:
    """Synchronous bus. Patterns are exact names or ``prefix.*``."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[pattern]:
            self._subscribers[pattern].append(handler)

    def subscribe_many(self, patterns: Iterable[str], handler: EventHandler) -> None:
        for pattern in patterns:
            self.subscribe(pattern, handler)

    def handlers_for(self, event_name: str) -> list[EventHandler]:
        handlers: list[EventHandler] = []
        for pattern, subscribed in list(self._subscribers.items()):
            if _matches(pattern, event_name):
                handlers.extend(handler for handler in subscribed if handler not in handlers)
        return handlers

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        for handler in self.handlers_for(event_name):
            handler(event)


event_bus = InProcessEventBus()
