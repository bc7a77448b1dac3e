from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any] = field(default_factory=dict)


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous fan-out for lifecycle and import notifications."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        # Lifespan may run more than once per process under the test client.
        if handler not in self._subscribers[event_name]:
            self._subscribers[event_name].append(handler)

    def handlers_for(self, event_name: str) -> list[EventHandler]:
        return list(self._subscribers.get(event_name, []))

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        for handler in self.handlers_for(event_name):
            handler(event)


event_bus = InProcessEventBus()
