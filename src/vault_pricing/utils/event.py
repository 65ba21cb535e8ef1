from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List


class EventName(str, Enum):
    LOADING = "LOADING"
    READY = "READY"
    ERROR = "ERROR"
    FRESHNESS = "FRESHNESS"


@dataclass(frozen=True, slots=True)
class SubscriptionEvent:
    name: EventName
    symbol: str
    state: Any


Listener = Callable[[SubscriptionEvent], None]


class EventEmitter:
    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register a listener and return a callable that removes it."""
        self._listeners.append(listener)

        def _remove() -> None:
            self.remove_listener(listener)

        return _remove

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, name: EventName, symbol: str, state: Any) -> None:
        event = SubscriptionEvent(name=name, symbol=symbol, state=state)
        for listener in list(self._listeners):
            listener(event)
