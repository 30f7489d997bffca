from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

QUEUE_CHANGE = "queuechange"
FLUSH = "flush"
EVENT_NAMES = (QUEUE_CHANGE, FLUSH)


@dataclass(frozen=True)
class QueueChange:
    kind: str                 # added | removed | status
    local_id: str
    status: Optional[str]
    queue_length: int


@dataclass(frozen=True)
class FlushReport:
    attempted: int
    flushed: int
    failed: int
    retried: int
    remaining: int
    at: float


class Subscription:
    def __init__(self, events: "QueueEvents", name: str, callback: Callable[[Any], None]):
        self._events = events
        self.name = name
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._events._remove(self)
            self.active = False


class QueueEvents:
    """
    Synchronous observer registry for queue notifications.

    A failing listener is logged and skipped; it never affects the queue or
    the other listeners.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Subscription]] = {name: [] for name in EVENT_NAMES}

    def subscribe(self, name: str, callback: Callable[[Any], None]) -> Subscription:
        if name not in self._listeners:
            raise ValueError(f"Unknown queue event {name!r}; expected one of {EVENT_NAMES}")
        sub = Subscription(self, name, callback)
        self._listeners[name].append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        try:
            self._listeners[sub.name].remove(sub)
        except ValueError:
            pass

    def emit(self, name: str, payload: Any) -> None:
        if name not in self._listeners:
            raise ValueError(f"Unknown queue event {name!r}")
        for sub in list(self._listeners[name]):
            try:
                sub.callback(payload)
            except Exception:
                logger.exception("Queue event listener failed", extra={"event": name})
