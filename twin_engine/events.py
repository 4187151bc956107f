"""
Synchronous event bus between the engine and its collaborators.

Collaborators (persistence, real-time fan-out) subscribe callbacks; the
engine emits one ``EngineEvent`` per tick, prediction pass, alert, cascade,
mitigation and lifecycle change.  A subscriber that raises is logged and
skipped so it can never stall the tick loop.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from twin_engine.model import utcnow

logger = logging.getLogger(__name__)


class EventName(str, Enum):
    TICK = "tick"
    PREDICTION = "prediction"
    ALERT = "alert"
    CASCADE = "cascade"
    MITIGATION = "mitigation"
    STATE_CHANGE = "stateChange"


@dataclass(frozen=True)
class EngineEvent:
    """Event record; ``sequence`` is strictly increasing per bus."""

    name: EventName
    payload: dict[str, Any]
    sequence: int
    timestamp: datetime = field(default_factory=utcnow)


Subscriber = Callable[[EngineEvent], None]


class EventBus:
    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._subscribers: list[tuple[EventName | None, Subscriber]] = []
        self._sequence = itertools.count(1)
        self._last_sequence = 0
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber, name: EventName | str | None = None) -> None:
        """Register *callback* for every event, or only for events called *name*."""
        self._subscribers.append((EventName(name) if name is not None else None, callback))

    def unsubscribe(self, callback: Subscriber) -> bool:
        before = len(self._subscribers)
        self._subscribers = [(n, cb) for n, cb in self._subscribers if cb != callback]
        return len(self._subscribers) < before

    @property
    def last_sequence(self) -> int:
        return self._last_sequence

    def emit(self, name: EventName | str, payload: dict[str, Any]) -> EngineEvent:
        """Build an event, deliver it to matching subscribers and return it."""
        name = EventName(name)
        with self._lock:
            seq = next(self._sequence)
            self._last_sequence = seq
        event = EngineEvent(name=name, payload=payload, sequence=seq, timestamp=self._clock())
        for wanted, callback in list(self._subscribers):
            if wanted is not None and wanted is not name:
                continue
            try:
                callback(event)
            except Exception as exc:
                logger.error("Subscriber %r failed on %s event: %s", callback, name.value, exc)
        return event
