"""Lifecycle events emitted while a store is initialized and torn down.

The initializer and the harness never call a logger directly for
lifecycle progress. They emit LifecycleEvents to an injected EventSink;
the default sink writes them to the standard logging module, and tests
can swap in a RecordingEventSink to assert on what happened.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LifecycleEvent:
    """A structured lifecycle event.

    Attributes:
        name: Dotted event name, e.g. "seed.collection".
        level: logging level the event should be reported at.
        fields: Event payload; values should be JSON-friendly.
    """

    name: str
    level: int = logging.INFO
    fields: dict[str, Any] = field(default_factory=dict)


class EventSink(Protocol):
    def emit(self, event: LifecycleEvent) -> None:
        ...


class LoggingEventSink:
    """Forward events to a logger as "<name> <json payload>"."""

    def __init__(self, target: logging.Logger | None = None) -> None:
        self._logger = target or logger

    def emit(self, event: LifecycleEvent) -> None:
        self._logger.log(
            event.level,
            "%s %s",
            event.name,
            json.dumps(event.fields, default=str, sort_keys=True),
        )


class RecordingEventSink:
    """Keep every event in memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[LifecycleEvent] = []

    def emit(self, event: LifecycleEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> tuple[LifecycleEvent, ...]:
        with self._lock:
            return tuple(self._events)

    @property
    def names(self) -> list[str]:
        return [event.name for event in self.events]

    def named(self, name: str) -> list[LifecycleEvent]:
        return [event for event in self.events if event.name == name]


def emit(
    sink: EventSink, name: str, level: int = logging.INFO, **fields: Any
) -> None:
    sink.emit(LifecycleEvent(name=name, level=level, fields=fields))
