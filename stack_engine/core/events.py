"""Event emitters for the stack engine."""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Iterable, List

from stack_engine.core.events_model import StackEvent

logger = logging.getLogger(__name__)


ALLOWED_EVENTS = {
    "service.transitioned",
    "certificate.issued",
    "certificate.renewed",
    "certificate.renewal_failed",
    "apply.started",
    "apply.finished",
}


def _validate(event: StackEvent) -> None:
    if event.event_type not in ALLOWED_EVENTS:
        raise ValueError(f"Invalid event type: {event.event_type}")
    if not event.subject:
        raise ValueError("Event must have a subject")


class EventEmitter(ABC):
    """Abstract event emitter."""

    @abstractmethod
    def emit(self, events: Iterable[StackEvent]) -> None:
        """Emit one or more events."""
        pass


class LoggingEventEmitter(EventEmitter):
    """Writes events to the log with their metadata as structured extras."""

    def __init__(self, log: logging.Logger = logger):
        self._log = log

    def emit(self, events: Iterable[StackEvent]) -> None:
        for event in events:
            _validate(event)
            fields = " ".join(f"{k}={v}" for k, v in event.metadata.items() if v is not None)
            self._log.info(
                f"[event] {event.event_type} | {event.subject} | {fields}",
                extra={
                    "event_type": event.event_type,
                    "subject": event.subject,
                    "event_metadata": event.metadata,
                },
            )


class MemoryEventEmitter(EventEmitter):
    """Keeps events in memory (tests, API inspection)."""

    def __init__(self):
        self.events: List[StackEvent] = []
        self._lock = threading.Lock()

    def emit(self, events: Iterable[StackEvent]) -> None:
        with self._lock:
            for event in events:
                _validate(event)
                self.events.append(event)

    def of_type(self, event_type: str) -> List[StackEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]


class MultiEventEmitter(EventEmitter):
    """Fan-out to multiple emitters."""

    def __init__(self, emitters: Iterable[EventEmitter]):
        self._emitters = list(emitters)

    def emit(self, events: Iterable[StackEvent]) -> None:
        events = list(events)
        for emitter in self._emitters:
            emitter.emit(events)


class NullEventEmitter(EventEmitter):
    """No-op emitter (used when events are not needed)."""

    def emit(self, events: Iterable[StackEvent]) -> None:
        pass
