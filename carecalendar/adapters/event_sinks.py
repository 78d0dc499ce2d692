"""
Event sinks for slot lifecycle facts.

Publishing is a non-blocking hand-off; delivery to notification or audit
systems happens elsewhere, never inside a state transition.
"""

from __future__ import annotations

import logging
import queue
from typing import List, Protocol

from ..domain.events import EventType, SlotEvent

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    def publish(self, event: SlotEvent) -> None:
        """Accept an event without blocking."""


class QueueEventSink:
    """Buffers events in a thread-safe queue for a consumer to drain."""

    def __init__(self, maxsize: int = 0):
        self._queue: "queue.Queue[SlotEvent]" = queue.Queue(maxsize=maxsize)

    def publish(self, event: SlotEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.error("Event queue full; dropping %s for slot %s", event.type.value, event.slot_id)

    def drain(self) -> List[SlotEvent]:
        events: List[SlotEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def of_type(self, event_type: EventType) -> List[SlotEvent]:
        """Non-destructive view of queued events of one type."""
        with self._queue.mutex:
            return [event for event in self._queue.queue if event.type == event_type]

    def __len__(self) -> int:
        return self._queue.qsize()


class LoggingEventSink:
    """Writes events to the log; the default when no consumer is wired."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def publish(self, event: SlotEvent) -> None:
        logger.log(
            self.level,
            "%s slot=%s provider=%s patient=%s at=%s",
            event.type.value,
            event.slot_id,
            event.provider_id,
            event.patient_id,
            event.timestamp.to_iso8601_string(),
        )


class FanOutEventSink:
    """Publishes each event to several sinks."""

    def __init__(self, *sinks: EventSink):
        self.sinks = list(sinks)

    def publish(self, event: SlotEvent) -> None:
        for sink in self.sinks:
            sink.publish(event)
