"""
Adapters layer - Storage backends and event sinks.
"""

from .event_sinks import EventSink, FanOutEventSink, LoggingEventSink, QueueEventSink
from .memory_store import InMemorySchedulingStore

__all__ = [
    "EventSink",
    "FanOutEventSink",
    "InMemorySchedulingStore",
    "LoggingEventSink",
    "QueueEventSink",
]
