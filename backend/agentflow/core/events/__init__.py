"""
Agentflow - Events
==================
"""

from .bus import WILDCARD, EventBus, EventHandler
from .sinks import EventSink, JsonlEventSink, MemoryEventSink
from .types import EventBuilder, EventType, PipelineEvent

__all__ = [
    "EventBus",
    "EventHandler",
    "WILDCARD",
    "EventSink",
    "JsonlEventSink",
    "MemoryEventSink",
    "EventBuilder",
    "EventType",
    "PipelineEvent",
]
