"""
Agentflow - Event Bus
=====================

In-process publish/subscribe hub connecting ingress, reactions, the quality
pipeline and any observers.

Handlers run in registration order. A handler that raises is logged and
skipped; the remaining handlers for the same event still run.
"""

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Union
from uuid import uuid4

import structlog

from agentflow.core.events.sinks import EventSink
from agentflow.core.events.types import EventType, PipelineEvent

logger = structlog.get_logger()

WILDCARD = "*"

EventHandler = Callable[[PipelineEvent], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class _Subscription:
    token: str
    event_type: str
    handler: EventHandler


class EventBus:
    """Publish/subscribe hub with an optional durable sink."""

    def __init__(self, sink: Optional[EventSink] = None):
        self.sink = sink
        self._subscriptions: List[_Subscription] = []

    def subscribe(self, event_type: Union[EventType, str], handler: EventHandler) -> str:
        """
        Register a handler for one event type, or ``"*"`` for every event.

        Returns:
            Token to pass to ``unsubscribe``
        """
        key = event_type.value if isinstance(event_type, EventType) else event_type
        token = str(uuid4())
        # Copy-on-write so an in-progress publish keeps iterating its snapshot
        self._subscriptions = [*self._subscriptions, _Subscription(token, key, handler)]
        return token

    def unsubscribe(self, token: str) -> bool:
        remaining = [s for s in self._subscriptions if s.token != token]
        removed = len(remaining) != len(self._subscriptions)
        self._subscriptions = remaining
        return removed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, event: PipelineEvent) -> None:
        """Append to the sink, then invoke every matching handler in order."""
        if self.sink is not None:
            try:
                if getattr(self.sink, "blocking", False):
                    await asyncio.get_running_loop().run_in_executor(None, self.sink.append, event)
                else:
                    self.sink.append(event)
            except Exception as e:
                logger.error(
                    "event_sink_failed",
                    event_type=event.event_type.value,
                    request_id=event.request_id,
                    error=str(e),
                )

        key = event.event_type.value
        for subscription in self._subscriptions:
            if subscription.event_type not in (key, WILDCARD):
                continue
            try:
                result = subscription.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "event_handler_failed",
                    event_type=key,
                    request_id=event.request_id,
                    error=str(e),
                    exc_info=True,
                )

    async def emit(
        self,
        event_type: EventType,
        request_id: str,
        data: Optional[dict[str, Any]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> PipelineEvent:
        """Build and publish an event in one call."""
        event = PipelineEvent(
            event_type=event_type,
            request_id=request_id,
            data=data or {},
            metadata=metadata or {},
        )
        await self.publish(event)
        return event

    def get_events(self, request_id: str) -> List[PipelineEvent]:
        if self.sink is None:
            return []
        return self.sink.get_events(request_id)
