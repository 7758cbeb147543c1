"""
Event sinks for run and cycle progress.

The orchestrator and the cycle announce progress through ``EventSink.publish``.
Publishing is synchronous and non-blocking: a slow or disconnected consumer
drops messages rather than holding up a run, and a failing sink never raises
into the caller.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Published event types"""

    RUN_STARTED = "run_started"
    CYCLE_STARTED = "cycle_started"
    TRADE = "trade"
    PORTFOLIO = "portfolio"  # HOLD outcome
    ANALYZE = "analyze"  # tool-use round trip
    EOD_SUMMARY = "eod_summary"
    RUN_COMPLETE = "run_complete"
    ERROR = "error"


class ArenaEvent(BaseModel):
    """Event envelope sent to subscribers"""

    type: EventType
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def to_message(self) -> dict:
        """JSON-safe ``{type, data, timestamp}`` form."""
        return self.model_dump(mode="json")


class EventSink(ABC):
    """
    Publish channel for progress events.

    Usage:
        sink.publish(EventType.TRADE, {"agent_name": "GPT-4 Trader", ...})
    """

    @abstractmethod
    def publish(self, event_type: Union[EventType, str], payload: Optional[dict] = None) -> None:
        """Fire and forget. Must not block or raise."""
        pass


class NullEventSink(EventSink):
    """Discards everything"""

    def publish(self, event_type: Union[EventType, str], payload: Optional[dict] = None) -> None:
        return None


class LoggingEventSink(EventSink):
    """Logs every event at INFO"""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def publish(self, event_type: Union[EventType, str], payload: Optional[dict] = None) -> None:
        kind = EventType(event_type).value
        logger.log(self.level, f"[event] {kind}: {payload or {}}")


class BroadcastEventSink(EventSink):
    """
    Fans events out to subscriber queues.

    Each subscriber gets a bounded ``asyncio.Queue``; when it is full the
    event is dropped for that subscriber only.

    Usage:
        sink = BroadcastEventSink()
        queue = sink.subscribe()
        event = await queue.get()
        sink.unsubscribe(queue)
    """

    def __init__(self, queue_size: int = 1000):
        self.queue_size = queue_size
        self._subscribers: set[asyncio.Queue] = set()
        self.dropped = 0

    def subscribe(self, maxsize: Optional[int] = None) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or self.queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event_type: Union[EventType, str], payload: Optional[dict] = None) -> None:
        event = ArenaEvent(type=EventType(event_type), data=payload or {})
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self.dropped += 1
                logger.debug(f"Subscriber queue full, dropped {event.type.value} event")


class CompositeEventSink(EventSink):
    """Publishes to several sinks; one failing sink does not affect the others"""

    def __init__(self, *sinks: EventSink):
        self.sinks = list(sinks)

    def add(self, sink: EventSink) -> None:
        self.sinks.append(sink)

    def publish(self, event_type: Union[EventType, str], payload: Optional[dict] = None) -> None:
        for sink in self.sinks:
            try:
                sink.publish(event_type, payload)
            except Exception as e:
                logger.warning(f"Event sink {type(sink).__name__} failed: {e}")


def safe_publish(
    sink: Optional[EventSink],
    event_type: Union[EventType, str],
    payload: Optional[dict] = None,
) -> None:
    """Publish through any sink, logging instead of raising on failure."""
    if sink is None:
        return
    try:
        sink.publish(event_type, payload)
    except Exception as e:
        logger.warning(f"Failed to publish {event_type} event: {e}")
