"""
Event Bus: fire-and-forget distribution of engine events.

The decision path publishes with `publish_nowait`, which never blocks and never
awaits. A background task (`start`) hands each event to its subscribers, so
slow logging, metrics or webhook delivery can not stall evaluation.

Features:
- Typed events
- Sync or async handlers, isolated from each other's failures
- Bounded queue with drop accounting
- Bounded history for debugging and tests
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Coroutine, Deque, Dict, List, Optional, Union

log = logging.getLogger("hedgearb")


class EventType(Enum):
    # Evaluation
    GAP_COMPUTED = auto()
    QUOTE_UNAVAILABLE = auto()

    # Transitions
    POSITION_OPENED = auto()
    POSITION_CLOSED = auto()
    ROLLBACK = auto()

    # Legs
    LEG_FILLED = auto()
    LEG_FAILED = auto()
    PARTIAL_FAILURE = auto()
    OUTCOME_UNKNOWN = auto()
    SLIPPAGE_EXCEEDED = auto()

    # Feeds
    FEED_ERROR = auto()


@dataclass
class Event:
    type: EventType
    data: Dict[str, Any]
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    source: Optional[str] = None

    def __str__(self) -> str:
        return f"Event({self.type.name}, ts={self.timestamp_ms}, source={self.source})"


Handler = Union[
    Callable[[Event], Coroutine[Any, Any, None]],
    Callable[[Event], None],
]


@dataclass
class Subscription:
    handler: Handler
    name: Optional[str] = None


class EventBus:
    """
    Usage:
        bus = EventBus()
        bus.subscribe(EventType.PARTIAL_FAILURE, on_partial)
        bus.subscribe_all(metrics.observe)
        task = asyncio.create_task(bus.start())
        bus.emit(EventType.GAP_COMPUTED, source="controller", gap_ab=0.4)
        ...
        bus.stop()
        await bus.drain()
    """

    DEFAULT_HISTORY_SIZE = 500
    DEFAULT_QUEUE_SIZE = 10000

    def __init__(self, history_size: int = DEFAULT_HISTORY_SIZE, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._subscribers: Dict[EventType, List[Subscription]] = {}
        self._global_subscribers: List[Subscription] = []
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=queue_size)
        self._running = False
        self._history: Deque[Event] = deque(maxlen=history_size)
        self._stats = {
            "events_published": 0,
            "events_processed": 0,
            "events_dropped": 0,
            "handler_errors": 0,
        }

    def subscribe(self, event_type: EventType, handler: Handler, name: Optional[str] = None) -> Subscription:
        sub = Subscription(handler=handler, name=name or getattr(handler, "__name__", None))
        self._subscribers.setdefault(event_type, []).append(sub)
        return sub

    def subscribe_all(self, handler: Handler, name: Optional[str] = None) -> Subscription:
        sub = Subscription(handler=handler, name=name or getattr(handler, "__name__", None))
        self._global_subscribers.append(sub)
        return sub

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def publish_nowait(self, event: Event) -> bool:
        """Queue an event without blocking. Returns False if it was dropped."""
        self._history.append(event)
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._stats["events_dropped"] += 1
            return False
        self._stats["events_published"] += 1
        return True

    def emit(self, event_type: EventType, source: Optional[str] = None, **data: Any) -> bool:
        return self.publish_nowait(Event(type=event_type, data=data, source=source))

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Dispatch events until `stop()` is called. Run as a background task."""
        self._running = True
        while self._running:
            try:
                try:
                    event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                await self._process_event(event)
            except asyncio.CancelledError:
                break

    async def _process_event(self, event: Event) -> None:
        handlers = list(self._global_subscribers)
        handlers.extend(self._subscribers.get(event.type, []))
        for sub in handlers:
            try:
                if asyncio.iscoroutinefunction(sub.handler):
                    await sub.handler(event)
                else:
                    sub.handler(event)
            except Exception as exc:
                self._stats["handler_errors"] += 1
                log.warning(json.dumps({
                    "event": "event_bus_handler_error",
                    "event_type": event.type.name,
                    "handler": sub.name,
                    "err": str(exc),
                }))
        self._stats["events_processed"] += 1

    def stop(self) -> None:
        self._running = False

    async def drain(self, timeout: float = 5.0) -> int:
        """Process whatever is still queued. Used at shutdown and in tests."""
        count = 0
        deadline = time.time() + timeout
        while not self._queue.empty() and time.time() < deadline:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._process_event(event)
            count += 1
        return count

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_history(self, event_type: Optional[EventType] = None, limit: int = 100) -> List[Event]:
        events = list(self._history)
        if event_type is not None:
            events = [e for e in events if e.type == event_type]
        return events[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "queue_size": self._queue.qsize(),
            "history_size": len(self._history),
            "running": self._running,
        }
