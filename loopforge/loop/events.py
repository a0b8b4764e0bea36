"""Typed publish/subscribe channel for loop lifecycle events."""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, AsyncGenerator, Callable, Deque, Dict, List, Optional, Tuple

import pydantic as pd


logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Kinds of events broadcast to transport consumers."""

    STDOUT = "stdout"
    STDERR = "stderr"
    SYSTEM = "system"
    RALPH_STATUS = "ralph_status"
    COMPLETE = "complete"
    ERROR = "error"
    ITERATION_UPDATE = "iteration-update"
    REVIEW_START = "review:start"
    REVIEW_COMPLETE = "review:complete"
    REVIEW_ERROR = "review:error"
    E2E_START = "e2e:start"
    E2E_STATUS = "e2e:status"
    E2E_SCREENSHOT = "e2e:screenshot"
    E2E_COMPLETE = "e2e:complete"
    E2E_ERROR = "e2e:error"
    SESSION_END = "session:end"


class LoopEvent(pd.BaseModel):
    """A single event emitted for one session."""

    type: EventType
    session_id: str
    timestamp: datetime = pd.Field(default_factory=datetime.now)
    data: Dict[str, Any] = pd.Field(default_factory=dict)

    model_config = pd.ConfigDict(extra="forbid")


EventListener = Callable[[LoopEvent], None]


class EventBus:
    """Broadcasts loop events to async subscribers and synchronous listeners.

    Publishing is synchronous so events for a session leave the bus in the
    order their output was produced. Subscribers get bounded queues; events
    published while nobody is subscribed are buffered and handed to the next
    subscriber.
    """

    def __init__(self, buffer_size: int = 1000) -> None:
        """Initialize the bus.

        Args:
            buffer_size: Maximum number of events kept per queue
        """
        self._buffer_size = buffer_size
        self._buffer: Deque[LoopEvent] = deque(maxlen=buffer_size)
        self._consumers: List[Tuple[asyncio.Queue[LoopEvent], Optional[str]]] = []
        self._listeners: List[EventListener] = []

    def publish(
        self,
        session_id: str,
        event_type: EventType,
        data: Optional[Dict[str, Any]] = None,
    ) -> LoopEvent:
        """Create and broadcast an event.

        Args:
            session_id: Session the event belongs to
            event_type: Kind of event
            data: Event payload

        Returns:
            The published LoopEvent
        """
        event = LoopEvent(type=event_type, session_id=session_id, data=data or {})
        self._dispatch(event)
        return event

    def add_listener(self, listener: EventListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def subscribe(
        self, session_id: Optional[str] = None
    ) -> AsyncGenerator[LoopEvent, None]:
        """Subscribe to events as an async generator.

        Args:
            session_id: Only yield events for this session when given

        Yields:
            LoopEvent objects as they are published

        Example:
            async for event in bus.subscribe("session-1"):
                print(f"{event.type.value}: {event.data}")
        """
        consumer_queue: asyncio.Queue[LoopEvent] = asyncio.Queue(maxsize=self._buffer_size)
        self._consumers.append((consumer_queue, session_id))

        remaining: Deque[LoopEvent] = deque(maxlen=self._buffer_size)
        while self._buffer:
            buffered_event = self._buffer.popleft()
            if session_id is None or buffered_event.session_id == session_id:
                consumer_queue.put_nowait(buffered_event)
            else:
                remaining.append(buffered_event)
        self._buffer = remaining

        try:
            while True:
                event = await consumer_queue.get()
                yield event
        finally:
            self._consumers = [
                entry for entry in self._consumers if entry[0] is not consumer_queue
            ]

    @property
    def subscriber_count(self) -> int:
        return len(self._consumers) + len(self._listeners)

    def _dispatch(self, event: LoopEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Event listener failed on {event.type.value} for {event.session_id}")

        if not self._consumers:
            if len(self._buffer) == self._buffer.maxlen:
                oldest = self._buffer[0]
                logger.warning(
                    f"Buffer full, dropped oldest event: {oldest.type.value} from {oldest.session_id}"
                )
            self._buffer.append(event)
            return

        for consumer_queue, session_filter in self._consumers:
            if session_filter is not None and session_filter != event.session_id:
                continue
            try:
                consumer_queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Consumer queue full, dropped event: {event.type.value} from {event.session_id}"
                )
