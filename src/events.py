"""
Event Streaming - In-memory pub/sub for secret sync phase transitions.

Every phase change of a secret spec is published as a PhaseTransitionEvent.
Subscribers (the SSE endpoint, tests, loggers) consume them through
asyncio queues.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class SyncPhase(Enum):
    """Phase of a secret spec's synchronization."""

    PENDING = "Pending"
    SYNCED = "Synced"
    RETRYING = "Retrying"
    FAILED = "Failed"


def utc_timestamp(epoch: Optional[float] = None) -> str:
    """ISO-8601 UTC timestamp with a ``Z`` suffix."""
    moment = (
        datetime.fromtimestamp(epoch, tz=timezone.utc)
        if epoch is not None
        else datetime.now(timezone.utc)
    )
    return moment.replace(tzinfo=None).isoformat() + "Z"


@dataclass
class PhaseTransitionEvent:
    """Event emitted when a secret spec moves from one phase to another."""

    spec_id: str
    old_phase: Optional[SyncPhase]
    new_phase: SyncPhase
    timestamp: str
    error_class: Optional[str] = None
    message: str = ""

    @property
    def event_type(self) -> str:
        return self.new_phase.value.upper()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "spec_id": self.spec_id,
            "old_phase": self.old_phase.value if self.old_phase else None,
            "new_phase": self.new_phase.value,
            "timestamp": self.timestamp,
            "error_class": self.error_class,
            "message": self.message,
        }

    def to_sse(self) -> str:
        """
        Format the event as an SSE message.

        Returns:
            SSE-formatted string with event type and JSON data lines.
        """
        json_data = json.dumps(self.to_dict())
        return f"event: {self.event_type}\ndata: {json_data}\n\n"


class EventSubscription:
    """
    Async iterator for consuming events from a subscription.

    Reads events from a queue, applying an optional filter function.
    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[[PhaseTransitionEvent], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator[PhaseTransitionEvent]:
        return self

    async def __anext__(self) -> PhaseTransitionEvent:
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus for phase transition events.

    Maintains an ``asyncio.Queue`` per subscriber and publishes events
    non-blocking. Full queues cause events to be dropped for that
    subscriber so publishers are never held up. The most recent events are
    also kept in a bounded history for late readers.
    """

    def __init__(self, queue_size: int = 256, history_size: int = 100):
        self._queue_size = queue_size
        self._history_size = history_size
        self._history: List[PhaseTransitionEvent] = []
        self._subscribers: Dict[str, asyncio.Queue] = {}

    def publish(self, event: PhaseTransitionEvent) -> None:
        """
        Publish an event to all subscribers (non-blocking).

        Args:
            event: The event to publish.
        """
        self._history.append(event)
        if len(self._history) > self._history_size:
            del self._history[: len(self._history) - self._history_size]

        for subscriber_id, queue in list(self._subscribers.items()):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped event for subscriber {subscriber_id}: queue full"
                )

    def recent(self, spec_id: Optional[str] = None) -> List[PhaseTransitionEvent]:
        """Recent events, oldest first, optionally for a single spec."""
        if spec_id is None:
            return list(self._history)
        return [event for event in self._history if event.spec_id == spec_id]

    def subscribe(
        self,
        filter_fn: Optional[Callable[[PhaseTransitionEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Args:
            filter_fn: Optional predicate applied to each event.
                Only events for which it returns ``True`` are yielded.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[subscriber_id] = queue

        logger.info(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    def unsubscribe(self, subscriber_id: str) -> None:
        """
        Remove a subscriber and clean up its queue.

        Sends a ``None`` sentinel so that the subscription's async
        iterator terminates gracefully.

        Args:
            subscriber_id: The ID returned by :meth:`subscribe`.
        """
        queue = self._subscribers.pop(subscriber_id, None)

        if queue is not None:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                pass
            logger.info(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        """Return the current number of subscribers."""
        return len(self._subscribers)
