"""In-process publish/subscribe channel for real-time event notification.

Delivery is fire-and-forget: nothing is persisted, and a subscriber whose
queue is full misses messages rather than slowing the publisher down.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class BusMessage:
    channel: str
    payload: Any
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    message_id: str = field(default_factory=lambda: uuid4().hex)


class EventBus:
    def __init__(self, max_history: int = 1000, queue_size: int = 1000):
        self.max_history = max_history
        self.queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue]] = {}
        self._history: dict[str, deque[BusMessage]] = {}
        self.dropped = 0

    def subscribe(self, channel: str) -> asyncio.Queue:
        """Register a new subscriber queue on ``channel``."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.setdefault(channel, set()).add(queue)
        return queue

    def unsubscribe(self, channel: str, queue: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(channel)
        if subscribers:
            subscribers.discard(queue)
            if not subscribers:
                del self._subscribers[channel]

    async def publish(self, channel: str, payload: Any) -> int:
        """Deliver to every current subscriber. Returns how many received it."""
        message = BusMessage(channel=channel, payload=payload)
        history = self._history.setdefault(channel, deque(maxlen=self.max_history))
        history.append(message)

        delivered = 0
        for queue in list(self._subscribers.get(channel, ())):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                self.dropped += 1
                logger.warning("subscriber_queue_full", channel=channel)
        return delivered

    def recent(self, channel: str, limit: int = 100) -> list[BusMessage]:
        """Most recent messages published on ``channel``, oldest first."""
        history = self._history.get(channel, ())
        return list(history)[-limit:]

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))
