"""Fan-out of progress events to live subscribers (e.g. WebSocket clients)."""

import asyncio
import logging
from typing import Optional, Set

from docqueue.jobs.models import ProgressEvent

logger = logging.getLogger(__name__)


class Subscription:
    """One subscriber's buffered view of the event stream."""

    def __init__(self, maxsize: int, job_id: Optional[str] = None):
        self.queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=maxsize)
        self.job_id = job_id
        self.dropped = 0

    def wants(self, event: ProgressEvent) -> bool:
        return self.job_id is None or event.job_id == self.job_id

    async def get(self) -> ProgressEvent:
        return await self.queue.get()


class EventHub:
    """Delivers each published event to every matching subscriber.

    A subscriber whose buffer is full misses the event; publishing never blocks.
    """

    def __init__(self, buffer_size: int = 100):
        self._buffer_size = buffer_size
        self._subscribers: Set[Subscription] = set()

    def subscribe(self, job_id: Optional[str] = None) -> Subscription:
        sub = Subscription(self._buffer_size, job_id=job_id)
        self._subscribers.add(sub)
        logger.debug("Subscriber added job_id=%s total=%d", job_id, len(self._subscribers))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        self._subscribers.discard(sub)
        logger.debug("Subscriber removed total=%d", len(self._subscribers))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: ProgressEvent) -> None:
        sent = 0
        for sub in list(self._subscribers):
            if not sub.wants(event):
                continue
            try:
                sub.queue.put_nowait(event)
                sent += 1
            except asyncio.QueueFull:
                sub.dropped += 1
                logger.warning(
                    "Subscriber buffer full, dropping event type=%s job_id=%s",
                    event.type, event.job_id,
                )
        logger.debug(
            "Broadcast event type=%s sent=%d subscribers=%d",
            event.type, sent, len(self._subscribers),
        )
