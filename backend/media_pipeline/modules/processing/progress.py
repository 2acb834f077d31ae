"""Progress channel for processing jobs.

Workers publish ``ProgressEvent``s; the status endpoint reads the latest
event per media item and the SSE endpoint subscribes to the live stream.
Publishing never blocks: a subscriber that falls behind loses its oldest
events, not the worker's time.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Optional

from media_pipeline.core.clock import utcnow


@dataclass(frozen=True)
class ProgressEvent:
    """One progress update for a media item."""
    media_item_id: uuid.UUID
    progress: int  # 0-100
    stage: str
    status: str
    message: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")

    def to_dict(self) -> dict:
        return {
            "media_item_id": str(self.media_item_id),
            "progress": self.progress,
            "stage": self.stage,
            "status": self.status,
            "message": self.message,
            "timestamp": self.timestamp.isoformat() + "Z",
        }


class ProgressBroker:
    """In-process fan-out of progress events.

    Must only be used from the event loop thread; worker threads hand events
    over with ``loop.call_soon_threadsafe(broker.publish, event)``.
    """

    def __init__(self, subscriber_queue_size: int = 32):
        self.subscriber_queue_size = subscriber_queue_size
        self._latest: dict[uuid.UUID, ProgressEvent] = {}
        self._subscribers: dict[uuid.UUID, set[asyncio.Queue]] = {}

    def publish(self, event: ProgressEvent) -> None:
        self._latest[event.media_item_id] = event
        for queue in self._subscribers.get(event.media_item_id, ()):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)

    def latest(self, media_item_id: uuid.UUID) -> Optional[ProgressEvent]:
        return self._latest.get(media_item_id)

    def forget(self, media_item_id: uuid.UUID) -> None:
        self._latest.pop(media_item_id, None)

    @asynccontextmanager
    async def subscribe(self, media_item_id: uuid.UUID) -> AsyncIterator[asyncio.Queue]:
        """Subscribe to events for one media item.

        The latest known event, if any, is delivered first.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.subscriber_queue_size)
        latest = self._latest.get(media_item_id)
        if latest is not None:
            queue.put_nowait(latest)
        self._subscribers.setdefault(media_item_id, set()).add(queue)
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(media_item_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[media_item_id]

    def subscriber_count(self, media_item_id: uuid.UUID) -> int:
        return len(self._subscribers.get(media_item_id, ()))
