"""
In-process change feed.

Subscribers register per user and receive every row change addressed to
that user. Used to keep an open session's notification list current.
"""
import asyncio
import logging
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class ChangeEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["INSERT", "UPDATE", "DELETE"]
    table: str
    row: dict[str, Any] = Field(default_factory=dict)


class ChangeFeed:
    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._subscribers: dict[str, list[asyncio.Queue]] = {}

    def subscribe(self, user_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.setdefault(user_id, []).append(queue)
        return queue

    def unsubscribe(self, user_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(user_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(user_id, None)

    def subscriber_count(self, user_id: Optional[str] = None) -> int:
        if user_id is not None:
            return len(self._subscribers.get(user_id, []))
        return sum(len(q) for q in self._subscribers.values())

    def publish(self, user_id: str, event: ChangeEvent) -> int:
        """Deliver to every subscriber of the user; returns how many got it."""
        delivered = 0
        for queue in self._subscribers.get(user_id, []):
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"[ChangeFeed] queue full for user {user_id}, dropping {event.table} {event.kind}")
        return delivered
