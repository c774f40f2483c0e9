"""ObserverHub — fan-out bridge between the engine and WebSocket clients."""
import asyncio
import logging
from typing import Any

from ..config import CLIENT_QUEUE_SIZE

logger = logging.getLogger(__name__)


class ObserverHub:
    def __init__(self, queue_size: int = CLIENT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: dict[str, asyncio.Queue] = {}

    def subscribe(self, client_id: str) -> asyncio.Queue:
        """Register a new client. Returns a queue that receives (event, data) tuples."""
        q: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers[client_id] = q
        return q

    def unsubscribe(self, client_id: str):
        self._subscribers.pop(client_id, None)

    @property
    def client_count(self) -> int:
        return len(self._subscribers)

    async def broadcast(self, event: str, data: Any):
        """Push an event to all connected clients."""
        dead = []
        for cid, q in self._subscribers.items():
            if not _offer(q, event, data):
                dead.append(cid)
        for cid in dead:
            logger.warning("Dropping unresponsive client %s", cid)
            self._subscribers.pop(cid, None)

    async def send(self, client_id: str, event: str, data: Any):
        """Push an event to one client only."""
        q = self._subscribers.get(client_id)
        if q is not None and not _offer(q, event, data):
            self._subscribers.pop(client_id, None)


def _offer(q: asyncio.Queue, event: str, data: Any) -> bool:
    try:
        q.put_nowait((event, data))
        return True
    except asyncio.QueueFull:
        # Client too slow: drop oldest
        try:
            q.get_nowait()
            q.put_nowait((event, data))
            return True
        except (asyncio.QueueEmpty, asyncio.QueueFull):
            return False
