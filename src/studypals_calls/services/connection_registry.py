"""WebSocket connections of users attached to the signaling relay."""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Tracks each user's relay WebSockets.

    An asyncio.Lock protects the mapping; sends work on a snapshot so a slow
    client does not block registration of others.
    """

    def __init__(self):
        self._connections: dict[str, set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def add(self, user_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            self._connections[user_id].add(websocket)
            logger.info(f"User {user_id} connected. Connections: {len(self._connections[user_id])}")

    async def remove(self, user_id: str, websocket: WebSocket) -> bool:
        """Remove a connection. Returns True if it was registered."""
        async with self._lock:
            sockets = self._connections.get(user_id)
            if not sockets or websocket not in sockets:
                return False
            sockets.discard(websocket)
            if not sockets:
                del self._connections[user_id]
            logger.info(f"User {user_id} disconnected")
            return True

    async def send_to(self, user_id: str, payload: Dict[str, Any]) -> int:
        """Send ``payload`` to every connection of ``user_id``. Returns deliveries."""
        async with self._lock:
            sockets = list(self._connections.get(user_id, ()))

        delivered = 0
        for websocket in sockets:
            try:
                await websocket.send_json(payload)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping connection for {user_id}: {e}")
                await self.remove(user_id, websocket)
        return delivered

    async def user_count(self) -> int:
        async with self._lock:
            return len(self._connections)

    async def is_connected(self, user_id: str) -> bool:
        async with self._lock:
            return bool(self._connections.get(user_id))
