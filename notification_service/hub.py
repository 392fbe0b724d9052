"""
Websocket connections per user and push delivery to them

Connections live on the app's event loop. Code running elsewhere, such as
the Kafka consumer thread, hands deliveries over with deliver_threadsafe.
"""
import asyncio
import logging
from collections import defaultdict
from concurrent.futures import Future
from typing import Any, Dict, Optional, Set
from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

class ConnectionHub:
    def __init__(self):
        self.connections: Dict[str, Set[WebSocket]] = defaultdict(set)
        self.loop: Optional[asyncio.AbstractEventLoop] = None

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self.loop = loop

    async def connect(self, user_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self.connections[user_id].add(websocket)
        logger.info(f"Client connected for {user_id} ({self.connection_count()} total)")

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        sockets = self.connections.get(user_id)
        if sockets is None:
            return
        sockets.discard(websocket)
        if not sockets:
            del self.connections[user_id]
        logger.info(f"Client disconnected for {user_id} ({self.connection_count()} total)")

    def connection_count(self, user_id: Optional[str] = None) -> int:
        if user_id is None:
            return sum(len(sockets) for sockets in self.connections.values())
        return len(self.connections.get(user_id, ()))

    async def _send(self, user_id: str, websocket: WebSocket, payload: Dict[str, Any]) -> bool:
        try:
            await websocket.send_json(payload)
            return True
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.warning(f"Dropping dead connection for {user_id}: {e!r}")
            self.disconnect(user_id, websocket)
            return False

    async def send_to_user(self, user_id: str, payload: Dict[str, Any]) -> int:
        """Push payload to every connection of user_id; returns how many got it"""
        delivered = 0
        for websocket in list(self.connections.get(user_id, ())):
            delivered += await self._send(user_id, websocket, payload)
        return delivered

    async def broadcast(self, payload: Dict[str, Any]) -> int:
        delivered = 0
        for user_id, sockets in list(self.connections.items()):
            for websocket in list(sockets):
                delivered += await self._send(user_id, websocket, payload)
        return delivered

    def deliver_threadsafe(self, user_id: str, payload: Dict[str, Any]) -> Optional[Future]:
        """Schedule send_to_user on the bound loop; None when no loop is serving connections"""
        if self.loop is None or self.loop.is_closed():
            return None
        return asyncio.run_coroutine_threadsafe(self.send_to_user(user_id, payload), self.loop)

hub = ConnectionHub()
