from typing import Dict, Set
from fastapi import WebSocket
import asyncio
import logging

logger = logging.getLogger(__name__)


def forum_room(event_id: int) -> str:
    return f"forum:{event_id}"


class ConnectionManager:
    """Rooms of WebSocket connections. A socket may be in several rooms at once."""

    def __init__(self):
        self.rooms: Dict[str, Set[WebSocket]] = {}
        self.memberships: Dict[WebSocket, Set[str]] = {}
        self.lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        async with self.lock:
            self.memberships.setdefault(websocket, set())

    async def join(self, room: str, websocket: WebSocket):
        async with self.lock:
            self.rooms.setdefault(room, set()).add(websocket)
            self.memberships.setdefault(websocket, set()).add(room)

    async def leave(self, room: str, websocket: WebSocket):
        async with self.lock:
            self._remove(room, websocket)

    async def disconnect(self, websocket: WebSocket):
        async with self.lock:
            for room in list(self.memberships.get(websocket, ())):
                self._remove(room, websocket)
            self.memberships.pop(websocket, None)

    def _remove(self, room: str, websocket: WebSocket):
        members = self.rooms.get(room)
        if members is not None:
            members.discard(websocket)
            if not members:
                del self.rooms[room]
        if websocket in self.memberships:
            self.memberships[websocket].discard(room)

    def members(self, room: str) -> Set[WebSocket]:
        return set(self.rooms.get(room, ()))

    async def broadcast(self, room: str, message: dict):
        disconnected = set()
        for connection in self.members(room):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.warning(f"Error broadcasting to WebSocket in {room}: {e}")
                disconnected.add(connection)

        for connection in disconnected:
            await self.disconnect(connection)


# Global WebSocket manager instance
manager = ConnectionManager()
