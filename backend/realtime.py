# realtime.py — WebSocket rooms for live board updates
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Set

from fastapi import WebSocket

logger = logging.getLogger("sprintboard.ws")


def board_room(board_id: str) -> str:
    return f"board:{board_id}"


def project_room(project_id: str) -> str:
    return f"project:{project_id}"


class RoomManager:
    """Tracks WebSocket connections per room (e.g. "board:<id>")"""

    def __init__(self):
        self._rooms: Dict[str, Set[WebSocket]] = {}

    async def join(self, room: str, websocket: WebSocket):
        await websocket.accept()
        self._rooms.setdefault(room, set()).add(websocket)
        logger.info(f"WS joined room={room}")

    def leave(self, room: str, websocket: WebSocket):
        if room in self._rooms:
            self._rooms[room].discard(websocket)
            if not self._rooms[room]:
                del self._rooms[room]
        logger.info(f"WS left room={room}")

    async def emit(self, room: str, event: str, payload: Dict[str, Any]) -> int:
        """Broadcast to a room. Best-effort: never raises, returns delivered count."""
        message = {
            "event": event,
            "room": room,
            "data": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        delivered = 0
        disconnected = []
        for websocket in list(self._rooms.get(room, ())):
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"WS send failed room={room}: {e}")
                disconnected.append(websocket)
        for websocket in disconnected:
            self.leave(room, websocket)
        return delivered

    def room_size(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    def get_stats(self) -> dict:
        return {
            "rooms": len(self._rooms),
            "total_connections": sum(len(s) for s in self._rooms.values()),
        }


manager = RoomManager()
