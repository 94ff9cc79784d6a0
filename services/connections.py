import asyncio
import json
from typing import Callable, Dict, Iterable, Optional

from fastapi import WebSocket

from logging_config import get_logger
from schemas.events import RoomEvent, UserKicked

logger = get_logger(__name__)


class ConnectionManager:
    """Local WebSocket registry and fan-out of room events.

    Room membership is not tracked here: `members_of` asks the room directory
    which connections belong to a room.
    """

    def __init__(self, members_of: Optional[Callable[[str], Iterable[str]]] = None):
        self.connections: Dict[str, WebSocket] = {}
        self.members_of = members_of

    def bind(self, members_of: Callable[[str], Iterable[str]]) -> None:
        self.members_of = members_of

    def register(self, connection_id: str, websocket: WebSocket) -> None:
        self.connections[connection_id] = websocket
        logger.debug(f"Registered connection {connection_id} ({len(self.connections)} local connections)")

    def unregister(self, connection_id: str) -> None:
        self.connections.pop(connection_id, None)
        logger.debug(f"Unregistered connection {connection_id}")

    async def send_to(self, connection_id: str, payload: dict) -> bool:
        ws = self.connections.get(connection_id)
        if ws is None:
            return False
        try:
            await ws.send_text(json.dumps(payload))
            return True
        except Exception as e:
            logger.warning(f"Error sending to connection {connection_id}: {e}")
            return False

    async def broadcast(self, room_id: str, payload: dict) -> int:
        if self.members_of is None:
            return 0
        targets = [cid for cid in self.members_of(room_id) if cid in self.connections]
        results = await asyncio.gather(*(self.send_to(cid, payload) for cid in targets))
        sent = sum(1 for ok in results if ok)
        logger.debug(f"Broadcasted {payload.get('type')} to {sent}/{len(targets)} connections in room {room_id}")
        return sent

    async def deliver(self, event: RoomEvent) -> None:
        payload = event.model_dump()
        if event.target_connection_id is None:
            await self.broadcast(event.room_id, payload)
            return
        await self.send_to(event.target_connection_id, payload)
        if isinstance(event, UserKicked):
            await self.close(event.target_connection_id, reason="Removed by room admin")

    async def close(self, connection_id: str, code: int = 1008, reason: str = "") -> None:
        ws = self.connections.pop(connection_id, None)
        if ws is None:
            return
        try:
            await ws.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"Error closing WebSocket {connection_id}: {e}")

    async def close_all(self) -> None:
        for connection_id in list(self.connections):
            await self.close(connection_id, code=1001, reason="Server shutting down")
