import asyncio
import secrets
from typing import Optional

from constants import ADMIN_TRANSFER_ATTEMPTS
from logging_config import get_logger
from services.errors import CannotKickSelf, NotAdmin, NotFound, StoreUnavailable
from services.models import AdminMode, Room
from services.rooms import RoomRecords

logger = get_logger(__name__)


class AdminAuthority:
    """Issues and checks room admin capability.

    Admin identity is the connection id holding the capability; a reconnecting
    admin proves continuity with the room's admin token, never by username.
    """

    def __init__(self, records: RoomRecords, transfer_attempts: int = ADMIN_TRANSFER_ATTEMPTS, retry_delay: float = 0.1):
        self.records = records
        self.transfer_attempts = max(1, transfer_attempts)
        self.retry_delay = retry_delay

    @staticmethod
    def generate_token() -> str:
        return secrets.token_urlsafe(24)

    @staticmethod
    def token_matches(room: Room, token: Optional[str]) -> bool:
        if not token or not room.admin_token or room.admin_mode is AdminMode.NO_ADMIN:
            return False
        return secrets.compare_digest(room.admin_token, token)

    def is_admin(self, connection_id: str, room_id: str) -> bool:
        room = self.records.load(room_id)
        return room is not None and room.admin_connection_id == connection_id

    def current_admin(self, room_id: str) -> Optional[str]:
        room = self.records.load(room_id)
        return room.admin_connection_id if room else None

    def current_token(self, room_id: str) -> Optional[str]:
        room = self.records.load(room_id)
        return room.admin_token if room else None

    def requires_approval(self, room_id: str) -> bool:
        room = self.records.load(room_id)
        return room is not None and room.requires_admin_approval

    def require_admin(self, connection_id: str, room_id: str) -> Room:
        room = self.records.load(room_id)
        if room is None:
            raise NotFound(f"Room {room_id} not found")
        if room.admin_connection_id != connection_id:
            logger.warning(f"Connection {connection_id} is not the admin of room {room_id}")
            raise NotAdmin()
        return room

    def validate_kick(self, admin_connection_id: str, target_connection_id: str, room_id: str) -> Room:
        room = self.require_admin(admin_connection_id, room_id)
        if admin_connection_id == target_connection_id:
            raise CannotKickSelf()
        return room

    async def transfer_admin(self, room_id: str, new_connection_id: str) -> Optional[str]:
        """Hand admin capability to another member under a fresh token.

        The store write is retried; if it never lands the room is left without
        an admin rather than pointing at a stale one.
        """
        for attempt in range(1, self.transfer_attempts + 1):
            room = self.records.load(room_id)
            if room is None:
                raise NotFound(f"Room {room_id} not found")
            token = self.generate_token()
            room.admin_connection_id = new_connection_id
            room.admin_token = token
            try:
                self.records.save(room)
                logger.info(f"Admin of room {room_id} transferred to {new_connection_id}")
                return token
            except StoreUnavailable as e:
                logger.warning(f"Admin transfer for room {room_id} failed (attempt {attempt}): {e}")
                await asyncio.sleep(self.retry_delay * attempt)
        logger.error(f"Giving up admin transfer for room {room_id} after {self.transfer_attempts} attempts")
        return None
