from typing import Optional, Set

from backend import Store, encode_mapping
from constants import ROOM_TTL
from logging_config import get_logger
from redis_keys import REDIS_META_KEY, REDIS_USERS_KEY
from services.models import Room, now_iso

logger = get_logger(__name__)


class RoomRecords:
    """Persistence of room metadata and membership sets."""

    def __init__(self, store: Store, ttl: int = ROOM_TTL):
        self.store = store
        self.ttl = ttl

    def load(self, room_id: str) -> Optional[Room]:
        data = self.store.hgetall(REDIS_META_KEY.format(slug=room_id))
        try:
            return Room.from_store(room_id, data)
        except ValueError as e:
            logger.error(f"Corrupt metadata for room {room_id}, ignoring it: {e}")
            return None

    def save(self, room: Room) -> None:
        key = REDIS_META_KEY.format(slug=room.room_id)
        data = room.to_store()
        self.store.hset(key, encode_mapping(data))
        # Absent admin fields must not linger from a previous write
        cleared = [f for f in ("admin_connection_id", "admin_token") if data[f] is None]
        if cleared:
            self.store.hdel(key, *cleared)
        if self.ttl:
            self.store.expire(key, self.ttl)

    def touch(self, room: Room) -> None:
        room.last_activity_at = now_iso()
        self.save(room)

    def member_ids(self, room_id: str) -> Set[str]:
        return self.store.smembers(REDIS_USERS_KEY.format(slug=room_id))

    def member_count(self, room_id: str) -> int:
        return self.store.scard(REDIS_USERS_KEY.format(slug=room_id))

    def add_member(self, room_id: str, connection_id: str) -> None:
        key = REDIS_USERS_KEY.format(slug=room_id)
        self.store.sadd(key, connection_id)
        if self.ttl:
            self.store.expire(key, self.ttl)

    def remove_member(self, room_id: str, *connection_ids: str) -> bool:
        return bool(self.store.srem(REDIS_USERS_KEY.format(slug=room_id), *connection_ids))

    def delete(self, room_id: str) -> None:
        self.store.delete(REDIS_META_KEY.format(slug=room_id), REDIS_USERS_KEY.format(slug=room_id))
        logger.info(f"Deleted room {room_id}")
