from typing import Iterable, List, Optional

from backend import Store, encode_mapping
from constants import REMOVED_MARKER_TTL, USER_TTL
from logging_config import get_logger
from redis_keys import REDIS_KICKED_KEY, REDIS_REMOVED_KEY, REDIS_USER_KEY
from services.models import Session

logger = get_logger(__name__)


class SessionRegistry:
    """Maps a connection id to its (username, room) session.

    Knows nothing about room membership; RoomDirectory keeps the two consistent.
    """

    def __init__(self, store: Store, ttl: int = USER_TTL, marker_ttl: int = REMOVED_MARKER_TTL):
        self.store = store
        self.ttl = ttl
        self.marker_ttl = marker_ttl

    def get(self, connection_id: str) -> Optional[Session]:
        data = self.store.hgetall(REDIS_USER_KEY.format(connection_id=connection_id))
        return Session.from_store(connection_id, data)

    def put(self, connection_id: str, username: str, room_id: str) -> Session:
        session = Session(connection_id=connection_id, username=username, room_id=room_id)
        key = REDIS_USER_KEY.format(connection_id=connection_id)
        self.store.delete(key)
        self.store.hset(key, encode_mapping(session.to_store()))
        if self.ttl:
            self.store.expire(key, self.ttl)
        logger.debug(f"Stored session for {connection_id}: {username}@{room_id}")
        return session

    def remove(self, connection_id: str) -> Optional[Session]:
        session = self.get(connection_id)
        if session is None:
            return None
        self.store.delete(REDIS_USER_KEY.format(connection_id=connection_id))
        logger.debug(f"Removed session for {connection_id}")
        return session

    def sessions_in(self, connection_ids: Iterable[str]) -> List[Session]:
        """Resolve connection ids to sessions, ordered by join time."""
        sessions = [s for s in (self.get(cid) for cid in connection_ids) if s is not None]
        sessions.sort(key=lambda s: (s.joined_at, s.connection_id))
        return sessions

    def mark_removed(self, connection_id: str) -> None:
        self.store.set(REDIS_REMOVED_KEY.format(connection_id=connection_id), "1", ttl=self.marker_ttl)

    def was_recently_removed(self, connection_id: str) -> bool:
        return self.store.exists(REDIS_REMOVED_KEY.format(connection_id=connection_id))

    def mark_kicked(self, connection_id: str) -> None:
        self.store.set(REDIS_KICKED_KEY.format(connection_id=connection_id), "1", ttl=self.marker_ttl)

    def was_kicked(self, connection_id: str) -> bool:
        return self.store.exists(REDIS_KICKED_KEY.format(connection_id=connection_id))
