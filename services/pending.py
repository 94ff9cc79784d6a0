import json
from typing import List, Optional

from backend import Store
from constants import ROOM_TTL
from logging_config import get_logger
from redis_keys import REDIS_PENDING_KEY, REDIS_PENDING_ROOM_KEY
from services.models import PendingEntry, PendingState

logger = get_logger(__name__)


class PendingJoinQueue:
    """Join requests parked until the room admin approves or rejects them.

    One hash per room, connection id -> JSON entry, ordered by request time.
    A connection waits in at most one room; `conn:{id}:pending` points at it.
    """

    def __init__(self, store: Store, ttl: int = ROOM_TTL):
        self.store = store
        self.ttl = ttl

    def _key(self, room_id: str) -> str:
        return REDIS_PENDING_KEY.format(slug=room_id)

    def _decode(self, room_id: str, raw: Optional[str]) -> Optional[PendingEntry]:
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return PendingEntry(
                connection_id=data["connection_id"],
                username=data["username"],
                room_id=room_id,
                requested_at=data.get("requested_at", ""),
            )
        except (json.JSONDecodeError, KeyError, TypeError):
            logger.warning(f"Dropping malformed pending entry in room {room_id}: {raw!r}")
            return None

    def enqueue(self, room_id: str, connection_id: str, username: str) -> PendingEntry:
        """Park a join request. Re-enqueueing keeps the original request time."""
        existing = self.get(room_id, connection_id)
        entry = PendingEntry(connection_id=connection_id, username=username, room_id=room_id)
        if existing is not None:
            entry.requested_at = existing.requested_at
        payload = json.dumps({
            "connection_id": entry.connection_id,
            "username": entry.username,
            "requested_at": entry.requested_at,
        })
        self.store.hset(self._key(room_id), {connection_id: payload})
        self.store.set(REDIS_PENDING_ROOM_KEY.format(connection_id=connection_id), room_id, ttl=self.ttl or None)
        if self.ttl:
            self.store.expire(self._key(room_id), self.ttl)
        logger.info(f"Join request from {username} ({connection_id}) queued for room {room_id}")
        return entry

    def get(self, room_id: str, connection_id: str) -> Optional[PendingEntry]:
        return self._decode(room_id, self.store.hget(self._key(room_id), connection_id))

    def list(self, room_id: str) -> List[PendingEntry]:
        raw_entries = self.store.hgetall(self._key(room_id))
        entries = [e for e in (self._decode(room_id, raw) for raw in raw_entries.values()) if e is not None]
        entries.sort(key=lambda e: (e.requested_at, e.connection_id))
        return entries

    def room_for(self, connection_id: str) -> Optional[str]:
        return self.store.get(REDIS_PENDING_ROOM_KEY.format(connection_id=connection_id))

    def remove(self, room_id: str, connection_id: str, state: PendingState) -> Optional[PendingEntry]:
        """Take an entry out of the queue, moving it to a terminal state."""
        entry = self.get(room_id, connection_id)
        if entry is None:
            return None
        self.store.hdel(self._key(room_id), connection_id)
        if self.room_for(connection_id) == room_id:
            self.store.delete(REDIS_PENDING_ROOM_KEY.format(connection_id=connection_id))
        entry.state = state
        logger.info(f"Join request {connection_id} for room {room_id} {state.value}")
        return entry

    def clear_all(self, room_id: str) -> int:
        entries = self.list(room_id)
        for entry in entries:
            if self.room_for(entry.connection_id) == room_id:
                self.store.delete(REDIS_PENDING_ROOM_KEY.format(connection_id=entry.connection_id))
        self.store.delete(self._key(room_id))
        if entries:
            logger.info(f"Cleared {len(entries)} pending join requests for room {room_id}")
        return len(entries)
