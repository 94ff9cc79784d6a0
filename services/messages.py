import json
import uuid
from typing import List, Optional

from backend import Store, iter_json
from constants import MAX_MESSAGES_PER_ROOM, MESSAGES_TO_FETCH, ROOM_TTL
from logging_config import get_logger
from redis_keys import REDIS_MESSAGES_KEY
from services.errors import NotFound, NotMessageOwner
from services.models import now_iso

logger = get_logger(__name__)


class MessageHistory:
    """Capped per-room message history.

    Message ids are prefixed with the sender's connection id, which is how
    ownership is checked on edit and delete.
    """

    def __init__(self, store: Store, max_messages: int = MAX_MESSAGES_PER_ROOM, ttl: int = ROOM_TTL):
        self.store = store
        self.max_messages = max_messages
        self.ttl = ttl

    def _key(self, room_id: str) -> str:
        return REDIS_MESSAGES_KEY.format(slug=room_id)

    @staticmethod
    def new_message(connection_id: str, username: str, text: str) -> dict:
        return {
            "id": f"{connection_id}-{uuid.uuid4().hex[:12]}",
            "user": username,
            "text": text,
            "type": "message",
            "created_at": now_iso(),
        }

    def save_message(self, room_id: str, message: dict) -> dict:
        key = self._key(room_id)
        self.store.rpush(key, json.dumps(message))
        self.store.ltrim(key, -self.max_messages, -1)
        if self.ttl:
            self.store.expire(key, self.ttl)
        logger.debug(f"Saved message {message.get('id')} to room {room_id}")
        return message

    def recent_messages(self, room_id: str, count: int = MESSAGES_TO_FETCH) -> List[dict]:
        if count <= 0:
            return []
        return list(iter_json(self.store.lrange(self._key(room_id), -count, -1)))

    def _rewrite(self, room_id: str, messages: List[dict]) -> None:
        key = self._key(room_id)
        self.store.delete(key)
        if messages:
            self.store.rpush(key, *(json.dumps(m) for m in messages))
            if self.ttl:
                self.store.expire(key, self.ttl)

    def _find_owned(self, messages: List[dict], message_id: str, owner_id: str) -> int:
        for index, message in enumerate(messages):
            if message.get("id") == message_id:
                if not message_id.startswith(f"{owner_id}-"):
                    raise NotMessageOwner()
                return index
        raise NotFound("Message not found")

    def edit_message(self, room_id: str, message_id: str, owner_id: str, new_text: str) -> dict:
        messages = list(iter_json(self.store.lrange(self._key(room_id), 0, -1)))
        index = self._find_owned(messages, message_id, owner_id)
        message = messages[index]
        message["text"] = new_text
        message["is_edited"] = True
        message["edited_at"] = now_iso()
        self._rewrite(room_id, messages)
        return message

    def delete_message(self, room_id: str, message_id: str, owner_id: str) -> Optional[dict]:
        messages = list(iter_json(self.store.lrange(self._key(room_id), 0, -1)))
        index = self._find_owned(messages, message_id, owner_id)
        removed = messages.pop(index)
        self._rewrite(room_id, messages)
        return removed

    def clear_room(self, room_id: str) -> None:
        self.store.delete(self._key(room_id))
        logger.info(f"Erased message history for room {room_id}")
