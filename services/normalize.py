import html

from constants import (
    LOCATION_ROOM_PREFIX,
    MESSAGE_MAX_LENGTH,
    ROOM_CAPACITY_DEFAULT,
    ROOM_CAPACITY_LOCATION,
    USERNAME_MAX_LENGTH,
    USERNAME_MIN_LENGTH,
)
from services.errors import InvalidInput

_FORBIDDEN_CHARS = ("\n", "\r", "\x00")


def normalize_username(value) -> str:
    if not isinstance(value, str):
        raise InvalidInput("Username and room are required!")
    username = value.strip().lower()
    if not username:
        raise InvalidInput("Username and room are required!")
    if len(username) < USERNAME_MIN_LENGTH:
        raise InvalidInput(f"Username too short (min {USERNAME_MIN_LENGTH} characters)")
    if len(username) > USERNAME_MAX_LENGTH:
        raise InvalidInput(f"Username too long (max {USERNAME_MAX_LENGTH} characters)")
    if any(ch in username for ch in _FORBIDDEN_CHARS):
        raise InvalidInput("Username contains invalid characters")
    return username


def normalize_room_id(value) -> str:
    if not isinstance(value, str):
        raise InvalidInput("Username and room are required!")
    room_id = value.strip().upper()
    if not room_id:
        raise InvalidInput("Username and room are required!")
    if any(ch in room_id for ch in _FORBIDDEN_CHARS):
        raise InvalidInput("Room id contains invalid characters")
    return room_id


def is_location_room(room_id: str) -> bool:
    return room_id.startswith(LOCATION_ROOM_PREFIX) and len(room_id) > len(LOCATION_ROOM_PREFIX)


def room_capacity(room_id: str) -> int:
    return ROOM_CAPACITY_LOCATION if is_location_room(room_id) else ROOM_CAPACITY_DEFAULT


def sanitize_message(value) -> str:
    """Validate chat text and escape it for display."""
    if not isinstance(value, str):
        raise InvalidInput("Invalid message format")
    text = value.strip()
    if not text:
        raise InvalidInput("Message cannot be empty")
    if len(text) > MESSAGE_MAX_LENGTH:
        raise InvalidInput(f"Message too long (max {MESSAGE_MAX_LENGTH} characters)")
    return html.escape(text)
