"""Chat server exception classes."""

from typing import Optional


class ChatError(Exception):
    """Base exception for all caller-facing chat errors."""

    code = "chat_error"
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class InvalidInput(ChatError):
    code = "invalid_input"
    default_message = "Invalid input"


class RoomFull(ChatError):
    code = "room_full"
    default_message = "Room is full"


class UsernameTaken(ChatError):
    code = "username_taken"
    default_message = "Username is already taken in this room!"


class NotAdmin(ChatError):
    code = "not_admin"
    default_message = "Only the room admin can do that"


class CannotKickSelf(ChatError):
    code = "cannot_kick_self"
    default_message = "You cannot kick yourself"


class NotFound(ChatError):
    code = "not_found"
    default_message = "Not found"


class NotMessageOwner(ChatError):
    code = "not_owner"
    default_message = "You can only change your own messages"


class Kicked(ChatError):
    code = "kicked"
    default_message = "You were removed from the room"


class RateLimited(ChatError):
    code = "rate_limited"
    default_message = "Too many requests"

    def __init__(self, message: Optional[str] = None, retry_after: int = 0):
        super().__init__(message)
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        return {**super().to_dict(), "retry_after": self.retry_after}


class StoreUnavailable(Exception):
    """Raised by the durable store when it cannot be reached.

    Never surfaces to callers: the fallback store swallows it and switches to
    the in-memory store.
    """
