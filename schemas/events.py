from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field


class RoomEvent(BaseModel):
    """Notification emitted by the room core for the router to deliver.

    Without a target the event goes to every member of the room.
    """

    type: str
    room_id: str
    target_connection_id: Optional[str] = Field(default=None, exclude=True)
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class MemberInfo(BaseModel):
    connection_id: str
    username: str
    is_admin: bool = False


class PendingInfo(BaseModel):
    connection_id: str
    username: str
    requested_at: str


class MembershipChanged(RoomEvent):
    type: Literal["membership_changed"] = "membership_changed"
    members: list[MemberInfo]
    online_count: int
    capacity: int


class AdminStatusChanged(RoomEvent):
    type: Literal["admin_status_changed"] = "admin_status_changed"
    admin_connection_id: Optional[str] = None
    is_admin: bool = False
    admin_token: Optional[str] = None


class JoinRequested(RoomEvent):
    type: Literal["join_requested"] = "join_requested"
    connection_id: str
    username: str


class JoinApproved(RoomEvent):
    type: Literal["join_approved"] = "join_approved"
    connection_id: str
    username: str
    is_admin: bool = False


class JoinRejected(RoomEvent):
    type: Literal["join_rejected"] = "join_rejected"
    connection_id: str
    reason: str
    code: str = "rejected"


class PendingQueueChanged(RoomEvent):
    type: Literal["pending_queue_changed"] = "pending_queue_changed"
    pending: list[PendingInfo]


class UserKicked(RoomEvent):
    type: Literal["user_kicked"] = "user_kicked"
    connection_id: str
    username: str


class SystemMessage(RoomEvent):
    type: Literal["system"] = "system"
    text: str


class ChatMessage(RoomEvent):
    type: Literal["message"] = "message"
    message: dict


class MessageEdited(RoomEvent):
    type: Literal["message_edited"] = "message_edited"
    message: dict


class MessageDeleted(RoomEvent):
    type: Literal["message_deleted"] = "message_deleted"
    message_id: str
