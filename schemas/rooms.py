from pydantic import BaseModel, Field
from typing import Any, Optional, Union


class EventFrame(BaseModel):
    event: str
    data: dict[str, Any] = Field(default_factory=dict)
    ack: Optional[Union[str, int]] = None

class JoinPayload(BaseModel):
    username: str
    room: str
    admin_token: Optional[str] = None
    requires_admin_approval: bool = False

class RoomPayload(BaseModel):
    room: str

class CancelJoinPayload(BaseModel):
    room: Optional[str] = None

class PendingDecisionPayload(BaseModel):
    room: str
    connection_id: str

class RejectJoinPayload(PendingDecisionPayload):
    reason: Optional[str] = None

class KickPayload(BaseModel):
    connection_id: str
    room: Optional[str] = None

class SendMessagePayload(BaseModel):
    text: Any = None

class EditMessagePayload(BaseModel):
    message_id: str
    text: Any = None

class DeleteMessagePayload(BaseModel):
    message_id: str

class OnlineUser(BaseModel):
    connection_id: str
    display_name: str
    connected_at: str
    is_admin: bool = False

class RoomAvailabilityResponse(BaseModel):
    room_id: str
    is_active: bool

class RoomCapacityResponse(BaseModel):
    room_id: str
    current: int
    limit: int
    available: int
    is_full: bool

class RoomDetailsResponse(BaseModel):
    room_id: str
    created_at: Optional[str] = None
    last_activity_at: Optional[str] = None
    max_users: int
    online_users_count: int
    online_users: Optional[list[OnlineUser]] = None
    has_admin: bool
    requires_admin_approval: bool
    pending_count: int = 0
    is_full: bool
