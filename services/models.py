from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Union


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class AdminMode(str, Enum):
    """Admin capability of a room.

    NO_ADMIN      location rooms; no token, no admin.
    TRANSFERABLE  admin handed to the next member when the admin leaves.
    OWNER_LOCKED  join requests need approval; capability stays with the token
                  holder even while they are disconnected.
    """

    NO_ADMIN = "no_admin"
    OWNER_LOCKED = "owner_locked"
    TRANSFERABLE = "transferable"


class PendingState(str, Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


@dataclass
class Session:
    connection_id: str
    username: str
    room_id: str
    joined_at: str = field(default_factory=now_iso)

    def to_store(self) -> dict:
        return {
            "connection_id": self.connection_id,
            "username": self.username,
            "room_id": self.room_id,
            "joined_at": self.joined_at,
        }

    @classmethod
    def from_store(cls, connection_id: str, data: dict) -> Optional["Session"]:
        if not data or not data.get("username") or not data.get("room_id"):
            return None
        return cls(
            connection_id=data.get("connection_id") or connection_id,
            username=data["username"],
            room_id=data["room_id"],
            joined_at=data.get("joined_at", ""),
        )


@dataclass
class Room:
    room_id: str
    capacity: int
    created_at: str = field(default_factory=now_iso)
    last_activity_at: str = field(default_factory=now_iso)
    admin_mode: AdminMode = AdminMode.NO_ADMIN
    admin_connection_id: Optional[str] = None
    admin_token: Optional[str] = None

    def __post_init__(self):
        self.admin_mode = AdminMode(self.admin_mode)
        if self.admin_mode is AdminMode.NO_ADMIN:
            if self.admin_connection_id or self.admin_token:
                raise ValueError(f"Room {self.room_id} has no admin mode but carries admin state")
        elif not self.admin_token:
            raise ValueError(f"Room {self.room_id} in {self.admin_mode.value} mode needs an admin token")

    @property
    def requires_admin_approval(self) -> bool:
        return self.admin_mode is AdminMode.OWNER_LOCKED

    def to_store(self) -> dict:
        return {
            "room_id": self.room_id,
            "capacity": self.capacity,
            "created_at": self.created_at,
            "last_activity_at": self.last_activity_at,
            "admin_mode": self.admin_mode.value,
            "admin_connection_id": self.admin_connection_id,
            "admin_token": self.admin_token,
        }

    @classmethod
    def from_store(cls, room_id: str, data: dict) -> Optional["Room"]:
        if not data or "created_at" not in data:
            return None
        return cls(
            room_id=room_id,
            capacity=int(data.get("capacity", 0)),
            created_at=data["created_at"],
            last_activity_at=data.get("last_activity_at", data["created_at"]),
            admin_mode=AdminMode(data.get("admin_mode", AdminMode.NO_ADMIN.value)),
            admin_connection_id=data.get("admin_connection_id") or None,
            admin_token=data.get("admin_token") or None,
        )


@dataclass
class PendingEntry:
    connection_id: str
    username: str
    room_id: str
    requested_at: str = field(default_factory=now_iso)
    state: PendingState = PendingState.REQUESTED
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "connection_id": self.connection_id,
            "username": self.username,
            "room_id": self.room_id,
            "requested_at": self.requested_at,
            "state": PendingState(self.state).value,
        }
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass
class JoinRequest:
    connection_id: str
    username: str
    room_id: str
    admin_token: Optional[str] = None
    requires_admin_approval: bool = False


@dataclass
class RemovalResult:
    connection_id: str
    username: str
    room_id: str
    remaining: int = 0
    was_admin: bool = False
    new_admin: Optional[str] = None
    new_admin_token: Optional[str] = None

    @property
    def room_empty(self) -> bool:
        return self.remaining == 0


@dataclass
class MembershipResult:
    connection_id: str
    username: str
    room_id: str
    is_admin: bool = False
    admin_token: Optional[str] = None
    requires_admin_approval: bool = False
    evicted: Optional[RemovalResult] = None

    def to_dict(self) -> dict:
        data = {
            "connection_id": self.connection_id,
            "username": self.username,
            "room_id": self.room_id,
            "is_admin": self.is_admin,
            "requires_admin_approval": self.requires_admin_approval,
        }
        if self.admin_token:
            data["admin_token"] = self.admin_token
        return data


JoinOutcome = Union[MembershipResult, PendingEntry]


@dataclass
class RoomSnapshot:
    room_id: str
    capacity: int
    members: List[Session]
    admin_connection_id: Optional[str]
    requires_admin_approval: bool
    pending_count: int = 0
    created_at: Optional[str] = None
    last_activity_at: Optional[str] = None
