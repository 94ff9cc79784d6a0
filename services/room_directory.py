"""Authoritative room membership for the chat server.

RoomDirectory ties together sessions, room records, admin capability, the
pending-join queue and delayed teardown of empty rooms. Every multi-step
change to a room runs under that room's asyncio lock; rooms are independent
of each other.

Notifications are collected while the lock is held and handed to the event
sink after it is released.
"""

import asyncio
import inspect
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from backend import Store
from constants import DEFAULT_REJECT_REASON, REMOVED_MARKER_TTL, ROOM_CLEANUP_DELAY, ROOM_TTL, USER_TTL
from logging_config import get_logger
from schemas.events import (
    AdminStatusChanged,
    JoinApproved,
    JoinRejected,
    JoinRequested,
    MemberInfo,
    MembershipChanged,
    PendingInfo,
    PendingQueueChanged,
    RoomEvent,
    SystemMessage,
    UserKicked,
)
from services.admin import AdminAuthority
from services.errors import ChatError, InvalidInput, Kicked, NotAdmin, NotFound, RoomFull, UsernameTaken
from services.lifecycle import RoomLifecycleScheduler, TeardownCallback
from services.models import (
    AdminMode,
    JoinOutcome,
    JoinRequest,
    MembershipResult,
    PendingEntry,
    PendingState,
    RemovalResult,
    Room,
    RoomSnapshot,
    Session,
)
from services.normalize import is_location_room, normalize_room_id, normalize_username, room_capacity
from services.pending import PendingJoinQueue
from services.rooms import RoomRecords
from services.sessions import SessionRegistry

logger = get_logger(__name__)

EventSink = Callable[[RoomEvent], Awaitable[None]]


@dataclass
class _RoomLock:
    lock: asyncio.Lock
    users: int = 0


class RoomDirectory:
    def __init__(
        self,
        store: Store,
        *,
        grace_period: float = ROOM_CLEANUP_DELAY,
        on_teardown: Optional[TeardownCallback] = None,
        event_sink: Optional[EventSink] = None,
        session_ttl: int = USER_TTL,
        room_ttl: int = ROOM_TTL,
        marker_ttl: int = REMOVED_MARKER_TTL,
    ):
        self.store = store
        self.sessions = SessionRegistry(store, ttl=session_ttl, marker_ttl=marker_ttl)
        self.records = RoomRecords(store, ttl=room_ttl)
        self.admin = AdminAuthority(self.records)
        self.pending = PendingJoinQueue(store, ttl=room_ttl)
        self.scheduler = RoomLifecycleScheduler(self._expire_room, grace_period=grace_period)
        self.on_teardown = on_teardown
        self.event_sink = event_sink
        self._locks: Dict[str, _RoomLock] = {}

    # ------------------------------------------------------------------ locking

    @asynccontextmanager
    async def _room_lock(self, room_id: str):
        entry = self._locks.get(room_id)
        if entry is None:
            entry = self._locks[room_id] = _RoomLock(asyncio.Lock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(room_id) is entry:
                del self._locks[room_id]

    @asynccontextmanager
    async def _room_locks(self, *room_ids: Optional[str]):
        """Hold several room locks, always taken in sorted order."""
        async with AsyncExitStack() as stack:
            for room_id in sorted({r for r in room_ids if r}):
                await stack.enter_async_context(self._room_lock(room_id))
            yield

    @asynccontextmanager
    async def _session_lock(self, connection_id: str):
        """Lock the room a connection is in and yield its session, or None if it has none."""
        while True:
            session = self.sessions.get(connection_id)
            if session is None:
                self._log_missing(connection_id)
                yield None
                return
            async with self._room_lock(session.room_id):
                current = self.sessions.get(connection_id)
                if current is not None and current.room_id != session.room_id:
                    continue
                if current is None:
                    self._log_missing(connection_id)
                yield current
                return

    async def _emit_all(self, events: List[RoomEvent]) -> None:
        if self.event_sink is None:
            return
        for event in events:
            try:
                await self.event_sink(event)
            except Exception as e:
                logger.error(f"Failed to deliver {event.type} event for room {event.room_id}: {e}", exc_info=True)

    # ------------------------------------------------------------------ queries

    def members(self, room_id: str) -> List[Session]:
        room_id = normalize_room_id(room_id)
        return self.sessions.sessions_in(self.records.member_ids(room_id))

    def check_room_availability(self, room_id: str) -> dict:
        room_id = normalize_room_id(room_id)
        return {"room_id": room_id, "is_active": self.records.member_count(room_id) > 0}

    def check_room_capacity(self, room_id: str) -> dict:
        room_id = normalize_room_id(room_id)
        current = len(self.members(room_id))
        limit = room_capacity(room_id)
        return {
            "room_id": room_id,
            "current": current,
            "limit": limit,
            "available": max(0, limit - current),
            "is_full": current >= limit,
        }

    def room_info(self, room_id: str) -> RoomSnapshot:
        room_id = normalize_room_id(room_id)
        room = self.records.load(room_id)
        if room is None:
            raise NotFound(f"Room {room_id} not found")
        return RoomSnapshot(
            room_id=room_id,
            capacity=room_capacity(room_id),
            members=self.members(room_id),
            admin_connection_id=room.admin_connection_id,
            requires_admin_approval=room.requires_admin_approval,
            pending_count=len(self.pending.list(room_id)),
            created_at=room.created_at,
            last_activity_at=room.last_activity_at,
        )

    def pending_requests(self, admin_connection_id: str, room_id: str) -> List[PendingEntry]:
        room_id = normalize_room_id(room_id)
        self.admin.require_admin(admin_connection_id, room_id)
        return self.pending.list(room_id)

    # ------------------------------------------------------------------ event builders

    def _roster_event(self, room_id: str, room: Optional[Room]) -> MembershipChanged:
        members = self.sessions.sessions_in(self.records.member_ids(room_id))
        admin_id = room.admin_connection_id if room else None
        return MembershipChanged(
            room_id=room_id,
            members=[
                MemberInfo(connection_id=s.connection_id, username=s.username, is_admin=s.connection_id == admin_id)
                for s in members
            ],
            online_count=len(members),
            capacity=room_capacity(room_id),
        )

    def _queue_event(self, room_id: str, admin_id: str) -> PendingQueueChanged:
        return PendingQueueChanged(
            room_id=room_id,
            target_connection_id=admin_id,
            pending=[
                PendingInfo(connection_id=e.connection_id, username=e.username, requested_at=e.requested_at)
                for e in self.pending.list(room_id)
            ],
        )

    # ------------------------------------------------------------------ join

    async def add_member(self, request: JoinRequest, bypass_approval: bool = False) -> JoinOutcome:
        """Add a connection to a room, or park it in the room's approval queue.

        A connection already sitting in a room (or waiting for one) is taken
        out of it once the target room has accepted it. The rooms involved are
        locked together, so a refused join leaves the old session untouched.
        """
        if not request.connection_id:
            raise InvalidInput("Connection id is required")
        username = normalize_username(request.username)
        room_id = normalize_room_id(request.room_id)
        connection_id = request.connection_id

        if self.sessions.was_kicked(connection_id):
            logger.warning(f"Refusing join from recently kicked connection {connection_id}")
            raise Kicked()

        events: List[RoomEvent] = []
        try:
            while True:
                prior = self.sessions.get(connection_id)
                waiting_in = self.pending.room_for(connection_id)
                async with self._room_locks(room_id, prior.room_id if prior else None, waiting_in):
                    current = self.sessions.get(connection_id)
                    if (current.room_id if current else None) != (prior.room_id if prior else None):
                        continue
                    if self.pending.room_for(connection_id) != waiting_in:
                        continue
                    return await self._add_member_locked(
                        connection_id,
                        username,
                        room_id,
                        admin_token=request.admin_token,
                        requires_admin_approval=request.requires_admin_approval,
                        bypass_approval=bypass_approval,
                        events=events,
                        prior=current,
                        waiting_in=waiting_in,
                    )
        finally:
            await self._emit_all(events)

    async def _add_member_locked(
        self,
        connection_id: str,
        username: str,
        room_id: str,
        *,
        admin_token: Optional[str],
        requires_admin_approval: bool,
        bypass_approval: bool,
        events: List[RoomEvent],
        prior: Optional[Session] = None,
        waiting_in: Optional[str] = None,
    ) -> JoinOutcome:
        room = self.records.load(room_id)
        capacity = room_capacity(room_id)
        member_ids = self.records.member_ids(room_id)
        members = self.sessions.sessions_in(member_ids)

        live_ids = {s.connection_id for s in members}
        stale_ids = member_ids - live_ids
        if stale_ids:
            self.records.remove_member(room_id, *stale_ids)
            logger.debug(f"Dropped stale members {stale_ids} from room {room_id}")

        # A connection rejoining its own room does not count against itself
        others = [s for s in members if s.connection_id != connection_id]
        if len(others) >= capacity:
            logger.info(f"Room {room_id} is full ({len(others)}/{capacity} users)")
            raise RoomFull(f"Room is full! Maximum capacity: {capacity} users.")
        if any(s.username == username for s in others):
            logger.warning(f"Username {username} already taken in room {room_id}")
            raise UsernameTaken()

        if waiting_in and waiting_in != room_id:
            self._cancel_pending_locked(connection_id, waiting_in, events)
        evicted = None
        if prior is not None:
            evicted = self._remove_member_locked(prior)
            await self._after_departure_locked(evicted, events)
            if prior.room_id == room_id:
                room = self.records.load(room_id)
        members = others
        live_ids = {s.connection_id for s in others}

        location = is_location_room(room_id)
        granted_token: Optional[str] = None
        displaced_admin: Optional[str] = None

        if room is None:
            if location:
                room = Room(room_id=room_id, capacity=capacity)
            else:
                granted_token = self.admin.generate_token()
                mode = AdminMode.OWNER_LOCKED if requires_admin_approval else AdminMode.TRANSFERABLE
                room = Room(
                    room_id=room_id,
                    capacity=capacity,
                    admin_mode=mode,
                    admin_connection_id=connection_id,
                    admin_token=granted_token,
                )
            logger.info(f"Created room {room_id} ({room.admin_mode.value})")
        else:
            admin_present = room.admin_connection_id in live_ids
            if self.admin.token_matches(room, admin_token):
                if admin_present and room.admin_connection_id != connection_id:
                    displaced_admin = room.admin_connection_id
                room.admin_connection_id = connection_id
                granted_token = room.admin_token
                logger.info(f"Connection {connection_id} confirmed as admin of room {room_id}")
            elif (
                not bypass_approval
                and room.requires_admin_approval
                and admin_present
                and members
                and not location
            ):
                entry = self.pending.enqueue(room_id, connection_id, username)
                events.append(JoinRequested(
                    room_id=room_id,
                    target_connection_id=room.admin_connection_id,
                    connection_id=connection_id,
                    username=username,
                ))
                events.append(self._queue_event(room_id, room.admin_connection_id))
                return entry
            elif room.admin_mode is AdminMode.TRANSFERABLE and not admin_present:
                granted_token = self.admin.generate_token()
                room.admin_connection_id = connection_id
                room.admin_token = granted_token
                logger.info(f"Connection {connection_id} takes over admin of unattended room {room_id}")

        self.records.add_member(room_id, connection_id)
        self.sessions.put(connection_id, username, room_id)
        self.records.touch(room)
        self.scheduler.cancel(room_id)
        self.pending.remove(room_id, connection_id, PendingState.APPROVED)

        is_admin = room.admin_connection_id == connection_id
        logger.info(
            f"User {username} joined {room_id} ({len(members) + 1}/{capacity} users)"
            f"{' [ADMIN]' if is_admin else ''}"
        )

        events.append(SystemMessage(room_id=room_id, text=f"{username} has joined"))
        events.append(self._roster_event(room_id, room))
        if displaced_admin:
            events.append(AdminStatusChanged(
                room_id=room_id,
                target_connection_id=displaced_admin,
                admin_connection_id=connection_id,
                is_admin=False,
            ))
        if is_admin and granted_token:
            events.append(AdminStatusChanged(
                room_id=room_id,
                target_connection_id=connection_id,
                admin_connection_id=connection_id,
                is_admin=True,
                admin_token=granted_token,
            ))
            if self.pending.list(room_id):
                events.append(self._queue_event(room_id, connection_id))

        return MembershipResult(
            connection_id=connection_id,
            username=username,
            room_id=room_id,
            is_admin=is_admin,
            admin_token=granted_token if is_admin else None,
            requires_admin_approval=room.requires_admin_approval,
            evicted=evicted,
        )

    # ------------------------------------------------------------------ leave

    async def remove_member(self, connection_id: str) -> Optional[RemovalResult]:
        """Take a connection out of its room without admin handoff or teardown.

        Returns None when the connection has no session; repeating the call is harmless.
        """
        async with self._session_lock(connection_id) as session:
            if session is None:
                return None
            return self._remove_member_locked(session)

    def _log_missing(self, connection_id: str) -> None:
        if self.sessions.was_recently_removed(connection_id):
            logger.debug(f"Connection {connection_id} already removed, ignoring")
        else:
            logger.debug(f"No session for connection {connection_id}")

    def _remove_member_locked(self, session: Session) -> RemovalResult:
        room_id = session.room_id
        self.records.remove_member(room_id, session.connection_id)
        self.sessions.remove(session.connection_id)
        self.sessions.mark_removed(session.connection_id)

        room = self.records.load(room_id)
        was_admin = room is not None and room.admin_connection_id == session.connection_id
        if room is not None:
            self.records.touch(room)
        remaining = len(self.sessions.sessions_in(self.records.member_ids(room_id)))
        logger.info(f"User {session.username} left {room_id} ({remaining} remaining)")
        return RemovalResult(
            connection_id=session.connection_id,
            username=session.username,
            room_id=room_id,
            remaining=remaining,
            was_admin=was_admin,
        )

    async def leave(self, connection_id: str) -> Optional[RemovalResult]:
        """Leave path shared by explicit leave and disconnect."""
        events: List[RoomEvent] = []
        try:
            waiting_in = self.pending.room_for(connection_id)
            if waiting_in:
                await self._cancel_pending(connection_id, waiting_in, events)
            return await self._leave(connection_id, events)
        finally:
            await self._emit_all(events)

    async def _leave(self, connection_id: str, events: List[RoomEvent]) -> Optional[RemovalResult]:
        async with self._session_lock(connection_id) as session:
            if session is None:
                return None
            result = self._remove_member_locked(session)
            await self._after_departure_locked(result, events)
            return result

    async def _after_departure_locked(self, result: RemovalResult, events: List[RoomEvent]) -> None:
        room_id = result.room_id
        room = self.records.load(room_id)

        if room is not None and result.was_admin:
            remaining = self.sessions.sessions_in(self.records.member_ids(room_id))
            if room.admin_mode is AdminMode.TRANSFERABLE and remaining:
                successor = remaining[0]
                token = await self.admin.transfer_admin(room_id, successor.connection_id)
                if token is not None:
                    result.new_admin = successor.connection_id
                    result.new_admin_token = token
                    events.append(AdminStatusChanged(
                        room_id=room_id,
                        target_connection_id=successor.connection_id,
                        admin_connection_id=successor.connection_id,
                        is_admin=True,
                        admin_token=token,
                    ))
                    if self.pending.list(room_id):
                        events.append(self._queue_event(room_id, successor.connection_id))
                else:
                    room.admin_connection_id = None
                    self.records.save(room)
            else:
                # Approval rooms stay locked to the departed admin's token
                room.admin_connection_id = None
                self.records.save(room)
                if room.requires_admin_approval:
                    logger.info(f"Room {room_id} is without an admin until the token holder returns")
            room = self.records.load(room_id)

        if not result.room_empty:
            events.append(SystemMessage(room_id=room_id, text=f"{result.username} has left"))
            events.append(self._roster_event(room_id, room))
        else:
            logger.info(f"Room {room_id} is now empty")
            self.pending.clear_all(room_id)
            self.scheduler.arm(room_id, self.on_teardown)

    # ------------------------------------------------------------------ approval queue

    async def approve(self, admin_connection_id: str, room_id: str, connection_id: str) -> PendingEntry:
        """Admit a parked request.

        If the join itself fails (name taken meanwhile, room full) the requester
        gets a rejection carrying the reason and the admin gets the entry back
        in the rejected state.
        """
        room_id = normalize_room_id(room_id)
        events: List[RoomEvent] = []
        try:
            async with self._room_lock(room_id):
                self.admin.require_admin(admin_connection_id, room_id)
                entry = self.pending.get(room_id, connection_id)
                if entry is None:
                    raise NotFound("Join request not found")
                try:
                    result = await self._add_member_locked(
                        connection_id,
                        entry.username,
                        room_id,
                        admin_token=None,
                        requires_admin_approval=False,
                        bypass_approval=True,
                        events=events,
                    )
                except ChatError as e:
                    entry = self.pending.remove(room_id, connection_id, PendingState.REJECTED)
                    entry.reason = e.message
                    logger.info(f"Approved join for {connection_id} in room {room_id} failed: {e.message}")
                    events.append(JoinRejected(
                        room_id=room_id,
                        target_connection_id=connection_id,
                        connection_id=connection_id,
                        reason=e.message,
                        code=e.code,
                    ))
                else:
                    entry.state = PendingState.APPROVED
                    events.append(JoinApproved(
                        room_id=room_id,
                        target_connection_id=connection_id,
                        connection_id=connection_id,
                        username=result.username,
                        is_admin=result.is_admin,
                    ))
                events.append(self._queue_event(room_id, admin_connection_id))
                return entry
        finally:
            await self._emit_all(events)

    async def reject(
        self, admin_connection_id: str, room_id: str, connection_id: str, reason: Optional[str] = None
    ) -> PendingEntry:
        room_id = normalize_room_id(room_id)
        events: List[RoomEvent] = []
        try:
            async with self._room_lock(room_id):
                self.admin.require_admin(admin_connection_id, room_id)
                entry = self.pending.remove(room_id, connection_id, PendingState.REJECTED)
                if entry is None:
                    raise NotFound("Join request not found")
                entry.reason = reason or DEFAULT_REJECT_REASON
                events.append(JoinRejected(
                    room_id=room_id,
                    target_connection_id=connection_id,
                    connection_id=connection_id,
                    reason=entry.reason,
                ))
                events.append(self._queue_event(room_id, admin_connection_id))
                return entry
        finally:
            await self._emit_all(events)

    async def cancel_join_request(self, connection_id: str, room_id: Optional[str] = None) -> Optional[PendingEntry]:
        """Withdraw a parked request. Returns None if there was nothing to cancel."""
        room_id = normalize_room_id(room_id) if room_id else self.pending.room_for(connection_id)
        if not room_id:
            return None
        events: List[RoomEvent] = []
        try:
            return await self._cancel_pending(connection_id, room_id, events)
        finally:
            await self._emit_all(events)

    async def _cancel_pending(self, connection_id: str, room_id: str, events: List[RoomEvent]) -> Optional[PendingEntry]:
        async with self._room_lock(room_id):
            return self._cancel_pending_locked(connection_id, room_id, events)

    def _cancel_pending_locked(self, connection_id: str, room_id: str, events: List[RoomEvent]) -> Optional[PendingEntry]:
        entry = self.pending.remove(room_id, connection_id, PendingState.CANCELLED)
        if entry is None:
            return None
        admin_id = self.admin.current_admin(room_id)
        if admin_id:
            events.append(self._queue_event(room_id, admin_id))
        return entry

    # ------------------------------------------------------------------ moderation

    async def kick(self, admin_connection_id: str, target_connection_id: str, room_id: Optional[str] = None) -> RemovalResult:
        admin_session = self.sessions.get(admin_connection_id)
        if admin_session is None:
            raise NotAdmin()
        if room_id is not None and normalize_room_id(room_id) != admin_session.room_id:
            raise NotFound(f"You are not in room {room_id}")
        room_id = admin_session.room_id

        events: List[RoomEvent] = []
        try:
            async with self._room_lock(room_id):
                self.admin.validate_kick(admin_connection_id, target_connection_id, room_id)
                target = self.sessions.get(target_connection_id)
                if target is None or target.room_id != room_id:
                    raise NotFound("User not found in this room")
                self.sessions.mark_kicked(target_connection_id)
                result = self._remove_member_locked(target)
                logger.info(f"User {target.username} kicked from {room_id} by {admin_connection_id}")
                events.append(UserKicked(
                    room_id=room_id,
                    target_connection_id=target_connection_id,
                    connection_id=target_connection_id,
                    username=target.username,
                ))
                events.append(SystemMessage(room_id=room_id, text=f"{target.username} was removed by the admin"))
                events.append(self._roster_event(room_id, self.records.load(room_id)))
                return result
        finally:
            await self._emit_all(events)

    # ------------------------------------------------------------------ lifecycle

    async def _expire_room(self, room_id: str, on_teardown: Optional[TeardownCallback]) -> bool:
        async with self._room_lock(room_id):
            if self.sessions.sessions_in(self.records.member_ids(room_id)):
                logger.info(f"Room {room_id} has members again, skipping cleanup")
                return False
            logger.info(f"Cleaning up empty room {room_id}")
            self.pending.clear_all(room_id)
            if on_teardown is not None:
                try:
                    outcome = on_teardown(room_id)
                    if inspect.isawaitable(outcome):
                        await outcome
                except Exception as e:
                    logger.error(f"Teardown callback failed for room {room_id}: {e}", exc_info=True)
            self.records.delete(room_id)
            return True

    async def shutdown(self) -> None:
        await self.scheduler.shutdown()
