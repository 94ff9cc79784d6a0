"""
Room membership, admin capability and teardown behaviour of RoomDirectory.

Every test runs against both the fakeredis-backed in-memory store and a
FallbackStore over a fakeredis server.
"""

import asyncio

import pytest

from constants import ROOM_CAPACITY_DEFAULT, ROOM_CAPACITY_LOCATION
from services.errors import CannotKickSelf, InvalidInput, Kicked, NotAdmin, NotFound, RoomFull, UsernameTaken
from services.models import AdminMode, JoinRequest, MembershipResult, PendingEntry, PendingState


def req(connection_id, username, room_id="LOBBY", **kwargs):
    return JoinRequest(connection_id=connection_id, username=username, room_id=room_id, **kwargs)


def member_ids(directory, room_id):
    return [s.connection_id for s in directory.members(room_id)]


async def test_first_joiner_creates_room_and_becomes_admin(directory, sink):
    result = await directory.add_member(req("c1", "Alice", "lobby"))

    assert isinstance(result, MembershipResult)
    assert result.room_id == "LOBBY"
    assert result.username == "alice"
    assert result.is_admin is True
    assert result.admin_token
    assert directory.admin.current_admin("LOBBY") == "c1"
    assert sink.of_type("membership_changed")[-1].online_count == 1
    admin_events = sink.of_type("admin_status_changed")
    assert admin_events[-1].target_connection_id == "c1"
    assert admin_events[-1].admin_token == result.admin_token


async def test_location_room_has_no_admin(directory):
    result = await directory.add_member(req("c1", "alice", "loc_abc123"))

    assert result.is_admin is False
    assert result.admin_token is None
    room = directory.records.load("LOC_ABC123")
    assert room.admin_mode is AdminMode.NO_ADMIN
    assert directory.check_room_capacity("LOC_ABC123")["limit"] == ROOM_CAPACITY_LOCATION


async def test_location_room_ignores_approval_request(directory):
    await directory.add_member(req("c1", "alice", "LOC_X1", requires_admin_approval=True))
    result = await directory.add_member(req("c2", "bob", "LOC_X1"))

    assert isinstance(result, MembershipResult)
    assert member_ids(directory, "LOC_X1") == ["c1", "c2"]


async def test_capacity_is_never_exceeded(directory):
    for i in range(ROOM_CAPACITY_DEFAULT):
        await directory.add_member(req(f"c{i}", f"user{i:02d}", "BIG"))
    before = set(member_ids(directory, "BIG"))

    with pytest.raises(RoomFull):
        await directory.add_member(req("extra", "latecomer", "BIG"))

    assert set(member_ids(directory, "BIG")) == before
    assert directory.sessions.get("extra") is None
    capacity = directory.check_room_capacity("BIG")
    assert capacity["is_full"] is True
    assert capacity["available"] == 0


async def test_duplicate_username_is_refused(directory):
    await directory.add_member(req("c1", "alice"))
    await directory.add_member(req("c2", "bob"))

    with pytest.raises(UsernameTaken):
        await directory.add_member(req("c3", "  ALICE "))

    assert member_ids(directory, "LOBBY") == ["c1", "c2"]
    assert directory.sessions.get("c1").username == "alice"


async def test_same_username_allowed_in_different_rooms(directory):
    await directory.add_member(req("c1", "alice", "ROOM1"))
    result = await directory.add_member(req("c2", "alice", "ROOM2"))

    assert result.room_id == "ROOM2"


async def test_invalid_input_is_refused(directory):
    with pytest.raises(InvalidInput):
        await directory.add_member(req("c1", "a"))
    with pytest.raises(InvalidInput):
        await directory.add_member(req("c1", "alice", "   "))
    with pytest.raises(InvalidInput):
        await directory.add_member(req("", "alice"))


async def test_remove_member_is_idempotent(directory):
    await directory.add_member(req("c1", "alice"))
    await directory.add_member(req("c2", "bob"))

    first = await directory.remove_member("c2")
    second = await directory.remove_member("c2")

    assert first.remaining == 1
    assert second is None
    assert member_ids(directory, "LOBBY") == ["c1"]
    assert directory.sessions.was_recently_removed("c2")


async def test_concurrent_leave_removes_once(directory, sink):
    await directory.add_member(req("c1", "alice"))
    await directory.add_member(req("c2", "bob"))
    sink.clear()

    results = await asyncio.gather(directory.leave("c2"), directory.leave("c2"))

    assert sum(1 for r in results if r is not None) == 1
    assert member_ids(directory, "LOBBY") == ["c1"]
    left = [e for e in sink.of_type("system") if e.text == "bob has left"]
    assert len(left) == 1


async def test_joining_another_room_evicts_previous_session(directory):
    await directory.add_member(req("c1", "alice", "ROOM1"))
    await directory.add_member(req("c2", "bob", "ROOM1"))

    result = await directory.add_member(req("c1", "alice", "ROOM2"))

    assert result.evicted is not None
    assert result.evicted.room_id == "ROOM1"
    assert member_ids(directory, "ROOM1") == ["c2"]
    assert member_ids(directory, "ROOM2") == ["c1"]
    # c1 was admin of ROOM1, bob inherits it
    assert directory.admin.current_admin("ROOM1") == "c2"


async def test_concurrent_joins_cannot_both_take_the_last_seat(directory, monkeypatch):
    monkeypatch.setattr("services.room_directory.room_capacity", lambda room_id: 3)
    await directory.add_member(req("c1", "alice", "RACE"))
    await directory.add_member(req("c2", "bob", "RACE"))

    results = await asyncio.gather(
        directory.add_member(req("c3", "carol", "RACE")),
        directory.add_member(req("c4", "dave", "RACE")),
        return_exceptions=True,
    )

    assert sum(1 for r in results if isinstance(r, RoomFull)) == 1
    assert sum(1 for r in results if isinstance(r, MembershipResult)) == 1
    assert len(member_ids(directory, "RACE")) == 3


async def test_concurrent_joins_with_same_username(directory):
    results = await asyncio.gather(
        directory.add_member(req("c1", "alice")),
        directory.add_member(req("c2", "ALICE")),
        return_exceptions=True,
    )

    assert sum(1 for r in results if isinstance(r, UsernameTaken)) == 1
    assert len(member_ids(directory, "LOBBY")) == 1


async def test_refused_join_keeps_previous_session(directory, sink):
    await directory.add_member(req("c1", "alice", "ROOM1"))
    await directory.add_member(req("c2", "bob", "ROOM1"))
    await directory.add_member(req("c3", "alice", "ROOM2"))
    sink.clear()

    with pytest.raises(UsernameTaken):
        await directory.add_member(req("c1", "alice", "ROOM2"))

    assert directory.sessions.get("c1").room_id == "ROOM1"
    assert member_ids(directory, "ROOM1") == ["c1", "c2"]
    assert directory.admin.current_admin("ROOM1") == "c1"
    assert sink.events == []


async def test_join_into_full_room_keeps_previous_session(directory, monkeypatch):
    monkeypatch.setattr(
        "services.room_directory.room_capacity",
        lambda room_id: 1 if room_id == "FULL" else ROOM_CAPACITY_DEFAULT,
    )
    await directory.add_member(req("c1", "alice", "ROOM1"))
    await directory.add_member(req("c2", "bob", "FULL"))

    with pytest.raises(RoomFull):
        await directory.add_member(req("c1", "alice", "FULL"))

    assert directory.sessions.get("c1").room_id == "ROOM1"
    assert member_ids(directory, "ROOM1") == ["c1"]
    assert not directory.scheduler.is_armed("ROOM1")


async def test_rejoining_own_room_at_capacity(directory, monkeypatch):
    monkeypatch.setattr("services.room_directory.room_capacity", lambda room_id: 1)
    await directory.add_member(req("c1", "alice", "SOLO"))

    result = await directory.add_member(req("c1", "alice", "SOLO"))

    assert isinstance(result, MembershipResult)
    assert member_ids(directory, "SOLO") == ["c1"]
    assert not directory.scheduler.is_armed("SOLO")


async def test_joining_elsewhere_withdraws_pending_request_only_after_acceptance(directory):
    await directory.add_member(req("a1", "alice", "VIP", requires_admin_approval=True))
    await directory.add_member(req("c2", "carol", "VIP"))
    await directory.add_member(req("c9", "bob", "OTHER"))

    with pytest.raises(UsernameTaken):
        await directory.add_member(req("c2", "bob", "OTHER"))
    assert [e.connection_id for e in directory.pending.list("VIP")] == ["c2"]

    await directory.add_member(req("c2", "carol", "OTHER"))
    assert directory.pending.list("VIP") == []


async def test_admin_token_continuity_in_approval_room(directory):
    first = await directory.add_member(req("a1", "alice", "SECRET", requires_admin_approval=True))
    token = first.admin_token
    await directory.add_member(req("b1", "bob", "SECRET", admin_token=None))
    # bob is parked, so let him in
    await directory.approve("a1", "SECRET", "b1")

    await directory.leave("a1")
    assert directory.admin.current_admin("SECRET") is None
    assert directory.admin.current_token("SECRET") == token

    back = await directory.add_member(req("a2", "alice", "SECRET", admin_token=token))

    assert isinstance(back, MembershipResult)
    assert back.is_admin is True
    assert back.admin_token == token
    assert directory.admin.current_admin("SECRET") == "a2"


async def test_admin_reclaims_room_within_grace_period(directory):
    first = await directory.add_member(req("a1", "alice", "SOLO", requires_admin_approval=True))
    await directory.leave("a1")
    assert directory.scheduler.is_armed("SOLO")

    back = await directory.add_member(req("a2", "alice", "SOLO", admin_token=first.admin_token))

    assert back.is_admin is True
    assert back.admin_token == first.admin_token
    assert not directory.scheduler.is_armed("SOLO")


async def test_wrong_token_does_not_grant_admin(directory):
    await directory.add_member(req("a1", "alice", "SECRET", requires_admin_approval=True))
    await directory.leave("a1")
    await directory.add_member(req("x1", "mallory", "SECRET", admin_token="forged"))

    assert directory.admin.current_admin("SECRET") is None


async def test_admin_handoff_on_departure(directory, sink):
    first = await directory.add_member(req("a1", "alice", "OPEN"))
    await directory.add_member(req("b1", "bob", "OPEN"))
    sink.clear()

    result = await directory.leave("a1")

    assert result.was_admin is True
    assert result.new_admin == "b1"
    assert directory.admin.current_admin("OPEN") == "b1"
    new_token = directory.admin.current_token("OPEN")
    assert new_token and new_token != first.admin_token
    event = sink.of_type("admin_status_changed")[-1]
    assert event.target_connection_id == "b1"
    assert event.admin_token == new_token


async def test_handoff_goes_to_earliest_member(directory):
    await directory.add_member(req("a1", "alice", "OPEN"))
    await directory.add_member(req("b1", "bob", "OPEN"))
    await directory.add_member(req("c1", "carol", "OPEN"))

    await directory.leave("a1")

    assert directory.admin.current_admin("OPEN") == "b1"


async def test_approval_room_admin_is_not_handed_off(directory):
    await directory.add_member(req("a1", "alice", "SECRET", requires_admin_approval=True))
    await directory.add_member(req("b1", "bob", "SECRET"))
    await directory.approve("a1", "SECRET", "b1")

    await directory.leave("a1")

    assert directory.admin.current_admin("SECRET") is None
    assert member_ids(directory, "SECRET") == ["b1"]


async def test_approval_gate_approve(directory, sink):
    await directory.add_member(req("a1", "alice", "SECRET", requires_admin_approval=True))
    sink.clear()

    parked = await directory.add_member(req("c1", "carol", "SECRET"))

    assert isinstance(parked, PendingEntry)
    assert parked.state is PendingState.REQUESTED
    assert "c1" not in member_ids(directory, "SECRET")
    requested = sink.of_type("join_requested")[-1]
    assert requested.target_connection_id == "a1"
    assert [p.connection_id for p in sink.of_type("pending_queue_changed")[-1].pending] == ["c1"]

    entry = await directory.approve("a1", "SECRET", "c1")

    assert entry.state is PendingState.APPROVED
    assert member_ids(directory, "SECRET") == ["a1", "c1"]
    assert directory.admin.current_admin("SECRET") == "a1"
    approved = sink.of_type("join_approved")[-1]
    assert approved.target_connection_id == "c1"
    assert approved.is_admin is False
    assert directory.pending.list("SECRET") == []
    assert directory.pending.room_for("c1") is None


async def test_approval_gate_reject(directory, sink):
    await directory.add_member(req("a1", "alice", "SECRET", requires_admin_approval=True))
    await directory.add_member(req("c1", "carol", "SECRET"))

    entry = await directory.reject("a1", "SECRET", "c1", "no")

    assert entry.state is PendingState.REJECTED
    assert entry.reason == "no"
    assert "c1" not in member_ids(directory, "SECRET")
    rejected = sink.of_type("join_rejected")[-1]
    assert rejected.target_connection_id == "c1"
    assert rejected.reason == "no"


async def test_reject_without_reason_uses_default(directory):
    await directory.add_member(req("a1", "alice", "SECRET", requires_admin_approval=True))
    await directory.add_member(req("c1", "carol", "SECRET"))

    entry = await directory.reject("a1", "SECRET", "c1")

    assert entry.reason


async def test_only_admin_can_decide_requests(directory):
    await directory.add_member(req("a1", "alice", "SECRET", requires_admin_approval=True))
    await directory.add_member(req("c1", "carol", "SECRET"))

    with pytest.raises(NotAdmin):
        await directory.approve("c1", "SECRET", "c1")
    with pytest.raises(NotAdmin):
        directory.pending_requests("c1", "SECRET")
    with pytest.raises(NotFound):
        await directory.approve("a1", "SECRET", "ghost")


async def test_approve_fails_when_username_taken_meanwhile(directory, sink):
    await directory.add_member(req("a1", "alice", "SECRET", requires_admin_approval=True))
    await directory.add_member(req("c1", "carol", "SECRET"))
    # a second carol is approved first
    await directory.add_member(req("c2", "carol", "SECRET"))
    await directory.approve("a1", "SECRET", "c2")

    entry = await directory.approve("a1", "SECRET", "c1")

    assert entry.state is PendingState.REJECTED
    assert "c1" not in member_ids(directory, "SECRET")
    rejected = sink.of_type("join_rejected")[-1]
    assert rejected.target_connection_id == "c1"
    assert rejected.code == "username_taken"


async def test_cancel_join_request(directory, sink):
    await directory.add_member(req("a1", "alice", "SECRET", requires_admin_approval=True))
    await directory.add_member(req("c1", "carol", "SECRET"))
    sink.clear()

    entry = await directory.cancel_join_request("c1")

    assert entry.state is PendingState.CANCELLED
    assert directory.pending.list("SECRET") == []
    assert sink.of_type("pending_queue_changed")[-1].pending == []
    assert await directory.cancel_join_request("c1") is None


async def test_disconnect_withdraws_pending_request(directory):
    await directory.add_member(req("a1", "alice", "SECRET", requires_admin_approval=True))
    await directory.add_member(req("c1", "carol", "SECRET"))

    await directory.leave("c1")

    assert directory.pending.list("SECRET") == []


async def test_pending_requests_are_ordered(directory):
    await directory.add_member(req("a1", "alice", "SECRET", requires_admin_approval=True))
    await directory.add_member(req("c1", "carol", "SECRET"))
    await directory.add_member(req("d1", "dave", "SECRET"))

    pending = directory.pending_requests("a1", "secret")

    assert [p.connection_id for p in pending] == ["c1", "d1"]


async def test_kick_removes_member_and_blocks_rejoin(directory, sink):
    await directory.add_member(req("a1", "alice"))
    await directory.add_member(req("b1", "bob"))
    sink.clear()

    result = await directory.kick("a1", "b1")

    assert result.username == "bob"
    assert member_ids(directory, "LOBBY") == ["a1"]
    kicked = sink.of_type("user_kicked")[-1]
    assert kicked.target_connection_id == "b1"
    with pytest.raises(Kicked):
        await directory.add_member(req("b1", "bob"))


async def test_kick_rules(directory):
    await directory.add_member(req("a1", "alice"))
    await directory.add_member(req("b1", "bob"))

    with pytest.raises(NotAdmin):
        await directory.kick("b1", "a1")
    with pytest.raises(CannotKickSelf):
        await directory.kick("a1", "a1")
    with pytest.raises(NotFound):
        await directory.kick("a1", "ghost")
    with pytest.raises(NotAdmin):
        await directory.kick("nobody", "b1")


async def test_empty_room_is_torn_down_after_grace(directory, torn_down):
    await directory.add_member(req("a1", "alice", "SECRET", requires_admin_approval=True))
    await directory.add_member(req("c1", "carol", "SECRET"))
    assert len(directory.pending.list("SECRET")) == 1

    await directory.leave("a1")
    assert directory.scheduler.is_armed("SECRET")

    await asyncio.sleep(0.2)

    assert torn_down == ["SECRET"]
    assert directory.records.load("SECRET") is None
    assert directory.pending.list("SECRET") == []
    assert directory.check_room_availability("SECRET")["is_active"] is False
    with pytest.raises(NotFound):
        directory.room_info("SECRET")


async def test_rejoin_during_grace_cancels_teardown(directory, torn_down):
    await directory.add_member(req("a1", "alice", "ROOM"))
    await directory.leave("a1")
    assert directory.scheduler.is_armed("ROOM")

    await asyncio.sleep(0.01)
    await directory.add_member(req("b1", "bob", "ROOM"))
    await asyncio.sleep(0.2)

    assert torn_down == []
    assert directory.records.load("ROOM") is not None
    assert member_ids(directory, "ROOM") == ["b1"]


async def test_unattended_transferable_room_gives_admin_to_joiner(directory):
    await directory.add_member(req("a1", "alice", "ROOM"))
    await directory.leave("a1")

    result = await directory.add_member(req("b1", "bob", "ROOM"))

    assert result.is_admin is True
    assert result.admin_token


async def test_room_info_snapshot(directory):
    await directory.add_member(req("a1", "alice", "ROOM", requires_admin_approval=True))
    await directory.add_member(req("c1", "carol", "ROOM"))

    snapshot = directory.room_info("room")

    assert snapshot.room_id == "ROOM"
    assert [m.username for m in snapshot.members] == ["alice"]
    assert snapshot.admin_connection_id == "a1"
    assert snapshot.requires_admin_approval is True
    assert snapshot.pending_count == 1
    assert snapshot.capacity == ROOM_CAPACITY_DEFAULT
