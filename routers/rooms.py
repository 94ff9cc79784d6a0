from fastapi import APIRouter, HTTPException, Request
from schemas.rooms import OnlineUser, RoomAvailabilityResponse, RoomCapacityResponse, RoomDetailsResponse
from services.errors import ChatError, NotFound
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


@rooms_router.get("/{room_id}/availability", response_model=RoomAvailabilityResponse)
async def room_availability(room_id: str, request: Request):
    try:
        return request.app.state.directory.check_room_availability(room_id)
    except ChatError as e:
        raise HTTPException(status_code=400, detail=e.message)


@rooms_router.get("/{room_id}/capacity", response_model=RoomCapacityResponse)
async def room_capacity(room_id: str, request: Request):
    try:
        return request.app.state.directory.check_room_capacity(room_id)
    except ChatError as e:
        raise HTTPException(status_code=400, detail=e.message)


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, request: Request):
    """
    Get room details including the online users.

    Returns 404 once the room has been torn down (or never existed).
    """
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"Room details request for {room_id} from {client_host}")

    try:
        snapshot = request.app.state.directory.room_info(room_id)
    except NotFound:
        logger.warning(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")
    except ChatError as e:
        raise HTTPException(status_code=400, detail=e.message)

    online_users = [
        OnlineUser(
            connection_id=s.connection_id,
            display_name=s.username,
            connected_at=s.joined_at,
            is_admin=s.connection_id == snapshot.admin_connection_id,
        )
        for s in snapshot.members
    ]
    online_users_count = len(online_users)
    is_full = online_users_count >= snapshot.capacity

    logger.info(f"Room details retrieved for {snapshot.room_id}: {online_users_count}/{snapshot.capacity} users online")

    return RoomDetailsResponse(
        room_id=snapshot.room_id,
        created_at=snapshot.created_at,
        last_activity_at=snapshot.last_activity_at,
        max_users=snapshot.capacity,
        online_users_count=online_users_count,
        online_users=online_users,
        has_admin=snapshot.admin_connection_id is not None,
        requires_admin_approval=snapshot.requires_admin_approval,
        pending_count=snapshot.pending_count,
        is_full=is_full,
    )
