import json
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from logging_config import get_logger
from schemas.events import ChatMessage, MessageDeleted, MessageEdited, SystemMessage
from schemas.rooms import (
    CancelJoinPayload,
    DeleteMessagePayload,
    EditMessagePayload,
    EventFrame,
    JoinPayload,
    KickPayload,
    PendingDecisionPayload,
    RejectJoinPayload,
    RoomPayload,
    SendMessagePayload,
)
from services.connections import ConnectionManager
from services.errors import ChatError, InvalidInput, NotFound
from services.messages import MessageHistory
from services.models import JoinRequest, MembershipResult, Session
from services.normalize import sanitize_message
from services.rate_limit import RateLimiter
from services.room_directory import RoomDirectory

logger = get_logger(__name__)

events_router = APIRouter(tags=["events"])


@dataclass
class EventContext:
    connection_id: str
    directory: RoomDirectory
    history: MessageHistory
    limiter: RateLimiter
    manager: ConnectionManager
    closing: bool = False

    def current_session(self) -> Session:
        session = self.directory.sessions.get(self.connection_id)
        if session is None:
            raise NotFound("You are not in a room")
        return session


Handler = Callable[[EventContext, dict], Awaitable[Optional[dict]]]


def _parse(model, data: dict):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise InvalidInput(f"Invalid payload: {e.errors()[0].get('msg', 'bad value')}")


async def handle_join(ctx: EventContext, data: dict):
    payload = _parse(JoinPayload, data)
    ctx.limiter.check(ctx.connection_id, "join")
    outcome = await ctx.directory.add_member(JoinRequest(
        connection_id=ctx.connection_id,
        username=payload.username,
        room_id=payload.room,
        admin_token=payload.admin_token,
        requires_admin_approval=payload.requires_admin_approval,
    ))
    if not isinstance(outcome, MembershipResult):
        return {"status": "pending", "request": outcome.to_dict()}

    await ctx.manager.deliver(SystemMessage(
        room_id=outcome.room_id,
        target_connection_id=ctx.connection_id,
        text=f"Welcome to room {outcome.room_id}!",
    ))
    return {
        "status": "joined",
        **outcome.to_dict(),
        "messages": ctx.history.recent_messages(outcome.room_id),
    }


async def handle_leave_room(ctx: EventContext, data: dict):
    result = await ctx.directory.leave(ctx.connection_id)
    return {"left": result.room_id if result else None}


async def handle_disconnect(ctx: EventContext, data: dict):
    await ctx.directory.leave(ctx.connection_id)
    ctx.closing = True
    return {"disconnected": True}


async def handle_approve_join(ctx: EventContext, data: dict):
    payload = _parse(PendingDecisionPayload, data)
    entry = await ctx.directory.approve(ctx.connection_id, payload.room, payload.connection_id)
    return entry.to_dict()


async def handle_reject_join(ctx: EventContext, data: dict):
    payload = _parse(RejectJoinPayload, data)
    entry = await ctx.directory.reject(ctx.connection_id, payload.room, payload.connection_id, payload.reason)
    return entry.to_dict()


async def handle_cancel_join_request(ctx: EventContext, data: dict):
    payload = _parse(CancelJoinPayload, data)
    entry = await ctx.directory.cancel_join_request(ctx.connection_id, payload.room)
    return {"cancelled": entry is not None}


async def handle_kick_user(ctx: EventContext, data: dict):
    payload = _parse(KickPayload, data)
    result = await ctx.directory.kick(ctx.connection_id, payload.connection_id, payload.room)
    return {"connection_id": result.connection_id, "username": result.username}


async def handle_check_room_availability(ctx: EventContext, data: dict):
    payload = _parse(RoomPayload, data)
    return ctx.directory.check_room_availability(payload.room)


async def handle_check_room_capacity(ctx: EventContext, data: dict):
    payload = _parse(RoomPayload, data)
    return ctx.directory.check_room_capacity(payload.room)


async def handle_get_pending_requests(ctx: EventContext, data: dict):
    payload = _parse(RoomPayload, data)
    entries = ctx.directory.pending_requests(ctx.connection_id, payload.room)
    return {"pending": [e.to_dict() for e in entries]}


async def handle_send_message(ctx: EventContext, data: dict):
    payload = _parse(SendMessagePayload, data)
    ctx.limiter.check(ctx.connection_id, "message")
    session = ctx.current_session()
    text = sanitize_message(payload.text)
    message = ctx.history.save_message(
        session.room_id, ctx.history.new_message(ctx.connection_id, session.username, text)
    )
    await ctx.manager.deliver(ChatMessage(room_id=session.room_id, message=message))
    return {"message": message}


async def handle_edit_message(ctx: EventContext, data: dict):
    payload = _parse(EditMessagePayload, data)
    session = ctx.current_session()
    text = sanitize_message(payload.text)
    message = ctx.history.edit_message(session.room_id, payload.message_id, ctx.connection_id, text)
    await ctx.manager.deliver(MessageEdited(room_id=session.room_id, message=message))
    return {"message": message}


async def handle_delete_message(ctx: EventContext, data: dict):
    payload = _parse(DeleteMessagePayload, data)
    session = ctx.current_session()
    ctx.history.delete_message(session.room_id, payload.message_id, ctx.connection_id)
    await ctx.manager.deliver(MessageDeleted(room_id=session.room_id, message_id=payload.message_id))
    return {"message_id": payload.message_id}


HANDLERS: Dict[str, Handler] = {
    "join": handle_join,
    "leaveRoom": handle_leave_room,
    "disconnect": handle_disconnect,
    "approveJoin": handle_approve_join,
    "rejectJoin": handle_reject_join,
    "cancelJoinRequest": handle_cancel_join_request,
    "kickUser": handle_kick_user,
    "checkRoomAvailability": handle_check_room_availability,
    "checkRoomCapacity": handle_check_room_capacity,
    "getPendingRequests": handle_get_pending_requests,
    "sendMessage": handle_send_message,
    "editMessage": handle_edit_message,
    "deleteMessage": handle_delete_message,
}


async def dispatch(ctx: EventContext, raw: str) -> dict:
    """Run one client frame and build its reply."""
    ack = None
    try:
        try:
            frame = EventFrame.model_validate_json(raw)
        except ValidationError:
            raise InvalidInput("Malformed event frame")
        ack = frame.ack
        handler = HANDLERS.get(frame.event)
        if handler is None:
            raise InvalidInput(f"Unknown event: {frame.event}")
        logger.debug(f"Handling {frame.event} from connection {ctx.connection_id}")
        data = await handler(ctx, frame.data)
        return {"ack": ack, "ok": True, "data": data}
    except ChatError as e:
        logger.debug(f"Event from {ctx.connection_id} refused: {e.code} {e.message}")
        return {"ack": ack, "ok": False, "error": e.to_dict()}
    except Exception as e:
        logger.error(f"Error handling event from connection {ctx.connection_id}: {e}", exc_info=True)
        return {"ack": ack, "ok": False, "error": {"code": "server_error", "message": "Internal server error"}}


@events_router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Client connection. Every frame is `{"event", "data", "ack"}`."""
    state = websocket.app.state
    connection_id = str(uuid.uuid4())
    ctx = EventContext(
        connection_id=connection_id,
        directory=state.directory,
        history=state.history,
        limiter=state.limiter,
        manager=state.connections,
    )

    await websocket.accept()
    ctx.manager.register(connection_id, websocket)
    logger.info(f"WebSocket connection accepted: {connection_id}")

    try:
        await websocket.send_text(json.dumps({"type": "connected", "connection_id": connection_id}))
        while not ctx.closing:
            try:
                raw = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info(f"WebSocket disconnected normally for connection {connection_id}")
                break
            reply = await dispatch(ctx, raw)
            if connection_id not in ctx.manager.connections:
                # Closed server side while handling, e.g. kicked
                break
            await websocket.send_text(json.dumps(reply))
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
    finally:
        ctx.manager.unregister(connection_id)
        ctx.limiter.forget(connection_id)
        try:
            await ctx.directory.leave(connection_id)
        except Exception as e:
            logger.error(f"Cleanup failed for connection {connection_id}: {e}", exc_info=True)
        if ctx.closing:
            try:
                await websocket.close()
            except Exception as e:
                logger.debug(f"Error closing WebSocket: {e}")
        logger.info(f"Connection {connection_id} closed")
