"""
WebSocket endpoint for real-time notifications.

Protocol: JSON text frames {"event": ..., "data": ...} in both directions.

Client events:
    join-room          {"room": "task:<id>"}
    leave-room         {"room": "task:<id>"}
    send-notification  {"recipient_id", "message", "title"?, "type"?, ...}

Server events:
    pending-notifications, notification, task-updated, comment-updated,
    user-joined, user-left, ack, error

The handshake token comes from ?token= or the Authorization header. It is
checked again before every client event, so a token revoked or expired
mid-session ends the connection.
"""

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError as PydanticValidationError

import config
import database
import schemas
from auth.dependencies import authenticate_token, websocket_token
from auth.permissions import can_view_task
from errors import AppError, NotFoundError, UnauthorizedError, ValidationError
from models import Task
from realtime.manager import manager, user_room
from services import notifications as notification_store
from time_utils import iso_now

logger = logging.getLogger(__name__)

router = APIRouter()


def _room_allowed(room: str, user_id: int) -> bool:
    """Users may join their own room and the rooms of tasks they can see."""
    kind, _, key = room.partition(":")
    if kind == "user":
        return room == user_room(user_id)
    if kind == "task" and key.isdigit():
        with database.session_scope() as db:
            task = db.query(Task).filter(Task.id == int(key)).first()
            return task is not None and can_view_task(task, user_id)
    return False


async def _send_pending(socket_id: str, user_id: int) -> None:
    with database.session_scope() as db:
        pending = notification_store.list_unread(db, user_id, limit=config.PENDING_NOTIFICATIONS_LIMIT)
        payload = [schemas.Notification.model_validate(n).model_dump(mode="json") for n in pending]

    if payload:
        await manager.send(socket_id, "pending-notifications", payload)
        logger.info(f"Sent {len(payload)} pending notifications to user {user_id}")


async def _join_room(socket_id: str, user: schemas.TokenPayload, data: Dict[str, Any]) -> Dict[str, Any]:
    room = schemas.RoomRequest.model_validate(data).room
    if not _room_allowed(room, user.user_id):
        raise NotFoundError(f"Room {room} not found")

    manager.join(socket_id, room)
    await manager.emit_to_room(
        room,
        "user-joined",
        {"user_id": user.user_id, "username": user.username, "room": room, "timestamp": iso_now()},
        exclude=socket_id,
    )
    logger.info(f"User {user.user_id} joined room: {room}")
    return {"room": room}


async def _leave_room(socket_id: str, user: schemas.TokenPayload, data: Dict[str, Any]) -> Dict[str, Any]:
    room = schemas.RoomRequest.model_validate(data).room
    if room == user_room(user.user_id):
        raise ValidationError("Cannot leave your personal room")
    if not manager.in_room(socket_id, room):
        raise NotFoundError(f"Room {room} not found")

    manager.leave(socket_id, room)
    await manager.emit_to_room(
        room,
        "user-left",
        {"user_id": user.user_id, "username": user.username, "room": room, "timestamp": iso_now()},
    )
    logger.info(f"User {user.user_id} left room: {room}")
    return {"room": room}


async def _send_notification(websocket: WebSocket, user: schemas.TokenPayload, data: Dict[str, Any]) -> Dict[str, Any]:
    request = schemas.SendNotificationRequest.model_validate(data)
    payload = request.model_dump(mode="json")
    payload["sender_id"] = user.user_id
    notification = await websocket.app.state.broker.send("notification.create", payload)
    return {"id": notification["id"]}


async def _dispatch(websocket: WebSocket, socket_id: str, user: schemas.TokenPayload, frame: Dict[str, Any]) -> None:
    event = frame.get("event")
    data = frame.get("data") or {}

    if event == "join-room":
        result = await _join_room(socket_id, user, data)
    elif event == "leave-room":
        result = await _leave_room(socket_id, user, data)
    elif event == "send-notification":
        result = await _send_notification(websocket, user, data)
    else:
        await manager.send(socket_id, "error", {"code": "VALIDATION_ERROR", "message": f"Unknown event: {event}"})
        return

    await manager.send(socket_id, "ack", {"event": event, **result})


@router.websocket("/notifications")
async def notifications_socket(websocket: WebSocket):
    token = websocket_token(websocket)
    try:
        user = authenticate_token(token)
    except UnauthorizedError as e:
        logger.info(f"WebSocket handshake rejected: {e.message}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.message)
        return

    await websocket.accept()
    socket_id = manager.register(websocket, user.user_id)

    try:
        await _send_pending(socket_id, user.user_id)

        while True:
            raw = await websocket.receive_text()

            try:
                authenticate_token(token)
            except UnauthorizedError as e:
                logger.info(f"Closing socket {socket_id}: {e.message}")
                await manager.send(socket_id, "error", {"code": e.code, "message": e.message})
                await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.message)
                break

            try:
                frame = json.loads(raw)
                if not isinstance(frame, dict):
                    raise ValueError("frame must be an object")
                await _dispatch(websocket, socket_id, user, frame)
            except PydanticValidationError as e:
                await manager.send(socket_id, "error", {
                    "code": "VALIDATION_ERROR",
                    "message": "Validation failed",
                    "details": [
                        {"field": ".".join(str(loc) for loc in err["loc"]), "message": err["msg"]}
                        for err in e.errors()
                    ],
                })
            except ValueError as e:
                await manager.send(socket_id, "error", {"code": "VALIDATION_ERROR", "message": f"Invalid frame: {e}"})
            except AppError as e:
                await manager.send(socket_id, "error", {"code": e.code, "message": e.message})
    except WebSocketDisconnect:
        logger.debug(f"Socket {socket_id} disconnected by client")
    finally:
        manager.unregister(socket_id)
