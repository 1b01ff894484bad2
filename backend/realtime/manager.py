"""
WebSocket presence and room bookkeeping.

Every connection is tracked by a socket id together with its user id and
the rooms it joined; rooms map back to socket ids. Each authenticated
socket is placed in its personal room "user:<id>".

The maps are process-local and only touched from the event loop.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


def user_room(user_id: int) -> str:
    return f"user:{user_id}"


def task_room(task_id: int) -> str:
    return f"task:{task_id}"


@dataclass
class Connection:
    websocket: WebSocket
    user_id: int
    rooms: Set[str] = field(default_factory=set)


class ConnectionManager:
    def __init__(self):
        self._connections: Dict[str, Connection] = {}
        self._rooms: Dict[str, Set[str]] = {}

    def register(self, websocket: WebSocket, user_id: int) -> str:
        """Track an accepted socket and join it to its user room."""
        socket_id = str(uuid.uuid4())
        self._connections[socket_id] = Connection(websocket=websocket, user_id=user_id)
        self.join(socket_id, user_room(user_id))
        logger.info(f"Socket {socket_id} connected for user {user_id}")
        return socket_id

    def unregister(self, socket_id: str) -> Optional[Connection]:
        connection = self._connections.pop(socket_id, None)
        if connection is None:
            return None
        for room in connection.rooms:
            members = self._rooms.get(room)
            if members is not None:
                members.discard(socket_id)
                if not members:
                    del self._rooms[room]
        logger.info(f"Socket {socket_id} disconnected for user {connection.user_id}")
        return connection

    def join(self, socket_id: str, room: str) -> None:
        connection = self._connections[socket_id]
        connection.rooms.add(room)
        self._rooms.setdefault(room, set()).add(socket_id)
        logger.debug(f"Socket {socket_id} joined room {room}")

    def leave(self, socket_id: str, room: str) -> None:
        connection = self._connections[socket_id]
        connection.rooms.discard(room)
        members = self._rooms.get(room)
        if members is not None:
            members.discard(socket_id)
            if not members:
                del self._rooms[room]
        logger.debug(f"Socket {socket_id} left room {room}")

    def room_members(self, room: str) -> Set[str]:
        return set(self._rooms.get(room, set()))

    def in_room(self, socket_id: str, room: str) -> bool:
        return socket_id in self._rooms.get(room, ())

    def is_user_online(self, user_id: int) -> bool:
        return bool(self._rooms.get(user_room(user_id)))

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def send(self, socket_id: str, event: str, data: Any) -> bool:
        """Send one {event, data} frame. A socket that fails to receive is dropped."""
        connection = self._connections.get(socket_id)
        if connection is None:
            return False
        try:
            await connection.websocket.send_json({"event": event, "data": data})
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.warning(f"Dropping socket {socket_id} after failed send of {event}: {e}")
            self.unregister(socket_id)
            return False
        return True

    async def emit_to_room(
        self,
        room: str,
        event: str,
        data: Any,
        exclude: Optional[str] = None,
        allow: Optional[Callable[[int], bool]] = None,
    ) -> int:
        """
        Send an event to every socket in a room.

        Args:
            exclude: socket id to skip, usually the sender
            allow: predicate on user id; sockets of users it rejects are
                removed from the room instead of receiving the frame

        Returns:
            Number of sockets the frame was delivered to
        """
        delivered = 0
        for socket_id in self.room_members(room):
            if socket_id == exclude:
                continue
            connection = self._connections.get(socket_id)
            if connection is None:
                continue
            if allow is not None and not allow(connection.user_id):
                logger.info(f"User {connection.user_id} no longer allowed in {room}, removing socket {socket_id}")
                self.leave(socket_id, room)
                continue
            if await self.send(socket_id, event, data):
                delivered += 1
        logger.debug(f"Emitted {event} to {delivered} sockets in {room}")
        return delivered

    async def emit_to_user(self, user_id: int, event: str, data: Any) -> int:
        return await self.emit_to_room(user_room(user_id), event, data)

    def clear(self) -> None:
        self._connections.clear()
        self._rooms.clear()


manager = ConnectionManager()
