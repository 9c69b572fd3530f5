"""
Delivery Gateway connection registry.

WHAT: Live connections per user, rooms per conversation, presence
WHY: Push committed mutations and ephemeral signals to connected participants
HOW: In-process dicts mutated without awaiting (single event loop), sends over
     snapshot copies so a slow or dead socket never blocks registry changes

Delivery is at-most-once and best-effort: a failed send is logged and skipped,
there is no replay log.
"""

import asyncio
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set
from uuid import uuid4

from fastapi import WebSocket

from ..utils.logger import get_logger
from .protocol import PRESENCE_UPDATE, GatewayEvent, room_name

logger = get_logger(__name__)


class Connection:
    """A live client connection owned by one user."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        self.connection_id = str(uuid4())
        self.rooms: Set[str] = set()

    async def send_json(self, data: dict):
        raise NotImplementedError

    async def close(self, code: int = 1000):
        pass


class WebSocketConnection(Connection):
    """Bidirectional socket connection."""

    def __init__(self, user_id: str, websocket: WebSocket):
        super().__init__(user_id)
        self.websocket = websocket

    async def send_json(self, data: dict):
        await self.websocket.send_json(data)

    async def close(self, code: int = 1000):
        await self.websocket.close(code=code)


class QueueConnection(Connection):
    """Receive-only connection drained by the SSE stream."""

    def __init__(self, user_id: str, maxsize: int = 1000):
        super().__init__(user_id)
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    async def send_json(self, data: dict):
        # Full queue means the reader stalled; drop like a dead socket would
        self.queue.put_nowait(data)


class ConnectionManager:
    """
    Registry of live connections and conversation rooms.

    Rooms are named conversation_{id}. A user may hold several connections;
    presence is online while at least one is open.
    """

    def __init__(self):
        self._connections: Dict[str, Connection] = {}
        self._by_user: Dict[str, Set[str]] = {}
        self._rooms: Dict[str, Set[str]] = {}
        self._last_seen: Dict[str, datetime] = {}

    # ========== Registration ==========

    async def connect(self, connection: Connection, conversation_ids: Iterable[str]) -> bool:
        """
        Register a connection, subscribe it to its conversations and announce presence.

        Returns:
            True if this is the user's first live connection
        """
        self._connections[connection.connection_id] = connection
        user_connections = self._by_user.setdefault(connection.user_id, set())
        first = not user_connections
        user_connections.add(connection.connection_id)
        for conversation_id in conversation_ids:
            self.join(connection, conversation_id)

        logger.info(
            f"User {connection.user_id} connected ({connection.__class__.__name__}, "
            f"{len(connection.rooms)} rooms, {self.connection_count()} total connections)"
        )

        await self._send(connection, GatewayEvent(
            type=PRESENCE_UPDATE,
            payload={"online": self.online_user_ids()},
        ).to_wire())

        if first:
            await self._broadcast_presence(connection.user_id, "online")
        return first

    async def disconnect(self, connection: Connection) -> bool:
        """
        Unregister a connection.

        Returns:
            True if it was the user's last live connection
        """
        if self._connections.pop(connection.connection_id, None) is None:
            return False

        rooms = set(connection.rooms)
        for room in rooms:
            members = self._rooms.get(room)
            if members is not None:
                members.discard(connection.connection_id)
                if not members:
                    del self._rooms[room]

        user_connections = self._by_user.get(connection.user_id, set())
        user_connections.discard(connection.connection_id)
        last = not user_connections
        if last:
            self._by_user.pop(connection.user_id, None)
            self._last_seen[connection.user_id] = datetime.utcnow()

        logger.info(f"User {connection.user_id} disconnected (last={last})")

        if last:
            await self._broadcast_presence(connection.user_id, "offline", rooms=rooms)
        return last

    def join(self, connection: Connection, conversation_id: str):
        room = room_name(conversation_id)
        self._rooms.setdefault(room, set()).add(connection.connection_id)
        connection.rooms.add(room)
        logger.debug(f"Connection {connection.connection_id} ({connection.user_id}) joined {room}")

    def leave(self, connection: Connection, conversation_id: str):
        room = room_name(conversation_id)
        members = self._rooms.get(room)
        if members is not None:
            members.discard(connection.connection_id)
            if not members:
                del self._rooms[room]
        connection.rooms.discard(room)
        logger.debug(f"Connection {connection.connection_id} ({connection.user_id}) left {room}")

    def join_user(self, user_id: str, conversation_id: str):
        """Subscribe every live connection of user_id to a conversation room."""
        for connection_id in list(self._by_user.get(user_id, ())):
            connection = self._connections.get(connection_id)
            if connection is not None:
                self.join(connection, conversation_id)

    def in_room(self, connection: Connection, conversation_id: str) -> bool:
        return room_name(conversation_id) in connection.rooms

    # ========== Fan-out ==========

    async def publish(
        self,
        event: GatewayEvent,
        exclude_user_ids: Iterable[str] = (),
    ) -> Set[str]:
        """
        Send an event to every connection in the event's conversation room.

        Args:
            event: Event with conversation_id set
            exclude_user_ids: Users whose connections are skipped

        Returns:
            User ids that received the event on at least one connection
        """
        if event.conversation_id is None:
            raise ValueError("publish requires an event with a conversation_id")

        excluded = set(exclude_user_ids)
        targets = [
            self._connections[cid]
            for cid in list(self._rooms.get(room_name(event.conversation_id), ()))
            if cid in self._connections
        ]
        wire = event.to_wire()

        delivered: Set[str] = set()
        for connection in targets:
            if connection.user_id in excluded:
                continue
            if await self._send(connection, wire):
                delivered.add(connection.user_id)

        logger.debug(f"Relayed {event.type} to {len(delivered)} users in {room_name(event.conversation_id)}")
        return delivered

    async def send_to_user(self, user_id: str, event: GatewayEvent) -> bool:
        """Send an event to every connection of one user."""
        wire = event.to_wire()
        sent = False
        for connection_id in list(self._by_user.get(user_id, ())):
            connection = self._connections.get(connection_id)
            if connection is not None and await self._send(connection, wire):
                sent = True
        return sent

    async def send_to_connection(self, connection: Connection, event: GatewayEvent) -> bool:
        return await self._send(connection, event.to_wire())

    async def _send(self, connection: Connection, wire: dict) -> bool:
        try:
            await connection.send_json(wire)
            return True
        except Exception as e:
            logger.warning(f"Dropped {wire.get('type')} for connection {connection.connection_id}: {e}")
            return False

    async def _broadcast_presence(self, user_id: str, status: str, rooms: Optional[Set[str]] = None):
        """Tell everyone sharing a room with user_id about a presence change."""
        if rooms is None:
            rooms = set()
            for connection_id in self._by_user.get(user_id, ()):
                connection = self._connections.get(connection_id)
                if connection is not None:
                    rooms |= connection.rooms

        payload = {"userId": user_id, "status": status}
        if status == "offline":
            payload["lastSeen"] = self._last_seen.get(user_id)
        wire = GatewayEvent(type=PRESENCE_UPDATE, payload=payload).to_wire()

        notified: Set[str] = set()
        for room in rooms:
            for connection_id in list(self._rooms.get(room, ())):
                connection = self._connections.get(connection_id)
                if connection is None or connection.user_id == user_id or connection_id in notified:
                    continue
                notified.add(connection_id)
                await self._send(connection, wire)

    async def broadcast_presence(self, user_id: str, status: str):
        """Client-initiated presence change (e.g. away)."""
        await self._broadcast_presence(user_id, status)

    # ========== Introspection ==========

    def online_user_ids(self) -> List[str]:
        return sorted(self._by_user.keys())

    def is_online(self, user_id: str) -> bool:
        return bool(self._by_user.get(user_id))

    def connection_count(self) -> int:
        return len(self._connections)

    def room_members(self, conversation_id: str) -> Set[str]:
        """User ids with at least one connection in the room."""
        return {
            self._connections[cid].user_id
            for cid in self._rooms.get(room_name(conversation_id), ())
            if cid in self._connections
        }
