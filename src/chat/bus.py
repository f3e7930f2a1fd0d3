"""Room-based fan-out of committed chat events to connected sockets.

The bus never persists anything. ``publish`` only enqueues: every connection
drains its own queue in order from a single writer task, so the order in
which events are published is the order each socket sees them.
"""
from collections import defaultdict
from typing import Dict, Optional, Set
import asyncio
import itertools
import json
import logging

from fastapi import WebSocket, WebSocketDisconnect, status

from src.configs.settings import SOCKET_QUEUE_SIZE

logger = logging.getLogger(__name__)

MESSAGE_APPENDED = "message-appended"
TYPING_START = "typing-start"
TYPING_STOP = "typing-stop"

_ids = itertools.count(1)


class Connection:
    def __init__(self, ws: WebSocket, user_id: str, queue_size: int = SOCKET_QUEUE_SIZE):
        self.id = next(_ids)
        self.ws = ws
        self.user_id = user_id
        self.rooms: Set[str] = set()
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.closed = False
        self.close_code: Optional[int] = None

    def enqueue(self, payload: dict) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(payload)
            return True
        except asyncio.QueueFull:
            logger.warning("Outbound queue full for connection %s (%s), dropping it", self.id, self.user_id)
            self.drop(status.WS_1013_TRY_AGAIN_LATER)
            return False

    def drop(self, code: int) -> None:
        """Mark the connection dead; the writer closes the socket with ``code``."""
        if not self.closed:
            self.closed = True
            self.close_code = code

    async def send(self, payload: dict) -> None:
        await self.ws.send_text(json.dumps(payload))

    async def run_writer(self) -> None:
        while not self.closed:
            payload = await self.queue.get()
            if self.closed:
                break
            try:
                await self.send(payload)
            except Exception as e:
                logger.debug("Send to connection %s failed: %s", self.id, e)
                self.drop(status.WS_1011_INTERNAL_ERROR)

        if self.close_code is not None:
            await self._close_socket()

    async def _close_socket(self) -> None:
        # ends the receive loop on the server side so the connection is unregistered
        try:
            await self.ws.close(code=self.close_code)
        except (RuntimeError, OSError, WebSocketDisconnect) as e:
            logger.debug("Socket for connection %s already gone: %s", self.id, e)


class DeliveryBus:
    def __init__(self):
        self.rooms: Dict[str, Dict[int, Connection]] = defaultdict(dict)
        self.connections: Dict[int, Connection] = {}

    def register(self, conn: Connection) -> None:
        self.connections[conn.id] = conn

    def unregister(self, conn: Connection) -> None:
        conn.closed = True
        for room in list(conn.rooms):
            self.leave(conn, room)
        self.connections.pop(conn.id, None)

    def join(self, conn: Connection, conversation_id: str) -> None:
        self.rooms[conversation_id][conn.id] = conn
        conn.rooms.add(conversation_id)

    def leave(self, conn: Connection, conversation_id: str) -> None:
        members = self.rooms.get(conversation_id)
        if members is not None:
            members.pop(conn.id, None)
            if not members:
                del self.rooms[conversation_id]
        conn.rooms.discard(conversation_id)

    def members(self, conversation_id: str):
        return list(self.rooms.get(conversation_id, {}).values())

    def is_viewing(self, conversation_id: str, user_id: str) -> bool:
        return any(c.user_id == user_id and not c.closed for c in self.members(conversation_id))

    def publish(self, conversation_id: str, event: str, data: dict,
                exclude: Optional[Connection] = None) -> int:
        """Enqueue an event for every socket in the room. Returns how many took it."""
        payload = {"type": event, "conversation_id": conversation_id, **data}
        delivered = 0
        for conn in self.members(conversation_id):
            if conn is exclude:
                continue
            if conn.enqueue(payload):
                delivered += 1
            else:
                self.unregister(conn)
        return delivered
