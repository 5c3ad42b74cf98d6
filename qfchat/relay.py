# /qfchat/relay.py
# Realtime relay: binds WebSocket connections to chat rooms and fans out messages.
#
# Frames are JSON objects {"event": name, "data": payload} in both directions.
#   join-chat     chatId (bare or {"chatId": ...})          -> subscribe to the room
#   send-message  {chatId, senderId, senderName, content}  -> new-message to the room
#   create-dm     {userId, contactId}                      -> dm-created to requester
# A bad frame only produces an "error" event for the connection that sent it.

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Set
from uuid import uuid4

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder
from pydantic import ValidationError

from qfchat.errors import INTERNAL_ERROR_MESSAGE, InternalError, InvalidEventError, QfChatError
from qfchat.models import Chat, CreateDMEvent, JoinChatEvent, Message, SendMessageEvent
from qfchat.store import ChatState
from qfchat.utils import logger


class Connection:
    """One live client connection with an opaque id."""

    def __init__(self, websocket: Optional[WebSocket] = None):
        self.id = str(uuid4())
        self.websocket = websocket
        self.rooms: Set[str] = set()

    async def send_json(self, frame: Dict[str, Any]) -> None:
        await self.websocket.send_json(frame)

    async def send(self, event: str, data: Any) -> None:
        await self.send_json({"event": event, "data": jsonable_encoder(data)})

    def __repr__(self) -> str:
        return f"<Connection {self.id}>"


class Relay:
    def __init__(self):
        self.connections: Dict[str, Connection] = {}
        self.rooms: Dict[str, Set[Connection]] = {}
        self._room_locks: Dict[str, asyncio.Lock] = {}
        self._room_lock_users: Dict[str, int] = {}
        self._handlers = {
            "join-chat": self.on_join_chat,
            "send-message": self.on_send_message,
            "create-dm": self.on_create_dm,
        }

    # ---------- lifecycle ----------
    async def connect(self, websocket: WebSocket) -> Connection:
        await websocket.accept()
        return self.register(Connection(websocket))

    def register(self, conn: Connection) -> Connection:
        self.connections[conn.id] = conn
        logger.info(f"User connected: {conn.id}")
        return conn

    def disconnect(self, conn: Connection) -> None:
        self.leave_all(conn)
        if self.connections.pop(conn.id, None) is not None:
            logger.info(f"User disconnected: {conn.id}")

    # ---------- rooms ----------
    def join(self, conn: Connection, chat_id: str) -> None:
        self.rooms.setdefault(chat_id, set()).add(conn)
        conn.rooms.add(chat_id)
        logger.debug(f"{conn.id} joined room {chat_id}")

    def leave(self, conn: Connection, chat_id: str) -> None:
        members = self.rooms.get(chat_id)
        if members is not None:
            members.discard(conn)
            if not members:
                del self.rooms[chat_id]
        conn.rooms.discard(chat_id)

    def leave_all(self, conn: Connection) -> None:
        for chat_id in list(conn.rooms):
            self.leave(conn, chat_id)

    def members(self, chat_id: str) -> Set[Connection]:
        return set(self.rooms.get(chat_id, ()))

    @asynccontextmanager
    async def room_lock(self, chat_id: str):
        """
        Serialize work on one room. The lock only lives while some coroutine
        holds or awaits it.
        """
        lock = self._room_locks.get(chat_id)
        if lock is None:
            lock = self._room_locks[chat_id] = asyncio.Lock()
        self._room_lock_users[chat_id] = self._room_lock_users.get(chat_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._room_lock_users[chat_id] -= 1
            if not self._room_lock_users[chat_id]:
                del self._room_lock_users[chat_id]
                del self._room_locks[chat_id]

    async def broadcast(self, chat_id: str, event: str, data: Any) -> int:
        """
        Send an event to every connection in the room.
        Peers that fail to receive are dropped; returns the delivered count.
        """
        delivered = 0
        dead = []
        for peer in self.members(chat_id):
            try:
                await peer.send(event, data)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping {peer.id} from rooms after failed send: {e}")
                dead.append(peer)
        for peer in dead:
            self.leave_all(peer)
        return delivered

    # ---------- events ----------
    async def on_join_chat(self, conn: Connection, data: Any, state: ChatState) -> None:
        if not isinstance(data, dict):
            data = {"chatId": data}
        event = JoinChatEvent.model_validate(data)
        self.join(conn, event.chatId)

    async def on_send_message(self, conn: Connection, data: Any, state: ChatState) -> Message:
        event = SendMessageEvent.model_validate(data)
        # Append and fan-out together so every member sees append order.
        async with self.room_lock(event.chatId):
            msg = state.messages.append(event.chatId, event.senderId, event.senderName, event.content)
            await self.broadcast(event.chatId, "new-message", msg)
        return msg

    async def on_create_dm(self, conn: Connection, data: Any, state: ChatState) -> Chat:
        event = CreateDMEvent.model_validate(data)
        chat = state.chats.find_or_create_dm(event.userId, event.contactId)
        await conn.send("dm-created", chat)
        return chat

    async def handle_frame(self, conn: Connection, raw: Optional[str], state: ChatState) -> None:
        """
        Decode one inbound frame and run its handler.
        Binary frames arrive as None and are rejected like any other non-JSON frame.
        """
        try:
            if raw is None:
                raise InvalidEventError("Frame is not valid JSON")
            try:
                frame = json.loads(raw)
            except ValueError:
                raise InvalidEventError("Frame is not valid JSON")
            if not isinstance(frame, dict):
                raise InvalidEventError("Frame must be an object")

            name = frame.get("event")
            handler = self._handlers.get(name)
            if handler is None:
                raise InvalidEventError(f"Unknown event: {name}")
            await handler(conn, frame.get("data"), state)
        except ValidationError as e:
            logger.info(f"Invalid payload from {conn.id}: {e.error_count()} error(s)")
            await self.send_error(conn, InvalidEventError.message)
        except InternalError as e:
            logger.error(f"Internal error handling frame from {conn.id}: {e!r}")
            await self.send_error(conn, INTERNAL_ERROR_MESSAGE)
        except QfChatError as e:
            logger.info(f"Rejected frame from {conn.id}: {e.message}")
            await self.send_error(conn, e.message)
        except Exception:
            logger.exception(f"Unexpected error handling frame from {conn.id}")
            await self.send_error(conn, INTERNAL_ERROR_MESSAGE)

    async def send_error(self, conn: Connection, message: str) -> None:
        await conn.send("error", {"success": False, "message": message})


_relay: Optional[Relay] = None


def get_relay() -> Relay:
    """FastAPI dependency returning the process-wide relay."""
    global _relay
    if _relay is None:
        _relay = Relay()
    return _relay
