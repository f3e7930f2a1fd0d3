"""Python client for the chat API and its realtime channel.

``ChatClient`` wraps the REST surface; ``RealtimeClient`` keeps one WebSocket
open, reconnecting with bounded exponential backoff and re-joining the rooms
it was in, since the server forgets room membership on disconnect.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional
import asyncio
import itertools
import json
import logging

import httpx
import websockets
from websockets.exceptions import WebSocketException

from .attachments import prepare
from .bus import MESSAGE_APPENDED, TYPING_START, TYPING_STOP
from .errors import (
    ChatError, NotFound, Forbidden, InvalidOperation, ValidationFailed, UploadFailed, RateLimited, Unauthorized,
)
from .models import Attachment, MessageType, StoredMessage
from .presence import TypingLeases

logger = logging.getLogger(__name__)

_ERRORS_BY_STATUS = {
    400: InvalidOperation,
    401: Unauthorized,
    403: Forbidden,
    404: NotFound,
    422: ValidationFailed,
    429: RateLimited,
    502: UploadFailed,
}

_local_ids = itertools.count(1)


class OutgoingState(str, Enum):
    pending = "pending"
    synced = "synced"
    error = "error"


@dataclass
class OutgoingMessage:
    conversation_id: str
    content: str
    type: MessageType = MessageType.text
    attachment: Optional[Attachment] = None
    local_id: int = field(default_factory=lambda: next(_local_ids))
    state: OutgoingState = OutgoingState.pending
    message: Optional[StoredMessage] = None
    error: Optional[ChatError] = None


def raise_for_error(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if response.is_success:
        return body
    error_cls = _ERRORS_BY_STATUS.get(response.status_code, ChatError)
    raise error_cls(body.get("detail") or response.text, reason=body.get("reason"))


class ChatClient:
    def __init__(self, base_url: str, token: str, http: httpx.AsyncClient = None):
        self.http = http or httpx.AsyncClient(base_url=base_url)
        self.headers = {"Authorization": f"Bearer {token}"}

    async def aclose(self):
        await self.http.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> dict:
        response = await self.http.request(method, url, headers=self.headers, **kwargs)
        return raise_for_error(response)

    async def open_conversation(self, listing_id: str) -> dict:
        body = await self._request("POST", f"/api/conversations/for-listing/{listing_id}")
        return body["conversation"]

    async def list_conversations(self) -> List[dict]:
        return (await self._request("GET", "/api/conversations"))["conversations"]

    async def fetch_messages(self, conversation_id: str) -> List[StoredMessage]:
        body = await self._request("GET", f"/api/conversations/{conversation_id}")
        return [StoredMessage.model_validate(m) for m in body["messages"]]

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._request("DELETE", f"/api/conversations/{conversation_id}")

    async def upload_attachment(self, conversation_id: str, filename: str, mime: str, data: bytes,
                                kind: Optional[str] = None) -> Attachment:
        """Vet and compress locally, then upload. Rejections never reach the network."""
        processed = await prepare(filename, mime, data, kind)
        body = await self._request(
            "POST",
            f"/api/conversations/{conversation_id}/attachments",
            files={"file": (processed.filename, processed.data, processed.mime)},
            data={"kind": processed.kind},
        )
        return Attachment.model_validate(body["attachment"])

    async def send(self, outgoing: OutgoingMessage) -> OutgoingMessage:
        """Send and settle the message state. Errors are recorded, not raised."""
        payload = {"content": outgoing.content, "type": outgoing.type.value}
        if outgoing.attachment is not None:
            payload["attachment"] = outgoing.attachment.model_dump()
        outgoing.state = OutgoingState.pending
        try:
            body = await self._request("POST", f"/api/conversations/{outgoing.conversation_id}/messages", json=payload)
        except ChatError as e:
            outgoing.state = OutgoingState.error
            outgoing.error = e
            return outgoing
        outgoing.message = StoredMessage.model_validate(body["message"])
        outgoing.state = OutgoingState.synced
        outgoing.error = None
        return outgoing


@dataclass
class InboxEntry:
    conversation_id: str
    last_message: Optional[dict] = None
    last_message_at: Optional[str] = None
    unread_count: int = 0


class RealtimeClient:
    def __init__(self, url: str, token: str, user_id: str,
                 on_message: Callable[[StoredMessage], Awaitable[None]] = None,
                 max_attempts: int = 5, base_delay: float = 1.0, max_delay: float = 30.0,
                 connect=None, sleep=asyncio.sleep, typing: TypingLeases = None,
                 api: Optional[ChatClient] = None):
        self.url = f"{url}?token={token}"
        self.user_id = user_id
        self.on_message = on_message
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.connect = connect or websockets.connect
        self.sleep = sleep
        self.typing = typing or TypingLeases()
        self.rooms = set()
        self.active_conversation: Optional[str] = None
        self.inbox: Dict[str, InboxEntry] = {}
        self.last_seq: Dict[str, int] = {}
        self.api = api
        self.ws = None
        self._stopped = False

    def load_inbox(self, conversations: List[dict]) -> None:
        for c in conversations:
            self.inbox[c["id"]] = InboxEntry(
                conversation_id=c["id"],
                last_message=c.get("last_message"),
                last_message_at=c.get("last_message_at"),
                unread_count=c.get("unread_count", 0),
            )

    def backoff(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    async def _send(self, payload: dict) -> None:
        if self.ws is None:
            return
        try:
            await self.ws.send(json.dumps(payload))
        except WebSocketException as e:
            logger.debug("Dropped %s while disconnected: %s", payload.get("type"), e)

    async def join(self, conversation_id: str) -> None:
        self.rooms.add(conversation_id)
        self.active_conversation = conversation_id
        entry = self.inbox.get(conversation_id)
        if entry:
            entry.unread_count = 0
        await self._send({"type": "join-room", "conversation_id": conversation_id})

    async def leave(self, conversation_id: str) -> None:
        self.rooms.discard(conversation_id)
        if self.active_conversation == conversation_id:
            self.active_conversation = None
        await self._send({"type": "leave-room", "conversation_id": conversation_id})

    async def start_typing(self, conversation_id: str, name: str) -> None:
        await self._send({"type": "typing", "conversation_id": conversation_id, "sender_name": name})

    async def stop_typing(self, conversation_id: str) -> None:
        await self._send({"type": "stop-typing", "conversation_id": conversation_id})

    def typing_users(self, conversation_id: str) -> List[str]:
        return [s.sender_name for s in self.typing.active(conversation_id)]

    def handle(self, event: dict) -> Optional[StoredMessage]:
        """Apply one server event to local state. Returns a new message from someone else, if any."""
        kind = event.get("type")
        cid = event.get("conversation_id")

        if kind == MESSAGE_APPENDED:
            message = StoredMessage.model_validate(event["message"])
            self.last_seq[cid] = max(self.last_seq.get(cid, 0), message.seq)
            # our own sends come back over HTTP already
            if message.sender.id == self.user_id:
                return None
            entry = self.inbox.setdefault(cid, InboxEntry(conversation_id=cid))
            entry.last_message = {"content": message.content, "type": message.type.value,
                                  "sender_id": message.sender.id}
            entry.last_message_at = message.created_at
            if cid != self.active_conversation:
                entry.unread_count += 1
            self.typing.release(cid, message.sender.id)
            return message

        if kind == TYPING_START and event.get("sender_id") != self.user_id:
            self.typing.renew(cid, event["sender_id"], event.get("sender_name", ""))
        elif kind == TYPING_STOP:
            self.typing.release(cid, event.get("sender_id"))
        elif kind == "error":
            logger.warning("Server rejected event: %s", event.get("reason"))
        return None

    async def resync(self) -> None:
        """Catch up on what was committed while disconnected; there is no offline queue."""
        if self.api is None:
            return
        try:
            for cid in sorted(self.rooms):
                for message in await self.api.fetch_messages(cid):
                    if message.seq <= self.last_seq.get(cid, 0):
                        continue
                    self.last_seq[cid] = message.seq
                    if message.sender.id != self.user_id and self.on_message is not None:
                        await self.on_message(message)
            self.load_inbox(await self.api.list_conversations())
        except (ChatError, httpx.HTTPError) as e:
            logger.warning("Catch-up after reconnect failed: %s", e)

    async def _session(self, ws, reconnected: bool = False) -> None:
        self.ws = ws
        for cid in sorted(self.rooms):
            await self._send({"type": "join-room", "conversation_id": cid})
        if reconnected:
            await self.resync()
        async for raw in ws:
            try:
                message = self.handle(json.loads(raw))
            except ValueError as e:
                logger.warning("Ignoring malformed realtime frame: %s", e)
                continue
            if message is not None and self.on_message is not None:
                await self.on_message(message)

    async def close(self) -> None:
        self._stopped = True
        if self.ws is not None:
            await self.ws.close()

    async def run(self) -> None:
        """Stay connected until ``close`` is called or retries run out."""
        self._stopped = False
        attempt = 0
        connected_before = False
        while True:
            try:
                async with self.connect(self.url) as ws:
                    attempt = 0
                    logger.info("Realtime connection established")
                    reconnected, connected_before = connected_before, True
                    await self._session(ws, reconnected)
                reason = "closed by server"
            except (OSError, WebSocketException) as e:
                reason = e
            finally:
                self.ws = None
            if self._stopped:
                return
            attempt += 1
            if attempt > self.max_attempts:
                logger.error("Giving up on realtime connection after %d attempts", self.max_attempts)
                raise ConnectionError(f"realtime connection lost: {reason}")
            delay = self.backoff(attempt)
            logger.info("Realtime connection lost (%s), retrying in %.1fs", reason, delay)
            await self.sleep(delay)
