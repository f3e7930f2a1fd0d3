"""Send flow and per-conversation serialization.

For one conversation, "append, update unread state, enqueue broadcast" runs
under a single asyncio lock so sockets see messages in commit order. Different
conversations never wait on each other.
"""
from typing import List, Optional, Tuple
import asyncio
import logging
import weakref

from .attachments import prepare, upload
from .bus import DeliveryBus, MESSAGE_APPENDED
from .directory import Directory
from .errors import ChatError
from .models import Attachment, MessageType, serialize_conversation
from .registry import ConversationRegistry
from .store import MessageStore, validate_message
from .unread import UnreadTracker
from . import rate_limit

logger = logging.getLogger(__name__)


class ChatService:
    def __init__(self, conversations_col, messages_col, directory: Directory, bus: DeliveryBus, blob_store):
        self.directory = directory
        self.registry = ConversationRegistry(conversations_col, directory)
        self.store = MessageStore(conversations_col, messages_col, directory)
        self.unread = UnreadTracker(conversations_col, self.store)
        self.bus = bus
        self.blob_store = blob_store
        # an entry lives only while some coroutine holds or awaits the lock
        self._locks = weakref.WeakValueDictionary()

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    async def _describe(self, conversations: List[dict], participant_id: str,
                        unread_count: Optional[int] = None) -> List[dict]:
        """Serialize conversations with participant profiles and listing summaries resolved."""
        ids = {p for c in conversations for p in c.get("participants", [])}
        profiles = await self.directory.get_profiles(ids)
        listings = await self.directory.get_listing_summaries(c.get("listing_id") for c in conversations)
        return [
            serialize_conversation(
                c, profiles,
                self.unread.count(c, participant_id) if unread_count is None else unread_count,
                listings,
            )
            for c in conversations
        ]

    async def open_conversation(self, listing_id: str, requester_id: str) -> Tuple[dict, bool]:
        doc, created = await self.registry.get_or_create(listing_id, requester_id)
        return (await self._describe([doc], requester_id))[0], created

    async def list_conversations(self, participant_id: str) -> List[dict]:
        docs = await self.registry.list_for_participant(participant_id)
        return await self._describe(docs, participant_id)

    async def fetch_conversation(self, conversation_id: str, requester_id: str) -> Tuple[dict, List[dict]]:
        # same lock as send: no message may land between marking read and clearing the counter
        async with self._lock_for(conversation_id):
            messages = await self.store.list(conversation_id, requester_id)
            await self.unread.clear(conversation_id, requester_id)
        doc = await self.registry.get(conversation_id)
        return (await self._describe([doc], requester_id, unread_count=0))[0], messages

    async def delete_conversation(self, conversation_id: str, requester_id: str) -> None:
        await self.registry.delete(conversation_id, requester_id)

    async def send_message(self, conversation_id: str, sender_id: str, content: Optional[str],
                           type_=MessageType.text, attachment: Optional[Attachment] = None) -> dict:
        await self.registry.require_participant(conversation_id, sender_id)
        await rate_limit.throttle_send(conversation_id, sender_id)

        async with self._lock_for(conversation_id):
            message = await self.store.append(conversation_id, sender_id, content, type_, attachment)
            conv = await self.registry.get(conversation_id)
            for recipient_id in conv["participants"]:
                if recipient_id == sender_id:
                    continue
                viewing = self.bus.is_viewing(conversation_id, recipient_id)
                await self.unread.on_message_delivered(conversation_id, message, recipient_id, viewing)
            self.bus.publish(conversation_id, MESSAGE_APPENDED, {"message": message})
        return message

    async def upload_attachment(self, conversation_id: str, sender_id: str, filename: str,
                                mime: str, data: bytes, kind: Optional[str] = None) -> Tuple[Attachment, str]:
        """Validate, compress and store a file. Returns the descriptor and its message type."""
        await self.registry.require_participant(conversation_id, sender_id)
        processed = await prepare(filename, mime, data, kind)
        attachment = await upload(processed, conversation_id, sender_id, self.blob_store)
        return attachment, processed.kind

    async def send_with_attachment(self, conversation_id: str, sender_id: str, content: Optional[str],
                                   filename: str, mime: str, data: bytes, kind: Optional[str] = None) -> dict:
        """Upload then append in one call; an append failure removes the stored blob."""
        # reject bad text before spending an upload on it
        validate_message(content, MessageType.file, Attachment(url="/pending"))
        attachment, kind = await self.upload_attachment(conversation_id, sender_id, filename, mime, data, kind)
        try:
            return await self.send_message(conversation_id, sender_id, content, MessageType(kind), attachment)
        except ChatError:
            logger.warning("Send failed after upload, removing blob %s", attachment.file_id)
            await self.blob_store.delete(attachment.file_id)
            raise
