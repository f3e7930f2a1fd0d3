"""Durable, ordered message log per conversation.

Ordering is defined by ``seq``, allocated with an atomic ``$inc`` on the
conversation document. The denormalized ``last_message`` summary only moves
forward: it is written with a ``last_message_seq < seq`` guard so that a slow
commit can never overwrite a newer one.
"""
from typing import Optional, List
from urllib.parse import urlparse
import logging

from pymongo import ASCENDING, ReturnDocument

from src.configs.settings import MAX_MESSAGE_LENGTH
from .directory import Directory
from .errors import NotFound, Forbidden, ValidationFailed
from .models import (
    Attachment, MessageType, ATTACHMENT_TYPES, utcnow, to_object_id, serialize_message,
)

logger = logging.getLogger(__name__)


def _is_resolvable_url(url: str) -> bool:
    if url.startswith("/") and not url.startswith("//"):
        return True
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def validate_message(content: Optional[str], type_, attachment: Optional[Attachment],
                     max_length: int = MAX_MESSAGE_LENGTH):
    """Check content/type/attachment rules. Returns (content, type)."""
    content = (content or "").strip()
    try:
        type_ = MessageType(type_)
    except ValueError:
        raise ValidationFailed(f"unknown message type {type_!r}", reason="invalid-type")

    if len(content) > max_length:
        raise ValidationFailed(f"message cannot exceed {max_length} characters", reason="content-too-long")
    if not content and attachment is None:
        raise ValidationFailed("message content or attachment is required", reason="empty-message")
    if attachment is not None and not (attachment.url or "").strip():
        raise ValidationFailed("attachment must carry a url", reason="invalid-attachment")
    if attachment is not None and not _is_resolvable_url(attachment.url.strip()):
        raise ValidationFailed("attachment url is not resolvable", reason="invalid-attachment")
    if type_ in ATTACHMENT_TYPES and attachment is None:
        raise ValidationFailed(f"{type_.value} messages need an attachment", reason="invalid-attachment")
    if type_ is MessageType.link and not _is_resolvable_url(content):
        raise ValidationFailed("link messages must contain a valid url", reason="invalid-link")
    return content, type_


def summary_content(content: str, attachment: Optional[Attachment]) -> str:
    if content:
        return content
    if attachment is not None and attachment.filename:
        return f"Sent {attachment.filename}"
    return "File"


class MessageStore:
    def __init__(self, conversations_col, messages_col, directory: Directory):
        self.conversations_col = conversations_col
        self.messages_col = messages_col
        self.directory = directory

    async def _active_conversation(self, conversation_id: str, user_id: str) -> dict:
        conv = await self.conversations_col.find_one(
            {"_id": to_object_id(conversation_id, "conversation"), "is_active": True}
        )
        if conv is None:
            raise NotFound("conversation not found")
        if user_id not in conv.get("participants", []):
            raise Forbidden("not a participant of this conversation")
        return conv

    async def append(self, conversation_id: str, sender_id: str, content: Optional[str],
                     type_=MessageType.text, attachment: Optional[Attachment] = None) -> dict:
        conv = await self._active_conversation(conversation_id, sender_id)
        content, type_ = validate_message(content, type_, attachment)

        # allocate the ordering key; fails if the conversation was deleted meanwhile
        conv = await self.conversations_col.find_one_and_update(
            {"_id": conv["_id"], "is_active": True},
            {"$inc": {"message_seq": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if conv is None:
            raise NotFound("conversation not found")
        seq = conv["message_seq"]
        now = utcnow()

        doc = {
            "conversation_id": conversation_id,
            "seq": seq,
            "sender_id": sender_id,
            "content": content,
            "type": type_.value,
            "attachment": attachment.model_dump() if attachment else None,
            "read_by": [],
            "is_read": False,
            "read_at": None,
            "created_at": now,
        }
        res = await self.messages_col.insert_one(doc)
        doc["_id"] = res.inserted_id

        await self._advance_summary(conv["_id"], seq, summary_content(content, attachment), type_, sender_id, now)
        logger.debug("Appended message %s (seq %s) to %s", res.inserted_id, seq, conversation_id)

        profiles = await self.directory.get_profiles([sender_id])
        return serialize_message(doc, profiles)

    async def _advance_summary(self, conv_oid, seq: int, content: str, type_: MessageType,
                               sender_id: str, at) -> bool:
        """Move last_message forward; older sequence numbers never win."""
        res = await self.conversations_col.update_one(
            {"_id": conv_oid, "last_message_seq": {"$lt": seq}},
            {"$set": {
                "last_message": {"content": content, "type": type_.value, "sender_id": sender_id},
                "last_message_at": at,
                "last_message_seq": seq,
                "updated_at": at,
            }},
        )
        return res.modified_count > 0

    async def mark_all_read(self, conversation_id: str, reader_id: str) -> int:
        res = await self.messages_col.update_many(
            {"conversation_id": conversation_id, "sender_id": {"$ne": reader_id}, "read_by": {"$ne": reader_id}},
            {"$addToSet": {"read_by": reader_id}, "$set": {"is_read": True, "read_at": utcnow()}},
        )
        return res.modified_count

    async def mark_read(self, message_id: str, reader_id: str) -> bool:
        res = await self.messages_col.update_one(
            {"_id": to_object_id(message_id, "message"), "sender_id": {"$ne": reader_id},
             "read_by": {"$ne": reader_id}},
            {"$addToSet": {"read_by": reader_id}, "$set": {"is_read": True, "read_at": utcnow()}},
        )
        return res.modified_count > 0

    async def count_unread(self, conversation_id: str, participant_id: str) -> int:
        return await self.messages_col.count_documents(
            {"conversation_id": conversation_id, "sender_id": {"$ne": participant_id},
             "read_by": {"$ne": participant_id}}
        )

    async def list(self, conversation_id: str, requester_id: str) -> List[dict]:
        """Full ordered log; marks everything not sent by the requester as read by them."""
        await self._active_conversation(conversation_id, requester_id)
        marked = await self.mark_all_read(conversation_id, requester_id)
        if marked:
            logger.debug("%s read %d messages in %s", requester_id, marked, conversation_id)

        cursor = self.messages_col.find({"conversation_id": conversation_id}).sort("seq", ASCENDING)
        docs = [d async for d in cursor]
        profiles = await self.directory.get_profiles(d["sender_id"] for d in docs)
        return [serialize_message(d, profiles) for d in docs]
