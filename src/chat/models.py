from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from enum import Enum
from bson import ObjectId
from bson.errors import InvalidId

from .errors import NotFound


class MessageType(str, Enum):
    text = "text"
    image = "image"
    video = "video"
    pdf = "pdf"
    link = "link"
    file = "file"


# message types whose payload lives in the attachment
ATTACHMENT_TYPES = {MessageType.image, MessageType.video, MessageType.pdf, MessageType.file}


class Attachment(BaseModel):
    url: str
    file_id: Optional[str] = None
    filename: Optional[str] = None
    size: Optional[int] = None
    mime: Optional[str] = None


class MessageIn(BaseModel):
    content: Optional[str] = ""
    type: MessageType = MessageType.text
    attachment: Optional[Attachment] = None


class SenderSummary(BaseModel):
    id: str
    name: str
    avatar: Optional[str] = None


class RoomEvent(BaseModel):
    """Client -> server realtime frame"""
    type: str
    conversation_id: Optional[str] = None
    sender_name: Optional[str] = Field(None, alias="name")

    model_config = ConfigDict(populate_by_name=True)


def utcnow() -> datetime:
    # naive UTC, as stored and returned by pymongo
    return datetime.now(timezone.utc).replace(tzinfo=None)


def iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat() + "Z"


def to_object_id(value: str, what: str = "resource") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFound(f"{what} not found")


def oid_to_id(doc):
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc["_id"])
        del doc["_id"]
    return doc


def unknown_sender(user_id: str) -> Dict[str, Any]:
    return SenderSummary(id=user_id, name="Unknown user").model_dump()


def serialize_message(doc: dict, profiles: Dict[str, dict]) -> dict:
    """Shape a stored message for clients, resolving the sender profile."""
    d = oid_to_id(doc)
    sender_id = d.pop("sender_id")
    d["sender"] = profiles.get(sender_id) or unknown_sender(sender_id)
    d["read_by"] = list(d.get("read_by") or [])
    d["is_read"] = bool(d.get("is_read"))
    d["read_at"] = iso(d.get("read_at"))
    d["created_at"] = iso(d.get("created_at"))
    return d


def serialize_conversation(doc: dict, profiles: Dict[str, dict] = None,
                           unread_count: Optional[int] = None,
                           listings: Dict[str, dict] = None) -> dict:
    profiles = profiles or {}
    listings = listings or {}
    d = oid_to_id(doc)
    d.pop("participant_key", None)
    d.pop("message_seq", None)
    d.pop("last_message_seq", None)
    d.pop("unread", None)
    d["participants"] = [profiles.get(p) or unknown_sender(p) for p in d.get("participants", [])]
    for key in ("last_message_at", "created_at", "updated_at"):
        d[key] = iso(d.get(key))
    d["listing"] = listings.get(d.get("listing_id"))
    if unread_count is not None:
        d["unread_count"] = unread_count
    return d


class StoredMessage(BaseModel):
    """Message as returned by the store: the wire shape, typed."""
    id: str
    conversation_id: str
    seq: int
    sender: SenderSummary
    content: str
    type: MessageType
    attachment: Optional[Attachment] = None
    read_by: List[str] = []
    is_read: bool = False
    read_at: Optional[str] = None
    created_at: str
