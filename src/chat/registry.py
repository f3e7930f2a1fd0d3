from typing import List, Tuple
import logging

from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from .directory import Directory
from .errors import NotFound, Forbidden, InvalidOperation
from .models import utcnow, to_object_id

logger = logging.getLogger(__name__)


def participant_key(a: str, b: str) -> str:
    """Order-independent key for a participant pair."""
    return "|".join(sorted((a, b)))


class ConversationRegistry:
    """Maps (listing, participant pair) to exactly one active conversation."""

    def __init__(self, conversations_col, directory: Directory):
        self.conversations_col = conversations_col
        self.directory = directory

    async def get_or_create(self, listing_id: str, requester_id: str) -> Tuple[dict, bool]:
        owner_id = await self.directory.get_listing_owner(listing_id)
        if owner_id == requester_id:
            raise InvalidOperation("cannot open a conversation with yourself", reason="self-conversation")

        key = {"listing_id": listing_id, "participant_key": participant_key(requester_id, owner_id), "is_active": True}
        now = utcnow()
        try:
            res = await self.conversations_col.update_one(
                key,
                {"$setOnInsert": {
                    "participants": [requester_id, owner_id],
                    "last_message": None,
                    "last_message_at": now,
                    "last_message_seq": 0,
                    "message_seq": 0,
                    "unread": {requester_id: 0, owner_id: 0},
                    "created_at": now,
                    "updated_at": now,
                }},
                upsert=True,
            )
            created = res.upserted_id is not None
        except DuplicateKeyError:
            # a concurrent call won the insert; fall through to the lookup
            created = False

        doc = await self.conversations_col.find_one(key)
        if doc is None:
            raise NotFound("conversation not found")
        if created:
            logger.info("Created conversation %s for listing %s", doc["_id"], listing_id)
        return doc, created

    async def get(self, conversation_id: str) -> dict:
        doc = await self.conversations_col.find_one(
            {"_id": to_object_id(conversation_id, "conversation"), "is_active": True}
        )
        if doc is None:
            raise NotFound("conversation not found")
        return doc

    async def require_participant(self, conversation_id: str, user_id: str) -> dict:
        doc = await self.get(conversation_id)
        if user_id not in doc.get("participants", []):
            raise Forbidden("not a participant of this conversation")
        return doc

    async def list_for_participant(self, participant_id: str) -> List[dict]:
        cursor = self.conversations_col.find(
            {"participants": participant_id, "is_active": True}
        ).sort("last_message_at", DESCENDING)
        return [doc async for doc in cursor]

    async def delete(self, conversation_id: str, requester_id: str) -> None:
        doc = await self.require_participant(conversation_id, requester_id)
        await self.conversations_col.update_one(
            {"_id": doc["_id"]},
            {"$set": {"is_active": False, "updated_at": utcnow()}},
        )
        logger.info("Conversation %s deleted by %s", conversation_id, requester_id)
