import logging

from .models import to_object_id, utcnow
from .store import MessageStore

logger = logging.getLogger(__name__)


class UnreadTracker:
    """Per-participant unread counters kept on the conversation document.

    Counters are a projection of the message log; ``recompute`` rebuilds one
    from the log whenever it is suspected to have drifted.
    """

    def __init__(self, conversations_col, store: MessageStore):
        self.conversations_col = conversations_col
        self.store = store

    @staticmethod
    def count(conversation: dict, participant_id: str) -> int:
        return int((conversation.get("unread") or {}).get(participant_id, 0))

    async def on_message_delivered(self, conversation_id: str, message: dict, recipient_id: str,
                                   viewing: bool) -> None:
        if viewing:
            await self.store.mark_read(message["id"], recipient_id)
            return
        await self.conversations_col.update_one(
            {"_id": to_object_id(conversation_id, "conversation")},
            {"$inc": {f"unread.{recipient_id}": 1}},
        )

    async def clear(self, conversation_id: str, participant_id: str) -> None:
        await self.conversations_col.update_one(
            {"_id": to_object_id(conversation_id, "conversation")},
            {"$set": {f"unread.{participant_id}": 0}},
        )

    async def recompute(self, conversation_id: str, participant_id: str) -> int:
        count = await self.store.count_unread(conversation_id, participant_id)
        await self.conversations_col.update_one(
            {"_id": to_object_id(conversation_id, "conversation")},
            {"$set": {f"unread.{participant_id}": count, "updated_at": utcnow()}},
        )
        logger.info("Recomputed unread for %s in %s: %d", participant_id, conversation_id, count)
        return count
