from motor.motor_asyncio import AsyncIOMotorClient
from motor.motor_asyncio import AsyncIOMotorGridFSBucket
from pymongo import ASCENDING, DESCENDING

from src.configs.settings import MONGO_URI, DB_NAME

client = AsyncIOMotorClient(MONGO_URI)
db = client[DB_NAME]
fs_bucket = AsyncIOMotorGridFSBucket(db, bucket_name="chat_files")
conversations_col = db["conversations"]
messages_col = db["messages"]
properties_col = db["properties"]
users_col = db["users"]


async def ensure_indexes(database=db):
    """Create the indexes the chat core relies on (idempotent)."""
    conversations = database["conversations"]
    messages = database["messages"]

    # one active conversation per listing and participant pair
    await conversations.create_index(
        [("listing_id", ASCENDING), ("participant_key", ASCENDING)],
        unique=True,
        partialFilterExpression={"is_active": True},
        name="uniq_active_listing_pair",
    )
    await conversations.create_index([("participants", ASCENDING), ("last_message_at", DESCENDING)])
    await messages.create_index([("conversation_id", ASCENDING), ("seq", ASCENDING)], unique=True)
    await messages.create_index([("conversation_id", ASCENDING), ("read_by", ASCENDING)])
