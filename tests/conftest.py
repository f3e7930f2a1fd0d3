from datetime import datetime, timedelta
from typing import Dict, List

import pytest
import pytest_asyncio
from bson import ObjectId
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from src.chat import rate_limit
from src.chat.attachments import StoredBlob
from src.chat.bus import DeliveryBus
from src.chat.deps import get_identity_provider, get_service
from src.chat.directory import Directory
from src.chat.errors import NotFound, Unauthorized
from src.chat.service import ChatService
from src.firebase.firebase_service import Identity
from src.main import app

BUYER = "alice"
OWNER = "bob"
STRANGER = "carol"


class FakeIdentityProvider:
    """Accepts the user id itself as the bearer token."""

    def __init__(self, users):
        self.users = set(users)

    def verify_token(self, token):
        if token not in self.users:
            raise Unauthorized("invalid token, please login again", reason="invalid-token")
        return Identity(user_id=token)


class FakeGridOut:
    def __init__(self, file_id, blob):
        self._id = file_id
        self.filename = blob["filename"]
        self.metadata = {"mime": blob["mime"], "folder": blob["folder"]}
        self._chunks = [blob["data"]]

    async def readchunk(self):
        return self._chunks.pop(0) if self._chunks else b""


class FakeBlobStore:
    def __init__(self):
        self.blobs: Dict[str, dict] = {}
        self.deleted: List[str] = []
        self.fail = False

    async def upload(self, data, filename, mime, folder, metadata=None):
        if self.fail:
            raise ConnectionError("blob store unavailable")
        file_id = str(ObjectId())
        self.blobs[file_id] = {"data": data, "filename": filename, "mime": mime, "folder": folder}
        return StoredBlob(url=f"https://cdn.example.com/{folder}/{file_id}", file_id=file_id)

    async def delete(self, file_id):
        self.deleted.append(file_id)
        self.blobs.pop(file_id, None)

    async def open(self, file_id):
        if file_id not in self.blobs:
            raise NotFound("file not found")
        return FakeGridOut(file_id, self.blobs[file_id])


@pytest.fixture(autouse=True)
def fake_redis():
    original = rate_limit.redis_client
    client = FakeRedis(server=FakeServer(), decode_responses=True)
    rate_limit.set_redis_client(client)
    try:
        yield client
    finally:
        rate_limit.set_redis_client(original)


@pytest.fixture
def clock(monkeypatch):
    """Strictly increasing timestamps for the store and registry."""
    current = [datetime(2024, 1, 1)]

    def tick():
        current[0] += timedelta(seconds=1)
        return current[0]

    monkeypatch.setattr("src.chat.store.utcnow", tick)
    monkeypatch.setattr("src.chat.registry.utcnow", tick)
    return current


@pytest.fixture
def mongo():
    return AsyncMongoMockClient()["chat_test"]


async def seed(mongo) -> str:
    """Users alice, bob and carol plus one listing owned by bob."""
    await mongo["users"].insert_many([
        {"_id": BUYER, "name": "Alice", "profile_image": "https://img.example.com/alice.png"},
        {"_id": OWNER, "name": "Bob", "profile_image": None},
        {"_id": STRANGER, "name": "Carol"},
    ])
    res = await mongo["properties"].insert_one({
        "title": "Two bed flat", "owner": OWNER, "images": ["https://img.example.com/flat-1.jpg"],
    })
    return str(res.inserted_id)


@pytest_asyncio.fixture
async def listing_id(mongo):
    return await seed(mongo)


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def service(mongo, blob_store):
    return ChatService(
        mongo["conversations"],
        mongo["messages"],
        Directory(mongo["properties"], mongo["users"]),
        DeliveryBus(),
        blob_store,
    )


@pytest.fixture
def overrides(service):
    app.dependency_overrides[get_service] = lambda: service
    app.dependency_overrides[get_identity_provider] = lambda: FakeIdentityProvider([BUYER, OWNER, STRANGER])
    try:
        yield
    finally:
        app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def api_client(overrides):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


def auth(user_id: str) -> dict:
    return {"Authorization": f"Bearer {user_id}"}
