from typing import Dict, Iterable, Optional
import logging

from bson import ObjectId
from bson.errors import InvalidId

from .errors import NotFound
from .models import to_object_id, SenderSummary

logger = logging.getLogger(__name__)


class Directory:
    """Read-only view over the listings and users owned by the marketplace."""

    def __init__(self, properties_col, users_col):
        self.properties_col = properties_col
        self.users_col = users_col

    async def get_listing_owner(self, listing_id: str) -> str:
        listing = await self.properties_col.find_one(
            {"_id": to_object_id(listing_id, "listing")}, {"owner": 1}
        )
        if not listing or not listing.get("owner"):
            raise NotFound("listing not found")
        return str(listing["owner"])

    async def get_listing_summaries(self, listing_ids: Iterable[str]) -> Dict[str, dict]:
        """Resolve listing ids to {id, title, images} for conversation headers."""
        oids = {}
        for listing_id in {i for i in listing_ids if i}:
            try:
                oids[ObjectId(listing_id)] = listing_id
            except InvalidId:
                logger.debug("Skipping malformed listing id %r", listing_id)
        if not oids:
            return {}
        summaries = {}
        cursor = self.properties_col.find({"_id": {"$in": list(oids)}}, {"title": 1, "images": 1})
        async for doc in cursor:
            listing_id = oids[doc["_id"]]
            summaries[listing_id] = {
                "id": listing_id,
                "title": doc.get("title") or "",
                "images": list(doc.get("images") or []),
            }
        return summaries

    async def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, dict]:
        """Resolve user ids to public profile summaries (name, avatar)."""
        ids = list({u for u in user_ids if u})
        if not ids:
            return {}
        profiles = {}
        cursor = self.users_col.find({"_id": {"$in": ids}}, {"name": 1, "profile_image": 1})
        async for doc in cursor:
            uid = str(doc["_id"])
            profiles[uid] = SenderSummary(
                id=uid,
                name=doc.get("name") or "Unknown user",
                avatar=doc.get("profile_image"),
            ).model_dump()
        missing = set(ids) - set(profiles)
        if missing:
            logger.debug("No profile for users %s", sorted(missing))
        return profiles

    async def get_profile(self, user_id: str) -> Optional[dict]:
        return (await self.get_profiles([user_id])).get(user_id)
