"""
hotspot_store.py — Local hotspot store backed by MongoDB (Motor).

The discovery core only talks to the store through the HotspotStore
protocol, so tests and alternative backends can substitute their own
implementation.

Queries use plain latitude/longitude range filters so the compound index
serves the bounding-box pre-filter; the GeoJSON `location` field is kept
for $nearSphere-style queries elsewhere in the app.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional, Protocol, Sequence

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from discovery.core.config import settings
from discovery.models.geo import BoundingBox, Coordinate
from discovery.models.hotspot import DEFAULT_CATEGORY, Hotspot

logger = logging.getLogger(__name__)


class HotspotStore(Protocol):
    """What the discovery core needs from the local data store."""

    async def query_by_bounding_box(
        self,
        box: BoundingBox,
        type_filter: Optional[Sequence[str]] = None,
        limit: int = 180,
    ) -> list[Hotspot]: ...

    async def upsert_by_external_id(self, hotspot: Hotspot) -> bool: ...

    async def query_active_user_counts(
        self, hotspot_ids: Sequence[str], since: datetime
    ) -> dict[str, int]: ...


class MongoHotspotStore:
    """HotspotStore over the `hotspots` and `active_hotspot_users` collections."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        hotspots_collection: str | None = None,
        active_users_collection: str | None = None,
    ) -> None:
        self.db = db
        self.hotspots = db[hotspots_collection or settings.hotspots_collection]
        self.active_users = db[active_users_collection or settings.active_users_collection]

    async def ensure_indexes(self) -> None:
        """Create the indexes the discovery queries rely on. Safe to re-run."""
        await self.hotspots.create_index(
            [("external_id", ASCENDING)], unique=True, sparse=True, name="external_id_unique"
        )
        await self.hotspots.create_index(
            [("latitude", ASCENDING), ("longitude", ASCENDING)], name="lat_lon"
        )
        await self.active_users.create_index(
            [("hotspot_id", ASCENDING), ("last_seen", ASCENDING)], name="hotspot_last_seen"
        )

    async def query_by_bounding_box(
        self,
        box: BoundingBox,
        type_filter: Optional[Sequence[str]] = None,
        limit: int = 180,
    ) -> list[Hotspot]:
        query: dict[str, Any] = {
            "latitude": {"$gte": box.min_lat, "$lte": box.max_lat},
            "longitude": {"$gte": box.min_lon, "$lte": box.max_lon},
        }
        if type_filter:
            query["category"] = {"$in": list(type_filter)}

        projection = {"name": 1, "category": 1, "latitude": 1, "longitude": 1, "address": 1, "external_id": 1}
        docs = await self.hotspots.find(query, projection).limit(limit).to_list(length=limit)

        hotspots = []
        for doc in docs:
            hotspot = _hotspot_from_doc(doc)
            if hotspot is not None:
                hotspots.append(hotspot)
        return hotspots

    async def upsert_by_external_id(self, hotspot: Hotspot) -> bool:
        """
        Insert the hotspot unless its external_id already exists.

        $setOnInsert makes the write idempotent even if two writers race:
        the unique index lets only one of them insert. Returns True when a
        new document was created.
        """
        if not hotspot.external_id:
            raise ValueError("upsert_by_external_id requires an external_id")

        result = await self.hotspots.update_one(
            {"external_id": hotspot.external_id},
            {"$setOnInsert": _doc_from_hotspot(hotspot)},
            upsert=True,
        )
        return result.upserted_id is not None

    async def query_active_user_counts(
        self, hotspot_ids: Sequence[str], since: datetime
    ) -> dict[str, int]:
        """Distinct users seen at each hotspot since `since`. Missing ids mean 0."""
        if not hotspot_ids:
            return {}

        pipeline = [
            {"$match": {"hotspot_id": {"$in": list(hotspot_ids)}, "last_seen": {"$gte": since}}},
            {"$group": {"_id": "$hotspot_id", "users": {"$addToSet": "$user_id"}}},
            {"$project": {"count": {"$size": "$users"}}},
        ]
        rows = await self.active_users.aggregate(pipeline).to_list(length=None)
        return {str(row["_id"]): int(row["count"]) for row in rows}


def _hotspot_from_doc(doc: dict[str, Any]) -> Hotspot | None:
    try:
        return Hotspot(
            id=str(doc["_id"]),
            external_id=doc.get("external_id"),
            name=doc.get("name") or "Unnamed",
            category=doc.get("category") or DEFAULT_CATEGORY,
            location=Coordinate(latitude=doc["latitude"], longitude=doc["longitude"]),
            address=doc.get("address"),
        )
    except (KeyError, TypeError, ValueError) as exc:
        # pydantic.ValidationError is a ValueError
        logger.warning("Skipping malformed hotspot document %s: %s", doc.get("_id"), exc)
        return None


def _doc_from_hotspot(hotspot: Hotspot) -> dict[str, Any]:
    return {
        "external_id": hotspot.external_id,
        "name": hotspot.name,
        "category": hotspot.category,
        "latitude": hotspot.lat,
        "longitude": hotspot.lng,
        "location": {"type": "Point", "coordinates": [hotspot.lng, hotspot.lat]},
        "address": hotspot.address,
    }
