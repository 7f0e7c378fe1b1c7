"""
MongoDB connection management using Motor (async driver).

Architecture decision: single DatabaseClient instance shared across all
requests via a module-level singleton. FastAPI's dependency injection
(get_db) gives routes clean access without importing the singleton directly.

The connection is opened in FastAPI's lifespan (startup) and closed
on shutdown. Index creation for the hotspot collections also runs at
startup (see MongoHotspotStore.ensure_indexes).
"""

import logging
import re

import certifi
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from discovery.core.config import settings

logger = logging.getLogger(__name__)


class DatabaseClient:
    """
    Holds the Motor client and selected database.

    A class rather than bare globals so tests can replace .client and
    .db without reaching into module state.
    """

    client: AsyncIOMotorClient | None = None
    db: AsyncIOMotorDatabase | None = None


# Module-level singleton — all app code references this object
db_client = DatabaseClient()


async def connect_to_mongo() -> None:
    """
    Create the MongoDB connection and validate it with a ping.

    Fails gracefully if MongoDB is unavailable. The API still starts; the
    map stream then publishes empty updateHotspots frames and never calls
    Overpass, GET /api/v1/hotspots/nearby answers 503, and /health
    reports the database as "disconnected".
    """
    logger.info("Connecting to MongoDB at %s", _redact_uri(settings.mongo_uri))
    try:
        db_client.client = AsyncIOMotorClient(
            settings.mongo_uri,
            serverSelectionTimeoutMS=5000,
            tlsCAFile=certifi.where(),
        )
        db_client.db = db_client.client[settings.mongo_db_name]
        await db_client.client.admin.command("ping")
        logger.info("MongoDB connection established (db: %s)", settings.mongo_db_name)
    except Exception as exc:
        logger.warning(
            "MongoDB unavailable at startup: %s. "
            "Map stream will send empty marker sets; nearby queries will return 503.",
            exc,
        )
        db_client.client = None
        db_client.db = None


async def close_mongo_connection() -> None:
    """Close the MongoDB connection gracefully on app shutdown."""
    if db_client.client is not None:
        db_client.client.close()
        logger.info("MongoDB connection closed")


def get_db() -> AsyncIOMotorDatabase | None:
    """
    FastAPI dependency — inject the database into route handlers.

    Returns None when MongoDB is unavailable. The map stream falls back to
    an empty store and the REST routes answer 503 instead of 500.
    """
    return db_client.db


def _redact_uri(uri: str) -> str:
    """Strip credentials from URI before logging."""
    return re.sub(r"://[^:]+:[^@]+@", "://<redacted>@", uri)
