"""
pytest configuration and shared fixtures for the Hotspot Discovery tests.

Key concern: tests must not require a live MongoDB or reach the public
Overpass instance. We achieve this by:
  1. Patching connect_to_mongo / close_mongo_connection to no-ops so
     FastAPI's lifespan doesn't try to reach a real database.
  2. Setting db_client.client = None (disconnected) so health check
     correctly reports "disconnected" — a valid test-mode state.
  3. Pointing OVERPASS_URL at an unroutable host; sync tests inject an
     httpx.MockTransport instead.

Two fakes cover the store boundary:
  - InMemoryHotspotStore implements the HotspotStore protocol directly,
    for controller and sync tests.
  - FakeDB mimics the slice of Motor that MongoHotspotStore uses, for
    store and route tests.
"""

import asyncio
import os
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

# Set env vars BEFORE importing the app so Settings picks them up correctly
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("OVERPASS_URL", "http://overpass.invalid/api/interpreter")

from discovery.models.geo import Coordinate  # noqa: E402
from discovery.models.hotspot import Hotspot  # noqa: E402


@pytest.fixture(autouse=True)
async def mock_db():
    """
    Patch the MongoDB lifecycle for every test.

    - connect_to_mongo → no-op AsyncMock (startup doesn't attempt real connection)
    - close_mongo_connection → no-op AsyncMock
    - db_client.client → None  (health check reports "disconnected", which is fine)
    - db_client.db → None

    Tests that need a database override get_db with a FakeDB.
    """
    with (
        patch("discovery.core.database.connect_to_mongo", new_callable=AsyncMock),
        patch("discovery.core.database.close_mongo_connection", new_callable=AsyncMock),
    ):
        import discovery.core.database as db_module

        # Save originals so we can restore after the test
        original_client = db_module.db_client.client
        original_db = db_module.db_client.db

        db_module.db_client.client = None
        db_module.db_client.db = None

        yield

        db_module.db_client.client = original_client
        db_module.db_client.db = original_db


@pytest.fixture()
async def client(mock_db):  # noqa: ARG001 — mock_db must run first
    """
    HTTPX async test client wired to the FastAPI app.

    Usage:
        async def test_something(client):
            response = await client.get("/health")
            assert response.status_code == 200
    """
    from discovery.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# ── In-memory HotspotStore ────────────────────────────────────────────────────

class InMemoryHotspotStore:
    """HotspotStore over a plain list. Records queries and can be told to fail."""

    def __init__(self):
        self.rows: list[Hotspot] = []
        self.live_counts: dict[str, int] = {}
        self.queries = []
        self.fail_queries = False
        self.fail_counts = False
        self.fail_upserts = False
        # One-shot: the next bounding-box query waits on this event.
        self.query_gate: asyncio.Event | None = None

    def add(self, name, lat, lng, category="cafe", external_id=None) -> Hotspot:
        hotspot = Hotspot(
            id=f"h{len(self.rows) + 1}",
            external_id=external_id,
            name=name,
            category=category,
            location=Coordinate(latitude=lat, longitude=lng),
        )
        self.rows.append(hotspot)
        return hotspot

    async def query_by_bounding_box(self, box, type_filter=None, limit=180):
        self.queries.append(box)
        if self.query_gate is not None:
            gate, self.query_gate = self.query_gate, None
            await gate.wait()
        if self.fail_queries:
            raise RuntimeError("store unavailable")
        matches = [
            h for h in self.rows
            if box.contains(h.location) and (not type_filter or h.category in type_filter)
        ]
        return matches[:limit]

    async def upsert_by_external_id(self, hotspot):
        if self.fail_upserts:
            raise RuntimeError("write rejected")
        if any(h.external_id == hotspot.external_id for h in self.rows):
            return False
        self.rows.append(hotspot.model_copy(update={"id": f"h{len(self.rows) + 1}"}))
        return True

    async def query_active_user_counts(self, hotspot_ids, since):
        if self.fail_counts:
            raise RuntimeError("counts unavailable")
        return {i: self.live_counts[i] for i in hotspot_ids if i in self.live_counts}


class RecordingSink:
    """Render sink that keeps every outbound message."""

    def __init__(self):
        self.messages = []
        self.fail = False

    async def __call__(self, message):
        if self.fail:
            raise ConnectionError("surface gone")
        self.messages.append(message)

    @property
    def last(self):
        return self.messages[-1]


@pytest.fixture()
def store():
    return InMemoryHotspotStore()


@pytest.fixture()
def sink():
    return RecordingSink()


# ── Minimal Motor stand-in ────────────────────────────────────────────────────

def _matches(doc, query):
    for key, cond in query.items():
        value = doc.get(key)
        if isinstance(cond, dict):
            if value is None:
                return False
            if "$gte" in cond and not value >= cond["$gte"]:
                return False
            if "$lte" in cond and not value <= cond["$lte"]:
                return False
            if "$in" in cond and value not in cond["$in"]:
                return False
        elif value != cond:
            return False
    return True


class FakeCursor:
    def __init__(self, docs):
        self.docs = docs
        self.limit_value = None

    def limit(self, n):
        self.limit_value = n
        return self

    async def to_list(self, length=None):
        docs = self.docs if length is None else self.docs[:length]
        return [dict(d) for d in docs]


class FakeCollection:
    def __init__(self):
        self.docs = []
        self.indexes = []
        self.finds = []
        self.pipelines = []
        self.aggregate_rows = []

    def insert(self, **doc):
        doc.setdefault("_id", f"oid{len(self.docs) + 1}")
        self.docs.append(doc)
        return doc

    async def create_index(self, keys, **kwargs):
        self.indexes.append((keys, kwargs))
        return kwargs.get("name")

    def find(self, query, projection=None):
        self.finds.append((query, projection))
        return FakeCursor([d for d in self.docs if _matches(d, query)])

    async def update_one(self, query, update, upsert=False):
        existing = [d for d in self.docs if _matches(d, query)]
        if existing or not upsert:
            return SimpleNamespace(upserted_id=None, matched_count=len(existing))
        doc = self.insert(**{**query, **update.get("$setOnInsert", {})})
        return SimpleNamespace(upserted_id=doc["_id"], matched_count=0)

    def aggregate(self, pipeline):
        self.pipelines.append(pipeline)
        return FakeCursor(self.aggregate_rows)


class FakeDB:
    def __init__(self):
        self.collections = {}

    def __getitem__(self, name):
        return self.collections.setdefault(name, FakeCollection())


@pytest.fixture()
def fake_db():
    return FakeDB()
