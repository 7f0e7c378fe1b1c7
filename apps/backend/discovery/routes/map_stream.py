"""
map_stream.py — WebSocket transport for the map surface.

Routes:
  WS /api/v1/map/stream — bidirectional render-bridge channel

One connection = one discovery screen. Each connection gets its own
ExternalGeoSyncAgent (so its cooldown/single-flight gate lives exactly as
long as the screen) and its own ViewportController.

Frames are JSON text (see discovery.models.bridge for the message shapes).
Frames that fail validation are logged and dropped; the socket stays open.

Manual test (install wscat: npm i -g wscat):
  wscat -c ws://localhost:8000/api/v1/map/stream
  > {"type": "mapInitialized"}
  > {"type": "mapMove", "center": {"lat": 40.758, "lng": -73.9855}, "zoom": 16}
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from discovery.core.database import get_db
from discovery.models.bridge import MarkerPayload, OpenHotspot, OutboundMessage, parse_inbound
from discovery.services.geo_sync import ExternalGeoSyncAgent
from discovery.services.hotspot_store import MongoHotspotStore
from discovery.services.viewport_controller import ViewportController

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/map", tags=["map"])


class _NullStore:
    """Stand-in while MongoDB is down: no candidates and no live counts."""

    async def query_by_bounding_box(self, box, type_filter=None, limit=180):
        return []

    async def upsert_by_external_id(self, hotspot):
        return False

    async def query_active_user_counts(self, hotspot_ids, since):
        return {}


@router.websocket("/stream")
async def map_stream(websocket: WebSocket, db=Depends(get_db)):
    """
    Relay surface messages into a ViewportController and push its render
    sets back as updateHotspots frames.
    """
    await websocket.accept()

    async def send(message: OutboundMessage) -> None:
        await websocket.send_text(message.model_dump_json())

    async def open_hotspot(marker: MarkerPayload) -> None:
        await send(OpenHotspot(hotspot=marker))

    # Without a database there is nowhere to put synced hotspots, so no agent.
    if db is None:
        logger.warning("Map stream opened without a database; markers will stay empty")
        store = _NullStore()
        sync_agent = None
    else:
        store = MongoHotspotStore(db)
        sync_agent = ExternalGeoSyncAgent(store)

    controller = ViewportController(
        store,
        send,
        sync_agent=sync_agent,
        navigator=open_hotspot,
    )

    # Each frame is handled in its own task so a slow store query doesn't
    # hold up reading the next move; the controller keeps only the newest.
    in_flight: set[asyncio.Task] = set()
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = parse_inbound(raw)
            except ValidationError as exc:
                logger.info("Dropping malformed map frame: %s", exc.errors()[:1])
                continue
            task = asyncio.create_task(controller.handle_message(message))
            in_flight.add(task)
            task.add_done_callback(in_flight.discard)
    except WebSocketDisconnect:
        # Screen closed or app backgrounded — normal, not an error
        logger.info("Map stream client disconnected")
    except Exception as exc:
        logger.warning("Map stream error: %s", exc)
    finally:
        for task in in_flight:
            task.cancel()
        controller.close()
