"""
hotspots.py — One-shot hotspot discovery over REST.

Routes:
  GET /api/v1/hotspots/nearby — decluttered hotspots around a point

Same pipeline as the map stream (zoom profile → bounding box → exact radius
→ live counts → declutter) but without debounce or external sync, for
screens that list nearby places instead of keeping a map open.

  curl "http://localhost:8000/api/v1/hotspots/nearby?lat=40.758&lng=-73.9855&zoom=16"
  curl "http://localhost:8000/api/v1/hotspots/nearby?lat=40.758&lng=-73.9855&zoom=15&category=cafe&category=bar"
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from discovery.core.database import get_db
from discovery.core.rate_limit import limiter
from discovery.models.geo import Coordinate
from discovery.models.hotspot import EnrichedHotspot, ZoomProfile
from discovery.services.declutter import declutter
from discovery.services.hotspot_store import MongoHotspotStore
from discovery.services.viewport_controller import collect_candidates
from discovery.services.zoom_profile import is_visible, resolve

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/hotspots", tags=["hotspots"])


class NearbyResponse(BaseModel):
    """Snapshot returned by GET /api/v1/hotspots/nearby."""

    zoom: float
    profile: ZoomProfile
    suppressed: bool          # True when zoom is too low to show markers
    hotspots: list[EnrichedHotspot]


def get_store(db=Depends(get_db)) -> Optional[MongoHotspotStore]:
    """Store over the injected database, or None when MongoDB is down."""
    if db is None:
        return None
    return MongoHotspotStore(db)


@router.get("/nearby", response_model=NearbyResponse)
@limiter.limit("60/minute")
async def nearby_hotspots(
    request: Request,
    lat: float = Query(ge=-90, le=90, description="Viewport center latitude"),
    lng: float = Query(ge=-180, le=180, description="Viewport center longitude"),
    zoom: float = Query(default=15, ge=0, le=22, description="Map zoom level"),
    category: Optional[list[str]] = Query(default=None, description="Repeat to filter by several categories"),
    user_lat: Optional[float] = Query(default=None, ge=-90, le=90),
    user_lng: Optional[float] = Query(default=None, ge=-180, le=180),
    store=Depends(get_store),
):
    """
    Return the hotspots a map at (lat, lng, zoom) would show.

    Distances are measured from (user_lat, user_lng) when both are given,
    otherwise from the viewport center.
    """
    profile = resolve(zoom)
    if not is_visible(zoom):
        return NearbyResponse(zoom=zoom, profile=profile, suppressed=True, hotspots=[])

    if store is None:
        raise HTTPException(status_code=503, detail="Database unavailable")

    center = Coordinate(latitude=lat, longitude=lng)
    user_location = None
    if user_lat is not None and user_lng is not None:
        user_location = Coordinate(latitude=user_lat, longitude=user_lng)

    try:
        candidates = await collect_candidates(
            store, center, zoom, user_location, type_filter=category
        )
    except Exception as exc:
        logger.warning("Nearby hotspot query failed: %s", exc)
        raise HTTPException(status_code=503, detail="Hotspot store unavailable")

    return NearbyResponse(
        zoom=zoom,
        profile=profile,
        suppressed=False,
        hotspots=declutter(candidates, profile.min_marker_separation_miles),
    )
