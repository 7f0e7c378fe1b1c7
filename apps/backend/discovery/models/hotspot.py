"""
hotspot.py — Pydantic models for hotspots and the map discovery state.

MongoDB document shape (collection `hotspots`):

  {
    "_id": ObjectId(...),
    "external_id": "node/123456",           ← unique, sparse; OSM "<kind>/<id>"
    "name": "Blue Bottle Coffee",
    "category": "cafe",
    "latitude": 40.7581,
    "longitude": -73.9855,
    "location": { "type": "Point", "coordinates": [-73.9855, 40.7581] },
    "address": "1 Times Sq, New York 10036"
  }

Active users (collection `active_hotspot_users`):

  { "hotspot_id": "<hotspot _id as str>", "user_id": "...", "last_seen": ISODate(...) }
"""

from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from discovery.models.geo import Coordinate

DEFAULT_CATEGORY = "location"


class Hotspot(BaseModel):
    """A point of interest that can be joined on the map."""

    id: Optional[str] = None            # local store primary key; None until persisted
    external_id: Optional[str] = None   # provider id, idempotency key for upserts
    name: str
    category: str = DEFAULT_CATEGORY
    location: Coordinate
    address: Optional[str] = None

    @property
    def lat(self) -> float:
        return self.location.latitude

    @property
    def lng(self) -> float:
        return self.location.longitude


class EnrichedHotspot(Hotspot):
    """Hotspot annotated for one viewport cycle. Never persisted."""

    distance_from_user: float                 # miles
    distance_from_viewport_center: float      # miles
    live_user_count: int = Field(default=0, ge=0)


class ZoomProfile(BaseModel):
    """Search radius and minimum marker spacing for a zoom level (miles)."""

    model_config = ConfigDict(frozen=True)

    radius_miles: float = Field(gt=0)
    min_marker_separation_miles: float = Field(gt=0)


class ViewportState(BaseModel):
    """What the map is currently showing."""

    center: Coordinate
    zoom: float


@dataclass
class SyncGate:
    """
    Rate-limit bookkeeping for one ExternalGeoSyncAgent.

    Timestamps are milliseconds on the agent's clock. Only mutated
    synchronously (between awaits), so no lock is needed.
    """

    last_sync_attempt_at: float = float("-inf")
    next_allowed_sync_at: float = 0.0
    in_progress: bool = False
