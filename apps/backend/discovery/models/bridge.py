"""
bridge.py — Typed message protocol between the map surface and the controller.

The map surface (a Leaflet page inside the app's web view) speaks JSON over
a WebSocket. Every frame is a tagged object discriminated on "type".

Surface → controller:
  {"type": "mapInitialized"}
  {"type": "mapMove", "center": {"lat": 40.758, "lng": -73.9855}, "zoom": 16}
  {"type": "markerClick", "hotspot": {"id": "...", "lat": ..., "lng": ..., ...}}
  {"type": "userLocation", "lat": 40.758, "lng": -73.9855}

Controller → surface:
  {"type": "updateHotspots", "hotspots": [{"id", "lat", "lng", "type", "users", "distance", "name"}]}
  {"type": "openHotspot", "hotspot": {...}}

updateHotspots always replaces the whole rendered set. The surface may hold
it back while a zoom gesture is running and apply only the latest one on
zoomend; the controller never waits for it to land.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from discovery.models.geo import Coordinate
from discovery.models.hotspot import EnrichedHotspot
from discovery.services.geo_math import format_distance


class LatLng(BaseModel):
    """Wire form of a coordinate (Leaflet naming)."""

    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)

    def to_coordinate(self) -> Coordinate:
        return Coordinate(latitude=self.lat, longitude=self.lng)


class MarkerPayload(BaseModel):
    """One marker as the surface draws it. Extra keys round-trip untouched."""

    model_config = ConfigDict(extra="allow")

    id: str
    lat: float
    lng: float
    type: str = "location"
    users: int = 0
    distance: Optional[str] = None
    name: Optional[str] = None


# ── Inbound ───────────────────────────────────────────────────────────────────

class MapInitialized(BaseModel):
    type: Literal["mapInitialized"] = "mapInitialized"


class MapMove(BaseModel):
    type: Literal["mapMove"] = "mapMove"
    center: LatLng
    zoom: float


class MarkerClick(BaseModel):
    type: Literal["markerClick"] = "markerClick"
    hotspot: MarkerPayload


class UserLocation(BaseModel):
    type: Literal["userLocation"] = "userLocation"
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


InboundMessage = Annotated[
    Union[MapInitialized, MapMove, MarkerClick, UserLocation],
    Field(discriminator="type"),
]

_inbound_adapter: TypeAdapter[Any] = TypeAdapter(InboundMessage)


def parse_inbound(raw: Union[str, bytes, dict]) -> Union[MapInitialized, MapMove, MarkerClick, UserLocation]:
    """
    Decode one frame from the surface.

    Raises pydantic.ValidationError for malformed JSON, unknown types, or
    out-of-range coordinates; the transport logs and drops those frames.
    """
    if isinstance(raw, dict):
        return _inbound_adapter.validate_python(raw)
    return _inbound_adapter.validate_json(raw)


# ── Outbound ──────────────────────────────────────────────────────────────────

class UpdateHotspots(BaseModel):
    type: Literal["updateHotspots"] = "updateHotspots"
    hotspots: list[MarkerPayload]


class OpenHotspot(BaseModel):
    type: Literal["openHotspot"] = "openHotspot"
    hotspot: MarkerPayload


OutboundMessage = Union[UpdateHotspots, OpenHotspot]


def marker_from_hotspot(hotspot: EnrichedHotspot) -> MarkerPayload:
    """Project an enriched hotspot onto the marker fields the surface needs."""
    marker_id = hotspot.id or hotspot.external_id or f"{hotspot.lat}_{hotspot.lng}"
    return MarkerPayload(
        id=marker_id,
        lat=hotspot.lat,
        lng=hotspot.lng,
        type=hotspot.category,
        users=hotspot.live_user_count,
        distance=format_distance(hotspot.distance_from_user),
        name=hotspot.name,
    )


def update_hotspots(render_set: list[EnrichedHotspot]) -> UpdateHotspots:
    return UpdateHotspots(hotspots=[marker_from_hotspot(h) for h in render_set])
