"""
OverpassAdapter — Points of interest from OpenStreetMap via the Overpass API.

Used by the ExternalGeoSyncAgent to populate the local hotspot store.

This adapter does one request per call and reports exactly what happened
(an httpx.Response, or an httpx exception for network failures and
timeouts). Retry, backoff and cooldown policy live in the agent, which is
the only place that knows how hard the public instance has been hit.

To point at a private Overpass instance, set OVERPASS_URL.
"""

import asyncio
import logging
from typing import Any, Optional

import httpx

from discovery.core.config import settings
from discovery.models.geo import Coordinate
from discovery.models.hotspot import DEFAULT_CATEGORY, Hotspot

logger = logging.getLogger(__name__)

# (element kind, tag key, tag value); one Overpass statement each.
_POI_SELECTORS: tuple[tuple[str, str, str], ...] = (
    ("node", "amenity", "cafe"),
    ("node", "amenity", "bar"),
    ("node", "amenity", "pub"),
    ("node", "leisure", "fitness_centre"),
    ("node", "amenity", "coworking_space"),
    ("node", "amenity", "college"),
    ("node", "amenity", "university"),
    ("node", "amenity", "library"),
    ("way", "amenity", "library"),
)


def build_query(center: Coordinate, radius_m: float) -> str:
    """Overpass QL for every selector within radius_m meters of center."""
    around = f"around:{int(round(radius_m))},{center.latitude},{center.longitude}"
    statements = "\n".join(
        f'  {kind}["{key}"="{value}"]({around});' for kind, key, value in _POI_SELECTORS
    )
    return f"[out:json][timeout:25];\n(\n{statements}\n);\nout center;\n"


def parse_element(element: dict[str, Any]) -> Optional[Hotspot]:
    """
    Map one Overpass element to a Hotspot, or None if it can't be placed.

    Nodes carry lat/lon directly; ways carry them under "center" because
    the query asks for `out center`. Unnamed elements are skipped.
    """
    tags = element.get("tags") or {}
    if not isinstance(tags, dict):
        return None
    name = tags.get("name")
    if not name or not isinstance(name, str):
        return None

    center = element.get("center") or {}
    if not isinstance(center, dict):
        return None
    lat = element.get("lat", center.get("lat"))
    lon = element.get("lon", center.get("lon"))
    if lat is None or lon is None:
        return None

    kind = element.get("type")
    osm_id = element.get("id")
    if kind is None or osm_id is None:
        return None

    # pydantic's ValidationError is a ValueError
    try:
        return Hotspot(
            external_id=f"{kind}/{osm_id}",
            name=name,
            category=tags.get("amenity") or tags.get("leisure") or DEFAULT_CATEGORY,
            location=Coordinate(latitude=lat, longitude=lon),
            address=_compose_address(tags),
        )
    except ValueError:
        return None


def _compose_address(tags: dict[str, Any]) -> Optional[str]:
    street = tags.get("addr:street")
    number = tags.get("addr:housenumber")
    if not (street and number):
        return None
    address = f"{number} {street}"
    if tags.get("addr:city"):
        address += f", {tags['addr:city']}"
    if tags.get("addr:postcode"):
        address += f" {tags['addr:postcode']}"
    return address


class OverpassAdapter:
    """
    Thin async wrapper around the Overpass interpreter endpoint.

    Pass `transport` (e.g. httpx.MockTransport) in tests to avoid the network.
    """

    def __init__(
        self,
        url: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url or settings.overpass_url
        self.timeout_seconds = timeout_seconds or settings.overpass_timeout_seconds
        self.transport = transport

    async def fetch(self, center: Coordinate, radius_m: float) -> httpx.Response:
        """
        POST one query. Returns the response whatever its status.

        Raises:
            httpx.TimeoutException: full response not received within timeout_seconds.
            httpx.TransportError:   connection-level failure.
        """
        query = build_query(center, radius_m)
        # httpx timeouts apply per phase and per chunk; this bounds the whole exchange.
        try:
            async with asyncio.timeout(self.timeout_seconds):
                async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                    response = await client.post(
                        self.url,
                        content=query,
                        headers={
                            "Content-Type": "text/plain",
                            "User-Agent": settings.overpass_user_agent,
                        },
                    )
        except TimeoutError as exc:
            raise httpx.TimeoutException(
                f"Overpass did not respond within {self.timeout_seconds}s"
            ) from exc
        logger.debug("Overpass %s for radius %dm around %s", response.status_code, radius_m, center)
        return response
