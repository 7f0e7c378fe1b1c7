"""
viewport_controller.py — Turns map moves into the marker set the map draws.

HOW THE DATA FLOWS
──────────────────
1. The surface reports a move (mapMove) → on_viewport_change(center, zoom).
2. Zoomed out past MIN_VISIBLE_ZOOM → publish an empty set and stop; the app
   shows its own "zoom in" hint.
3. Otherwise kick the sync agent (it decides for itself whether to hit
   Overpass), query the store for the zoom profile's bounding box, cut to
   the exact radius, merge live user counts, and sort by distance from the
   user.
4. Hand the candidates to a 10 ms debouncer. A newer move replaces the
   pending run, so a burst of moves produces one declutter pass for the
   last viewport.
5. Declutter with the profile's marker spacing and publish updateHotspots.

Nothing raises out of this class: store failures leave the previous
markers on screen, sink failures are logged.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, Sequence

from discovery.core.config import settings
from discovery.core.scheduler import Debouncer
from discovery.models.bridge import (
    MapInitialized,
    MapMove,
    MarkerClick,
    MarkerPayload,
    OutboundMessage,
    UserLocation,
    update_hotspots,
)
from discovery.models.geo import Coordinate
from discovery.models.hotspot import EnrichedHotspot, ViewportState
from discovery.services.declutter import declutter
from discovery.services.geo_math import bounding_box, distance_miles
from discovery.services.geo_sync import ExternalGeoSyncAgent
from discovery.services.hotspot_store import HotspotStore
from discovery.services.zoom_profile import is_visible, resolve

logger = logging.getLogger(__name__)

RenderSink = Callable[[OutboundMessage], Awaitable[None]]
Navigator = Callable[[MarkerPayload], Awaitable[None]]


async def collect_candidates(
    store: HotspotStore,
    center: Coordinate,
    zoom: float,
    user_location: Optional[Coordinate] = None,
    *,
    type_filter: Optional[Sequence[str]] = None,
    limit: Optional[int] = None,
) -> list[EnrichedHotspot]:
    """
    Hotspots within the zoom profile's radius of center, nearest-to-user first.

    Store query errors propagate; live-count errors degrade to zero counts.
    Without a user location, distances are measured from the viewport center.
    """
    profile = resolve(zoom)
    box = bounding_box(center, profile.radius_miles)
    hotspots = await store.query_by_bounding_box(
        box, type_filter=type_filter, limit=limit or settings.map_query_limit
    )

    origin = user_location or center
    in_radius = []
    for hotspot in hotspots:
        from_center = distance_miles(center, hotspot.location)
        # The box is a superset; this is the precise cut.
        if not from_center <= profile.radius_miles:
            continue
        in_radius.append((hotspot, distance_miles(origin, hotspot.location), from_center))

    counts = await _live_user_counts(store, [h.id for h, _, _ in in_radius if h.id])

    enriched = [
        EnrichedHotspot(
            **hotspot.model_dump(),
            distance_from_user=from_user,
            distance_from_viewport_center=from_center,
            live_user_count=counts.get(hotspot.id, 0) if hotspot.id else 0,
        )
        for hotspot, from_user, from_center in in_radius
    ]
    enriched.sort(key=lambda h: h.distance_from_user)
    return enriched


async def _live_user_counts(store: HotspotStore, hotspot_ids: list[str]) -> dict[str, int]:
    if not hotspot_ids:
        return {}
    since = datetime.now(tz=timezone.utc) - timedelta(minutes=settings.active_user_window_minutes)
    try:
        return await store.query_active_user_counts(hotspot_ids, since)
    except Exception as exc:
        logger.warning("Active user count query failed, showing zero counts: %s", exc)
        return {}


class ViewportController:
    """
    Per-screen state machine between the map surface and the hotspot store.

    Owns the ViewportState. Construct one per discovery screen (one per map
    WebSocket) together with its ExternalGeoSyncAgent.
    """

    def __init__(
        self,
        store: HotspotStore,
        publish: RenderSink,
        *,
        sync_agent: ExternalGeoSyncAgent | None = None,
        navigator: Navigator | None = None,
        user_location: Coordinate | None = None,
        debounce_ms: float | None = None,
    ) -> None:
        self.store = store
        self.publish = publish
        self.sync_agent = sync_agent
        self.navigator = navigator
        self.user_location = user_location

        self.viewport: ViewportState | None = None
        self.map_ready = False
        self.render_set: list[EnrichedHotspot] = []
        self._render_set_unsent = False
        self._generation = 0
        self._debouncer = Debouncer(
            settings.declutter_debounce_ms if debounce_ms is None else debounce_ms
        )

        if sync_agent is not None and sync_agent.on_synced is None:
            sync_agent.on_synced = self._on_synced

    # ── Inbound bridge messages ───────────────────────────────────────────────

    async def handle_message(self, message: MapInitialized | MapMove | MarkerClick | UserLocation) -> None:
        if isinstance(message, MapMove):
            await self.on_viewport_change(message.center.to_coordinate(), message.zoom)
        elif isinstance(message, MarkerClick):
            await self.on_marker_click(message.hotspot)
        elif isinstance(message, MapInitialized):
            await self.on_map_initialized()
        elif isinstance(message, UserLocation):
            self.on_user_location(Coordinate(latitude=message.lat, longitude=message.lng))

    async def on_map_initialized(self) -> None:
        logger.info("Map surface initialized")
        self.map_ready = True
        if self._render_set_unsent:
            await self._send(self.render_set)

    def on_user_location(self, location: Coordinate) -> None:
        self.user_location = location

    async def on_marker_click(self, marker: MarkerPayload) -> None:
        if self.navigator is None:
            logger.debug("Marker %s clicked with no navigator attached", marker.id)
            return
        try:
            await self.navigator(marker)
        except Exception as exc:
            logger.warning("Navigation to hotspot %s failed: %s", marker.id, exc)

    async def on_viewport_change(self, center: Coordinate, zoom: float) -> None:
        self.viewport = ViewportState(center=center, zoom=zoom)
        await self._cycle(sync=True)

    async def refresh(self) -> None:
        """Re-query the current viewport without triggering another sync."""
        if self.viewport is not None:
            await self._cycle(sync=False)

    async def wait_for_publish(self) -> None:
        """Wait for the pending declutter pass, if any, to publish."""
        await self._debouncer.wait()

    def close(self) -> None:
        self._debouncer.cancel()
        if self.sync_agent is not None:
            self.sync_agent.cancel()

    # ── Cycle ─────────────────────────────────────────────────────────────────

    async def _cycle(self, sync: bool) -> None:
        viewport = self.viewport
        self._generation += 1
        generation = self._generation

        if not is_visible(viewport.zoom):
            self._debouncer.cancel()
            await self._publish([])
            return

        if sync and self.sync_agent is not None:
            self.sync_agent.trigger(viewport.center, viewport.zoom)

        try:
            candidates = await collect_candidates(
                self.store, viewport.center, viewport.zoom, self.user_location
            )
        except Exception as exc:
            logger.warning("Hotspot query failed, keeping previous markers: %s", exc)
            return

        if generation != self._generation:
            logger.debug("Discarding hotspot query superseded by a newer viewport")
            return

        self._debouncer.schedule(self._declutter_and_publish, candidates, viewport.zoom)

    async def _declutter_and_publish(self, candidates: list[EnrichedHotspot], zoom: float) -> None:
        profile = resolve(zoom)
        filtered = declutter(candidates, profile.min_marker_separation_miles)
        logger.debug("Clutter filter applied: %d of %d hotspots", len(filtered), len(candidates))
        await self._publish(filtered)

    async def _on_synced(self, center: Coordinate, zoom: float) -> None:
        await self.refresh()

    async def _publish(self, render_set: list[EnrichedHotspot]) -> None:
        self.render_set = render_set
        if not self.map_ready:
            self._render_set_unsent = True
            return
        await self._send(render_set)

    async def _send(self, render_set: list[EnrichedHotspot]) -> None:
        self._render_set_unsent = False
        try:
            await self.publish(update_hotspots(render_set))
        except Exception as exc:
            logger.warning("Failed to push %d hotspots to the map: %s", len(render_set), exc)
