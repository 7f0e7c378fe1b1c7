"""
geo_sync.py — Keeps the local hotspot store fed from OpenStreetMap.

Every map move may trigger a sync, but the public Overpass instance is
rate limited and occasionally slow, so each agent owns a SyncGate and goes
through this state machine per trigger:

    idle ──(zoom ≥ 14)──▶ gate check ──▶ fetch ──▶ parse + upsert ──▶ idle
                            │               │
                            │               ├─ timeout / network / 5xx → backoff retry (≤2),
                            │               │                            then 10–15 s cooldown
                            │               ├─ 429 → cooldown of Retry-After (+ jitter), no retry
                            │               └─ other non-2xx → log, give up
                            └─ cooldown / in progress / < 1 s since last attempt → no-op

The gate check and the in_progress/last_attempt writes happen in one
synchronous stretch before the first await, which is what makes the agent
single-flight on a cooperative event loop.

One agent per discovery screen (i.e. per map WebSocket connection); nothing
here is module-level state.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from enum import Enum
from typing import Awaitable, Callable, Optional

import httpx

from discovery.adapters.overpass_adapter import OverpassAdapter, parse_element
from discovery.core.config import settings
from discovery.models.geo import Coordinate
from discovery.models.hotspot import SyncGate
from discovery.services.hotspot_store import HotspotStore
from discovery.services.zoom_profile import is_visible

logger = logging.getLogger(__name__)

SyncedCallback = Callable[[Coordinate, float], Awaitable[None]]


class SyncOutcome(str, Enum):
    SKIPPED_LOW_ZOOM = "skipped_low_zoom"
    SKIPPED_COOLDOWN = "skipped_cooldown"
    SKIPPED_IN_PROGRESS = "skipped_in_progress"
    SKIPPED_DEBOUNCE = "skipped_debounce"
    SYNCED = "synced"
    RATE_LIMITED = "rate_limited"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"
    STORE_FAILURE = "store_failure"


def provider_radius_m(zoom: float) -> int:
    """Overpass search radius in meters; tighter when zoomed in."""
    if zoom >= 16:
        return 300
    if zoom >= 15:
        return 500
    return 800


def parse_retry_after(value: Optional[str], default_seconds: int) -> int:
    """Seconds from a Retry-After header. HTTP-date and junk fall back to default."""
    if value is None:
        return default_seconds
    try:
        seconds = int(value.strip())
    except ValueError:
        return default_seconds
    return seconds if seconds >= 0 else default_seconds


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class ExternalGeoSyncAgent:
    """Single-flight, rate-limit-aware Overpass → store synchroniser."""

    def __init__(
        self,
        store: HotspotStore,
        adapter: OverpassAdapter | None = None,
        *,
        clock: Callable[[], float] = _monotonic_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
        on_synced: SyncedCallback | None = None,
    ) -> None:
        self.store = store
        self.adapter = adapter or OverpassAdapter()
        self.clock = clock
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.on_synced = on_synced
        self.gate = SyncGate()
        self._task: asyncio.Task | None = None

        self.debounce_ms = settings.sync_debounce_ms
        self.max_retries = settings.sync_max_retries
        self.backoff_base_ms = settings.sync_backoff_base_ms
        self.backoff_jitter_ms = settings.sync_backoff_jitter_ms
        self.failure_cooldown_ms = settings.sync_failure_cooldown_ms
        self.failure_cooldown_jitter_ms = settings.sync_failure_cooldown_jitter_ms
        self.default_retry_after_s = settings.sync_default_retry_after_seconds
        self.rate_limit_jitter_ms = settings.sync_rate_limit_jitter_ms

    # ── Entry points ──────────────────────────────────────────────────────────

    def trigger(self, center: Coordinate, zoom: float) -> asyncio.Task | None:
        """Fire-and-forget sync. Returns the task, or None if the gate said no."""
        if self._acquire(zoom) is not None:
            return None
        self._task = asyncio.create_task(self._run(center, zoom))
        return self._task

    async def sync(self, center: Coordinate, zoom: float) -> SyncOutcome:
        """Run a sync to completion and report what happened."""
        skipped = self._acquire(zoom)
        if skipped is not None:
            return skipped
        return await self._run(center, zoom)

    def cancel(self) -> None:
        """Abandon an in-flight sync (screen closed)."""
        if self._task is not None and not self._task.done():
            self._task.cancel()

    # ── Gate ──────────────────────────────────────────────────────────────────

    def _acquire(self, zoom: float) -> SyncOutcome | None:
        """Check-and-set the gate. Must not await anything."""
        if not is_visible(zoom):
            return SyncOutcome.SKIPPED_LOW_ZOOM

        now = self.clock()
        gate = self.gate
        if now < gate.next_allowed_sync_at:
            logger.debug("Skipping Overpass sync — cooling down for %.0fms", gate.next_allowed_sync_at - now)
            return SyncOutcome.SKIPPED_COOLDOWN
        if gate.in_progress:
            logger.debug("Skipping Overpass sync — another sync in progress")
            return SyncOutcome.SKIPPED_IN_PROGRESS
        if now - gate.last_sync_attempt_at < self.debounce_ms:
            logger.debug("Skipping Overpass sync — too soon since last attempt")
            return SyncOutcome.SKIPPED_DEBOUNCE

        gate.in_progress = True
        gate.last_sync_attempt_at = now
        return None

    def _cool_down(self, cooldown_ms: float) -> None:
        self.gate.next_allowed_sync_at = self.clock() + cooldown_ms

    # ── Work ──────────────────────────────────────────────────────────────────

    async def _run(self, center: Coordinate, zoom: float) -> SyncOutcome:
        try:
            outcome = await self._fetch_and_store(center, zoom)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Overpass sync crashed: %s", exc, exc_info=True)
            outcome = SyncOutcome.PERMANENT_FAILURE
        finally:
            self.gate.in_progress = False

        if outcome is SyncOutcome.SYNCED and self.on_synced is not None:
            try:
                await self.on_synced(center, zoom)
            except Exception as exc:
                logger.warning("Post-sync refresh failed: %s", exc)
        return outcome

    async def _fetch_and_store(self, center: Coordinate, zoom: float) -> SyncOutcome:
        radius_m = provider_radius_m(zoom)
        attempt = 0

        while True:
            attempt += 1
            response: httpx.Response | None = None
            try:
                response = await self.adapter.fetch(center, radius_m)
            except httpx.TimeoutException:
                logger.info("Overpass request timed out (attempt %d)", attempt)
            except httpx.TransportError as exc:
                logger.info("Network error contacting Overpass (attempt %d): %s", attempt, exc)

            if response is None or response.status_code >= 500:
                status = "no response" if response is None else f"server error {response.status_code}"
                if attempt <= self.max_retries:
                    wait_ms = self.backoff_base_ms * 2 ** (attempt - 1) + self.rng.randint(0, self.backoff_jitter_ms)
                    logger.info("Overpass %s, retrying attempt %d in %dms", status, attempt, wait_ms)
                    await self.sleep(wait_ms / 1000.0)
                    continue

                cooldown_ms = self.failure_cooldown_ms + self.rng.randint(0, self.failure_cooldown_jitter_ms)
                self._cool_down(cooldown_ms)
                logger.warning("Overpass %s; giving up and cooling down for %dms", status, cooldown_ms)
                return SyncOutcome.TRANSIENT_FAILURE

            if response.status_code == 429:
                retry_after = parse_retry_after(response.headers.get("Retry-After"), self.default_retry_after_s)
                cooldown_ms = retry_after * 1000 + self.rng.randint(0, self.rate_limit_jitter_ms)
                self._cool_down(cooldown_ms)
                logger.warning("Rate limited by Overpass (429). Cooling down for %ds", round(cooldown_ms / 1000))
                return SyncOutcome.RATE_LIMITED

            if not response.is_success:
                logger.error("Overpass rejected query: %s — %s", response.status_code, response.text[:200])
                return SyncOutcome.PERMANENT_FAILURE

            return await self._store_elements(response)

    async def _store_elements(self, response: httpx.Response) -> SyncOutcome:
        try:
            payload = response.json()
        except ValueError as exc:
            logger.error("Overpass returned unparseable body: %s", exc)
            return SyncOutcome.PERMANENT_FAILURE

        elements = payload.get("elements") if isinstance(payload, dict) else None
        if not isinstance(elements, list):
            logger.error("Overpass response has no elements array")
            return SyncOutcome.PERMANENT_FAILURE

        inserted = skipped = 0
        for element in elements:
            try:
                hotspot = parse_element(element) if isinstance(element, dict) else None
            except (TypeError, ValueError) as exc:
                logger.debug("Skipping malformed Overpass element: %s", exc)
                hotspot = None
            if hotspot is None:
                skipped += 1
                continue
            try:
                if await self.store.upsert_by_external_id(hotspot):
                    inserted += 1
            except Exception as exc:
                logger.warning("Hotspot store rejected %s: %s", hotspot.external_id, exc)
                return SyncOutcome.STORE_FAILURE

        logger.info(
            "Overpass sync completed: %d elements, %d new, %d skipped",
            len(elements), inserted, skipped,
        )
        return SyncOutcome.SYNCED
