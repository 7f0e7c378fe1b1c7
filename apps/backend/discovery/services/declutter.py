"""
declutter.py — Greedy anti-overlap filter for map markers.

Input order is priority order: callers sort by distance first, so nearer
hotspots claim their spot before farther ones. Only geography is consulted;
live user counts never let a marker bypass the spacing rule.

Cost is O(n²) in the candidate count. The store query limit keeps n small.
"""

from __future__ import annotations

from typing import Sequence

from discovery.models.hotspot import EnrichedHotspot
from discovery.services.geo_math import distance_miles


def declutter(hotspots: Sequence[EnrichedHotspot], min_separation_miles: float) -> list[EnrichedHotspot]:
    """
    Keep each hotspot only if it is at least min_separation_miles from every
    hotspot already kept. Deterministic for a given input order.
    """
    accepted: list[EnrichedHotspot] = []
    for candidate in hotspots:
        if all(
            distance_miles(candidate.location, kept.location) >= min_separation_miles
            for kept in accepted
        ):
            accepted.append(candidate)
    return accepted
