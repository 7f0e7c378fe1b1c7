"""
zoom_profile.py — Zoom level → (search radius, minimum marker spacing).

Hand-tuned step table: the further the user zooms in, the smaller the area
searched and the closer markers may sit to each other. Rows are ordered by
descending zoom threshold and both columns are non-increasing as zoom
grows, so resolve() is monotonic. Exact breakpoints are a product choice.

Below MIN_VISIBLE_ZOOM the controller shows no markers at all; the last
row only exists so resolve() is total.
"""

from __future__ import annotations

import math

from discovery.models.hotspot import ZoomProfile

MIN_VISIBLE_ZOOM = 14.0

# (zoom threshold, radius mi, min separation mi)
_ZOOM_TABLE: tuple[tuple[float, float, float], ...] = (
    (18.0,  0.3,  0.0075),  # ~40 ft apart
    (17.75, 0.35, 0.009),
    (17.5,  0.4,  0.011),
    (17.25, 0.45, 0.0125),
    (17.0,  0.5,  0.015),
    (16.75, 0.6,  0.02),
    (16.5,  0.7,  0.025),
    (16.25, 0.85, 0.0275),
    (16.0,  1.0,  0.03),
    (15.75, 1.2,  0.04),
    (15.5,  1.4,  0.045),
    (15.25, 1.7,  0.05),
    (15.0,  2.0,  0.06),
    (14.75, 2.3,  0.075),
    (14.5,  2.6,  0.09),
    (14.25, 2.8,  0.1),
    (14.0,  3.0,  0.11),    # ~580 ft apart
)
_FALLBACK = ZoomProfile(radius_miles=4.0, min_marker_separation_miles=0.15)

_PROFILES = tuple(
    (threshold, ZoomProfile(radius_miles=radius, min_marker_separation_miles=spacing))
    for threshold, radius, spacing in _ZOOM_TABLE
)


def resolve(zoom: float) -> ZoomProfile:
    """Return the profile of the highest band whose threshold zoom reaches."""
    if math.isnan(zoom):
        return _FALLBACK
    for threshold, profile in _PROFILES:
        if zoom >= threshold:
            return profile
    return _FALLBACK


def is_visible(zoom: float) -> bool:
    """False when markers should be suppressed (NaN counts as zoomed out)."""
    return zoom >= MIN_VISIBLE_ZOOM
