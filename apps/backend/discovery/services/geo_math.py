"""
geo_math.py — Great-circle distance and bounding boxes, in miles.

Miles are the only distance unit inside the discovery core. The Overpass
search radius is the one value expressed in meters (see geo_sync).
"""

from __future__ import annotations

import math

from discovery.models.geo import BoundingBox, Coordinate

EARTH_RADIUS_MILES = 3959.0
MILES_PER_DEGREE_LAT = 69.0
FEET_PER_MILE = 5280

# Keeps the longitude span finite near the poles.
_MIN_COS_LAT = 0.2


def distance_miles(a: Coordinate, b: Coordinate) -> float:
    """Haversine distance between two points. NaN inputs give NaN."""
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    dlat = lat2 - lat1
    dlon = math.radians(b.longitude - a.longitude)

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    if h > 1.0:  # rounding at antipodes
        h = 1.0
    return EARTH_RADIUS_MILES * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def bounding_box(center: Coordinate, radius_miles: float) -> BoundingBox:
    """
    Approximate box around center that contains every point within radius_miles.

    Not geodesically exact; callers cut precisely with distance_miles afterwards.
    """
    lat_delta = radius_miles / MILES_PER_DEGREE_LAT
    cos_lat = max(math.cos(math.radians(center.latitude)), _MIN_COS_LAT)
    lon_delta = radius_miles / (MILES_PER_DEGREE_LAT * cos_lat)
    return BoundingBox(
        min_lat=center.latitude - lat_delta,
        max_lat=center.latitude + lat_delta,
        min_lon=center.longitude - lon_delta,
        max_lon=center.longitude + lon_delta,
    )


def format_distance(miles: float) -> str:
    """'528ft' under a mile, '1.4mi' otherwise."""
    if miles < 1:
        return f"{round(miles * FEET_PER_MILE)}ft"
    return f"{miles:.1f}mi"
