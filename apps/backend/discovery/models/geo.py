"""
geo.py — Coordinate primitives shared by every discovery module.

Coordinates are validated on construction; code that needs to carry an
unvalidated point (e.g. NaN from a broken sensor) can use
Coordinate.model_construct() and the math helpers will propagate NaN.
"""

from pydantic import BaseModel, ConfigDict, Field


class Coordinate(BaseModel):
    """A WGS84 point in decimal degrees."""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class BoundingBox(BaseModel):
    """Axis-aligned lat/lon rectangle used as a cheap query pre-filter."""

    model_config = ConfigDict(frozen=True)

    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    def contains(self, point: Coordinate) -> bool:
        return (
            self.min_lat <= point.latitude <= self.max_lat
            and self.min_lon <= point.longitude <= self.max_lon
        )
