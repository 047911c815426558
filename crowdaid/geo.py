"""Great-circle helpers used by the proximity search.

Only two primitives are needed: an exact Haversine distance and a coarse
bounding box that a range query can use as a prefilter.
"""

from __future__ import annotations

from dataclasses import dataclass
from math import asin, atan2, cos, degrees, radians, sin, sqrt

EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned latitude/longitude rectangle in decimal degrees."""

    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    def contains(self, lat: float, lng: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lng <= lng <= self.max_lng


def distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Return the Haversine distance between two points in kilometres."""

    d_lat = radians(lat2 - lat1)
    d_lng = radians(lng2 - lng1)
    a = sin(d_lat / 2) ** 2 + cos(radians(lat1)) * cos(radians(lat2)) * sin(d_lng / 2) ** 2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def bounding_box(lat: float, lng: float, radius_km: float) -> BoundingBox:
    """Compute the box enclosing every point within ``radius_km`` of the origin.

    Longitude is widened by ``asin(sin(d) / cos(lat))`` to compensate for
    meridians converging towards the poles. When the circle touches a pole
    the longitude span degenerates, so the full range is returned instead.
    """

    angular = max(radius_km, 0.0) / EARTH_RADIUS_KM
    lat_rad = radians(lat)

    min_lat = degrees(lat_rad - angular)
    max_lat = degrees(lat_rad + angular)

    if min_lat <= -90.0 or max_lat >= 90.0 or sin(angular) >= cos(lat_rad):
        return BoundingBox(
            min_lat=max(min_lat, -90.0),
            max_lat=min(max_lat, 90.0),
            min_lng=-180.0,
            max_lng=180.0,
        )

    delta_lng = degrees(asin(sin(angular) / cos(lat_rad)))
    min_lng = lng - delta_lng
    max_lng = lng + delta_lng
    # A box crossing the antimeridian cannot be expressed as one range.
    if min_lng < -180.0 or max_lng > 180.0:
        min_lng, max_lng = -180.0, 180.0
    return BoundingBox(min_lat=min_lat, max_lat=max_lat, min_lng=min_lng, max_lng=max_lng)


__all__ = ["BoundingBox", "EARTH_RADIUS_KM", "bounding_box", "distance_km"]
