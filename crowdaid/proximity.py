"""Turns a point and a radius into the pending help requests a volunteer could accept."""

from __future__ import annotations

from typing import List, Optional, Protocol

from .errors import ValidationError
from .geo import bounding_box, distance_km
from .models import HelpRequest, NearbyRequest

DEFAULT_RADIUS_KM = 10.0


class PendingRequestStore(Protocol):
    def find_pending_in_box(
        self,
        min_lat: float,
        max_lat: float,
        min_lng: float,
        max_lng: float,
    ) -> List[HelpRequest]: ...


def _require_coordinate(value: Optional[float], name: str, limit: float) -> float:
    if value is None:
        raise ValidationError("Latitude and longitude are required")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number") from None
    if not -limit <= number <= limit:
        raise ValidationError(f"{name} must be between -{limit:g} and {limit:g}")
    return number


class ProximityMatcher:
    """Two-stage proximity search: bounding-box range query, then exact distance."""

    def __init__(
        self,
        store: PendingRequestStore,
        *,
        default_radius_km: float = DEFAULT_RADIUS_KM,
        max_radius_km: Optional[float] = None,
    ) -> None:
        self._store = store
        self._default_radius_km = default_radius_km
        self._max_radius_km = max_radius_km

    def resolve_radius(self, radius_km: Optional[float]) -> float:
        """Apply the default radius; reject radii beyond the configured ceiling."""

        if radius_km is None or radius_km <= 0:
            return self._default_radius_km
        radius = float(radius_km)
        if self._max_radius_km is not None and radius > self._max_radius_km:
            raise ValidationError(f"Radius must be {self._max_radius_km:g} km or less")
        return radius

    def find_nearby(
        self,
        lat: Optional[float],
        lng: Optional[float],
        radius_km: Optional[float] = None,
    ) -> List[NearbyRequest]:
        """Return pending requests within ``radius_km`` of ``(lat, lng)``, nearest first."""

        origin_lat = _require_coordinate(lat, "Latitude", 90.0)
        origin_lng = _require_coordinate(lng, "Longitude", 180.0)
        radius = self.resolve_radius(radius_km)

        box = bounding_box(origin_lat, origin_lng, radius)
        candidates = self._store.find_pending_in_box(
            box.min_lat,
            box.max_lat,
            box.min_lng,
            box.max_lng,
        )

        matches: List[NearbyRequest] = []
        for candidate in candidates:
            distance = distance_km(origin_lat, origin_lng, candidate.latitude, candidate.longitude)
            if distance <= radius:
                matches.append(NearbyRequest(request=candidate, distance_km=distance))
        matches.sort(key=lambda item: (item.distance_km, item.request.id))
        return matches


__all__ = ["DEFAULT_RADIUS_KM", "PendingRequestStore", "ProximityMatcher"]
