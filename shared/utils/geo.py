"""
shared/utils/geo.py
Great-circle distance and radius ranking. Pure functions, no I/O.
Used by both the worker search and the nearby-requests view.
"""

import math
from typing import Callable, Iterable, List, Optional, Tuple, TypeVar

EARTH_RADIUS_KM = 6371.0
DEFAULT_LIMIT = 50

T = TypeVar("T")
Coordinates = Tuple[float, float]


def distance_km(a: Coordinates, b: Coordinates) -> float:
    """Haversine distance in kilometres between two (lat, lng) pairs in degrees."""
    lat1, lng1 = a
    lat2, lng2 = b
    if lat1 == lat2 and lng1 == lng2:
        return 0.0

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    h = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    # Clamp rounding noise so asin stays in its domain
    h = min(1.0, max(0.0, h))
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))


def _coords_of(item) -> Optional[Coordinates]:
    lat = getattr(item, "latitude", None)
    lng = getattr(item, "longitude", None)
    if lat is None or lng is None:
        return None
    return float(lat), float(lng)


def find_nearby(
    candidates: Iterable[T],
    origin: Coordinates,
    radius_km: float,
    limit: int = DEFAULT_LIMIT,
    key: Callable[[T], Optional[Coordinates]] = _coords_of,
) -> List[Tuple[T, float]]:
    """
    Rank candidates by distance from origin.

    Candidates without coordinates are dropped, then those farther than
    radius_km. The result is sorted ascending by distance (stable for ties)
    and truncated to limit. Returns (candidate, distance_km) pairs.
    """
    if limit <= 0 or radius_km < 0:
        return []

    ranked: List[Tuple[T, float]] = []
    for item in candidates:
        coords = key(item)
        if coords is None:
            continue
        d = distance_km(origin, coords)
        if d <= radius_km:
            ranked.append((item, d))

    ranked.sort(key=lambda pair: pair[1])
    return ranked[:limit]


def bounding_box(origin: Coordinates, radius_km: float) -> Tuple[float, float, float, float]:
    """
    (min_lat, max_lat, min_lng, max_lng) enclosing the radius around origin.
    Used only as a coarse SQL prefilter; find_nearby makes the exact cut.
    """
    lat, lng = origin
    angular = radius_km / EARTH_RADIUS_KM
    d_lat = math.degrees(angular)
    min_lat = max(-90.0, lat - d_lat)
    max_lat = min(90.0, lat + d_lat)

    cos_lat = math.cos(math.radians(lat))
    # The cap reaches a pole, so every longitude qualifies
    if max_lat >= 90.0 or min_lat <= -90.0 or math.sin(angular) >= cos_lat:
        return min_lat, max_lat, -180.0, 180.0
    d_lng = math.degrees(math.asin(math.sin(angular) / cos_lat))
    if lng - d_lng < -180.0 or lng + d_lng > 180.0:
        # Box wraps the antimeridian
        return min_lat, max_lat, -180.0, 180.0
    return min_lat, max_lat, lng - d_lng, lng + d_lng
