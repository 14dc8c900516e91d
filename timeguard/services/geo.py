from __future__ import annotations

from dataclasses import dataclass
from math import asin, cos, isfinite, radians, sin, sqrt

EARTH_RADIUS_M = 6371000.0
DEFAULT_GEOFENCE_RADIUS_M = 100


@dataclass(frozen=True, slots=True)
class GeofenceResult:
    is_within: bool
    distance_m: int | None
    radius_m: int

    def to_dict(self) -> dict[str, bool | int | None]:
        return {
            "is_within": self.is_within,
            "distance_m": self.distance_m,
            "radius_m": self.radius_m,
        }


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two points given in signed decimal degrees."""
    lat1_rad = radians(lat1)
    lat2_rad = radians(lat2)
    delta_lat = radians(lat2 - lat1)
    delta_lon = radians(lon2 - lon1)

    a = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    # Rounding can push `a` a hair above 1 for antipodal points.
    c = 2 * asin(sqrt(min(1.0, a)))
    return EARTH_RADIUS_M * c


def effective_radius_m(radius_m: float | int | None) -> int:
    if radius_m is None or not radius_m > 0:
        return DEFAULT_GEOFENCE_RADIUS_M
    return int(radius_m)


def evaluate_geofence(
    user_lat: float,
    user_lon: float,
    site_lat: float,
    site_lon: float,
    radius_m: float | int | None = DEFAULT_GEOFENCE_RADIUS_M,
) -> GeofenceResult:
    """Decide whether a reported position lies inside a site's circular geofence.

    The decision uses the distance rounded to the nearest meter, so a position
    reported exactly on the boundary counts as inside. Non-finite coordinates
    never pass: the distance is reported as ``None`` and ``is_within`` is false.
    """
    radius = effective_radius_m(radius_m)
    raw_distance = distance_m(user_lat, user_lon, site_lat, site_lon)
    if not isfinite(raw_distance):
        return GeofenceResult(is_within=False, distance_m=None, radius_m=radius)

    rounded = int(round(raw_distance))
    return GeofenceResult(is_within=rounded <= radius, distance_m=rounded, radius_m=radius)
