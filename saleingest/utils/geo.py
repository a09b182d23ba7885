"""Distance geometry helpers for proximity checks."""

import math
from typing import NamedTuple

EARTH_RADIUS_METERS = 6371000
METERS_PER_DEGREE = 111000


class BoundingBox(NamedTuple):
    lat_min: float
    lat_max: float
    lng_min: float
    lng_max: float


def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def bounding_box(lat: float, lng: float, radius_meters: float) -> BoundingBox:
    """
    Coarse lat/lng box around a point.

    Uses the 111 km per degree approximation, with longitude degrees scaled by
    cos(latitude). The box is a superset of the radius, not an exact filter.
    """
    lat_delta = radius_meters / METERS_PER_DEGREE
    cos_lat = math.cos(math.radians(lat))
    # Degenerate at the poles: fall back to the full longitude range
    if abs(cos_lat) < 1e-12:
        lng_delta = 180.0
    else:
        lng_delta = min(180.0, radius_meters / (METERS_PER_DEGREE * abs(cos_lat)))

    return BoundingBox(
        lat_min=max(-90.0, lat - lat_delta),
        lat_max=min(90.0, lat + lat_delta),
        lng_min=lng - lng_delta,
        lng_max=lng + lng_delta,
    )
