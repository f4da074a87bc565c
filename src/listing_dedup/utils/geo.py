"""Great-circle distance and bounding-box helpers."""

import math
from typing import Final, NamedTuple

EARTH_RADIUS_METERS: Final = 6371000.0

# Meters per degree of latitude on the haversine sphere
_METERS_PER_DEGREE_LAT: Final = EARTH_RADIUS_METERS * math.pi / 180

# Pads the box so float error never drops a point on the circle edge
_BOX_MARGIN: Final = 1.01


class BoundingBox(NamedTuple):
    """Latitude/longitude bounds used to prefilter before exact distances."""

    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate distance between two coordinates in meters.

    Args:
        lat1, lon1: First coordinate.
        lat2, lon2: Second coordinate.

    Returns:
        Distance in meters.
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c


def bounding_box(lat: float, lon: float, radius_meters: float) -> BoundingBox:
    """Return a box that fully contains the circle of ``radius_meters`` around a point.

    The box is a cheap SQL prefilter; callers still apply the exact
    haversine distance afterwards.
    """
    padded = radius_meters * _BOX_MARGIN
    delta_lat = padded / _METERS_PER_DEGREE_LAT
    cos_lat = max(math.cos(math.radians(lat)), 1e-6)
    delta_lon = padded / (_METERS_PER_DEGREE_LAT * cos_lat)
    return BoundingBox(
        min_lat=lat - delta_lat,
        max_lat=lat + delta_lat,
        min_lon=lon - delta_lon,
        max_lon=lon + delta_lon,
    )
