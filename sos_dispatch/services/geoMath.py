"""
Great-circle distance on a spherical Earth.

Coordinates are ``(lat, lng)`` pairs in decimal degrees.
"""

from __future__ import annotations

import math
from typing import Final

EARTH_RADIUS_KM: Final[float] = 6371.0

Coordinates = tuple[float, float]


def distance_km(a: Coordinates, b: Coordinates) -> float:
    """Haversine distance between two points, in kilometres.

    Symmetric, and exactly zero for identical points.
    """
    lat1, lng1 = float(a[0]), float(a[1])
    lat2, lng2 = float(b[0]), float(b[1])

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    h = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    # Rounding can push h a hair above 1 for antipodal points
    h = min(1.0, h)
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))


def is_valid_location(lat: float, lng: float) -> bool:
    """True when both values are finite and within WGS84 bounds."""
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0
