"""
Great-circle distance between two coordinates.

Uses the haversine formula on a spherical Earth:

    a = sin²(Δφ / 2) + cos(φ₁) · cos(φ₂) · sin²(Δλ / 2)
    c = 2 · atan2(√a, √(1 − a))
    d = R · c

with R = 6371 km.  Ranking fixtures depend on this exact method and
radius, so do not swap in an ellipsoidal formula here.
"""

from __future__ import annotations

import math

from pulseresq.models import Coordinate

EARTH_RADIUS_KM: float = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in kilometres between two (lat, lon) points in degrees."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    )
    # Rounding can push a fractionally above 1 for near-antipodal points.
    a = min(1.0, max(0.0, a))
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def distance_km(origin: Coordinate, target: Coordinate) -> float:
    """Distance in kilometres between two ``Coordinate`` objects."""
    return haversine_km(
        origin.latitude, origin.longitude, target.latitude, target.longitude
    )
