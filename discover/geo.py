"""Geospatial helpers."""
from __future__ import annotations

import math
from typing import Iterable

from .models import Anchor, Coordinate

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lng2 - lng1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def distance_km(a: Coordinate, b: Coordinate) -> float:
    return haversine_km(a.lat, a.lng, b.lat, b.lng)


def min_distance_km_to_anchors(anchors: Iterable[Anchor], location: Coordinate) -> float:
    best = math.inf
    for anchor in anchors:
        dist = distance_km(anchor.location, location)
        if dist < best:
            best = dist
    return best
