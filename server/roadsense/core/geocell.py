"""Spatial cell keys and distance helpers.

Detections are clustered by geohash: points whose geohash strings share the
same prefix of length ``precision`` fall in the same cell. At precision 7 a
cell is roughly 153m x 153m.
"""

from __future__ import annotations

import math

import pygeohash

DEFAULT_PRECISION = 7

# Earth radius in meters (for Haversine).
_EARTH_R = 6_371_000.0


def encode_geohash(lat: float, lon: float, precision: int = DEFAULT_PRECISION) -> str:
    if not -90.0 <= lat <= 90.0 or not -180.0 <= lon <= 180.0:
        raise ValueError(f"coordinates out of range: {lat}, {lon}")
    if precision < 1:
        raise ValueError("precision must be >= 1")
    return pygeohash.encode(lat, lon, precision=precision)


def cell_key(lat: float, lon: float, precision: int = DEFAULT_PRECISION) -> str:
    return encode_geohash(lat, lon, precision)


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two points."""
    rlat1, rlat2 = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlon / 2) ** 2
    return 2 * _EARTH_R * math.asin(math.sqrt(a))
