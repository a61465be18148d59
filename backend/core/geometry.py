"""
Geospatial utilities
"""

import math
from typing import Protocol

EARTH_RADIUS_M = 6_371_000.0  # mean Earth radius


class Coordinate(Protocol):
    latitude: float
    longitude: float


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two lat/lon points (degrees)"""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    # Rounding can push a past 1 for near-antipodal points
    a = min(1.0, max(0.0, a))
    return EARTH_RADIUS_M * 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))


def calculate_distance(a: Coordinate, b: Coordinate) -> float:
    """Distance in meters between two objects exposing latitude/longitude"""
    return haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)


def is_within_radius(
    lat: float,
    lon: float,
    center_lat: float,
    center_lon: float,
    radius_m: float,
) -> bool:
    """Check whether a point is inside or on the boundary of a circular geofence"""
    return haversine_m(lat, lon, center_lat, center_lon) <= radius_m
