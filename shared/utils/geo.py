"""
shared/utils/geo.py
Great-circle helpers for provider matching.
"""

import math

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two (lat, lng) points in kilometres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def bounding_box(lat: float, lng: float, radius_km: float) -> tuple[float, float, float, float]:
    """
    Returns (min_lat, max_lat, min_lng, max_lng) enclosing a circle of radius_km.
    Coarse prefilter only; callers still apply haversine_km for the exact cut.
    """
    lat_delta = math.degrees(radius_km / EARTH_RADIUS_KM)
    min_lat = max(lat - lat_delta, -90.0)
    max_lat = min(lat + lat_delta, 90.0)

    cos_lat = math.cos(math.radians(lat))
    if cos_lat < 1e-6 or min_lat <= -90.0 or max_lat >= 90.0:
        # Near a pole every longitude is within reach
        return min_lat, max_lat, -180.0, 180.0

    lng_delta = math.degrees(radius_km / (EARTH_RADIUS_KM * cos_lat))
    min_lng, max_lng = lng - lng_delta, lng + lng_delta
    if min_lng < -180.0 or max_lng > 180.0:
        # Circle crosses the antimeridian; skip the longitude cut
        return min_lat, max_lat, -180.0, 180.0
    return min_lat, max_lat, min_lng, max_lng
