# app/utils/geofence.py

from math import atan2, cos, isfinite, radians, sin, sqrt

EARTH_RADIUS_M = 6371000


def haversine_dist(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    φ1, φ2 = radians(lat1), radians(lat2)
    Δφ = radians(lat2 - lat1)
    Δλ = radians(lng2 - lng1)

    a = sin(Δφ/2)**2 + cos(φ1) * cos(φ2) * sin(Δλ/2)**2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return EARTH_RADIUS_M * c


def is_valid_coordinate_pair(lat, lng) -> bool:
    # bool is an int subclass; a JSON `true` is not a coordinate
    for value in (lat, lng):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        if not isfinite(value):
            return False
    return -90 <= lat <= 90 and -180 <= lng <= 180
