# Geodesy helpers
# File: simulation/geo.py

import math

EARTH_RADIUS_M = 6371000  # meters


def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great circle distance in meters"""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dlat = phi2 - phi1
    dlng = math.radians(lng2 - lng1)

    a = math.sin(dlat / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlng / 2) ** 2
    c = 2 * math.asin(min(1.0, math.sqrt(a)))

    return EARTH_RADIUS_M * c


def initial_bearing(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Forward azimuth from point 1 to point 2, in radians (0 = north, clockwise)"""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dlng = math.radians(lng2 - lng1)

    y = math.sin(dlng) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dlng)

    return math.atan2(y, x)


def step_towards(lat: float, lng: float, bearing: float, distance: float,
                 reference_lat: float = None):
    """
    Move `distance` meters along `bearing` (radians) using a local flat-earth
    approximation. Longitude scaling uses `reference_lat` when given.
    """
    ref = lat if reference_lat is None else reference_lat
    lat_delta = math.degrees(distance / EARTH_RADIUS_M)
    lng_delta = lat_delta / math.cos(math.radians(ref))

    return lat + math.cos(bearing) * lat_delta, lng + math.sin(bearing) * lng_delta


def offset_position(lat: float, lng: float, north_m: float, east_m: float):
    """Position displaced by the given north/east offsets in meters"""
    lat_delta = math.degrees(north_m / EARTH_RADIUS_M)
    lng_delta = math.degrees(east_m / EARTH_RADIUS_M) / math.cos(math.radians(lat))
    return lat + lat_delta, lng + lng_delta


def ramp(current: float, target: float, rate: float, dt: float, snap: float = 1.0) -> float:
    """Approach `target` at `rate` units/s without overshoot; snap when within `snap`"""
    diff = target - current
    if abs(diff) <= snap:
        return target
    return current + math.copysign(min(abs(diff), rate * dt), diff)
