"""Great-circle distance helpers."""

import math

from streetly.models.geo import Coordinate

EARTH_RADIUS_M = 6_371_000
FEET_PER_METER = 3.28084
METERS_PER_DEGREE_LAT = EARTH_RADIUS_M * math.pi / 180


def haversine_meters(a: Coordinate, b: Coordinate) -> float:
    """Return the great-circle distance between two points in meters."""
    phi1, phi2 = math.radians(a.latitude), math.radians(b.latitude)
    dphi = math.radians(b.latitude - a.latitude)
    dlambda = math.radians(b.longitude - a.longitude)
    h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def distance_feet(a: Coordinate, b: Coordinate) -> float:
    return haversine_meters(a, b) * FEET_PER_METER


def feet_to_meters(feet: float) -> float:
    return feet / FEET_PER_METER
