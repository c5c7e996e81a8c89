"""
Geo helpers: Haversine distance, bearing, interpolation and ETA.

Assumption
----------
We use great-circle (Haversine) distance instead of a real routing engine
(OSRM / Google Maps) so the dispatcher and simulator stay self-contained
and runnable without external API keys.  Route geometry for display comes
from the pluggable ``RouteProvider`` on the client side.

Complexity: O(1) per call.
"""

import math
import random

EARTH_RADIUS_M = 6_371_000.0
METERS_PER_DEGREE = 111_320.0  # rough, good enough for spawn jitter


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Return the great-circle distance in **meters** between two points."""
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(min(1.0, a)))


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    return haversine_m(lat1, lng1, lat2, lng2) / 1000.0


def bearing_deg(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Initial compass bearing from point 1 to point 2, in [0, 360)."""
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlng = math.radians(lng2 - lng1)
    y = math.sin(dlng) * math.cos(lat2_r)
    x = math.cos(lat1_r) * math.sin(lat2_r) - math.sin(lat1_r) * math.cos(
        lat2_r
    ) * math.cos(dlng)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def interpolate(
    lat1: float, lng1: float, lat2: float, lng2: float, progress: float
) -> tuple[float, float]:
    """Linear interpolation in lat/lng space; *progress* is clamped to [0, 1]."""
    p = min(1.0, max(0.0, progress))
    return lat1 + (lat2 - lat1) * p, lng1 + (lng2 - lng1) * p


def eta_seconds(distance_m: float, average_speed_kmh: float = 40.0) -> float:
    """Travel time for *distance_m* at a constant average city speed."""
    speed_ms = average_speed_kmh * 1000.0 / 3600.0
    return round(distance_m / speed_ms)


def random_point_in_radius(
    lat: float,
    lng: float,
    radius_m: float,
    rng: random.Random | None = None,
) -> tuple[float, float]:
    """Uniform-angle random point within *radius_m* of a centre."""
    rng = rng or random
    radius_deg = radius_m / METERS_PER_DEGREE
    angle = rng.random() * 2 * math.pi
    distance = rng.random() * radius_deg
    return lat + distance * math.cos(angle), lng + distance * math.sin(angle)
