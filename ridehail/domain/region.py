"""
Static geography for the simulated service area (San Francisco).

Drivers spawn inside weighted zones so the pool covers the city the way
real supply does: dense downtown, thinner at the edges.  The landmark list
doubles as the gazetteer used by the bundled geocoder and as the source of
random trips for simulated ride offers.
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from .distance import random_point_in_radius
from .entities import Location
from .enums import VehicleType


@dataclass(frozen=True)
class SpawnZone:
    name: str
    lat: float
    lng: float
    weight: float
    radius_m: float


SPAWN_ZONES: tuple[SpawnZone, ...] = (
    SpawnZone("downtown", 37.7879, -122.4074, 0.25, 1500),
    SpawnZone("soma", 37.7785, -122.3950, 0.20, 1200),
    SpawnZone("mission", 37.7599, -122.4148, 0.15, 1500),
    SpawnZone("marina", 37.8025, -122.4382, 0.10, 1000),
    SpawnZone("richmond", 37.7800, -122.4700, 0.10, 1500),
    SpawnZone("sunset", 37.7600, -122.4800, 0.10, 1500),
    SpawnZone("airport", 37.6213, -122.3790, 0.10, 2000),
)

LANDMARKS: tuple[Location, ...] = (
    Location(37.7879, -122.4074, "Union Square"),
    Location(37.7749, -122.4194, "Civic Center"),
    Location(37.7756, -122.4193, "City Hall"),
    Location(37.7952, -122.4028, "Transamerica Pyramid"),
    Location(37.7897, -122.3969, "Salesforce Tower"),
    Location(37.7941, -122.3951, "Embarcadero Center"),
    Location(37.7955, -122.3937, "Ferry Building"),
    Location(37.7786, -122.3893, "Oracle Park"),
    Location(37.7680, -122.3875, "Chase Center"),
    Location(37.7599, -122.4148, "Mission Dolores"),
    Location(37.7692, -122.4481, "Haight-Ashbury"),
    Location(37.7609, -122.4350, "Castro District"),
    Location(37.8021, -122.4186, "Russian Hill"),
    Location(37.7989, -122.4269, "Pacific Heights"),
    Location(37.8080, -122.4177, "Fisherman's Wharf"),
    Location(37.8024, -122.4058, "Pier 39"),
    Location(37.8022, -122.4060, "Coit Tower"),
    Location(37.7941, -122.4078, "Chinatown"),
    Location(37.7989, -122.4117, "North Beach"),
    Location(37.8025, -122.4382, "Palace of Fine Arts"),
    Location(37.8199, -122.4783, "Golden Gate Bridge"),
    Location(37.7699, -122.4661, "California Academy of Sciences"),
    Location(37.7694, -122.4862, "Ocean Beach"),
    Location(37.6213, -122.3790, "San Francisco International Airport"),
)

DRIVER_NAMES: tuple[str, ...] = (
    "Michael Chen",
    "Sarah Johnson",
    "David Martinez",
    "Emily Rodriguez",
    "James Wilson",
    "Maria Garcia",
    "Robert Taylor",
    "Jennifer Lee",
    "William Brown",
    "Lisa Anderson",
    "Kevin Nguyen",
    "Priya Patel",
    "Carlos Santos",
    "Yuki Tanaka",
    "Omar Hassan",
    "Sofia Kowalski",
    "Andre Jackson",
    "Mei Lin Wong",
    "Diego Fernandez",
    "Aisha Mohammed",
)

# 4:2:1 mix, cycled over the pool
VEHICLE_MIX: tuple[VehicleType, ...] = (
    (VehicleType.STANDARD,) * 4 + (VehicleType.PREMIUM,) * 2 + (VehicleType.XL,)
)

VEHICLE_MODELS: dict[VehicleType, str] = {
    VehicleType.STANDARD: "Toyota Camry",
    VehicleType.PREMIUM: "Tesla Model S",
    VehicleType.XL: "Honda Odyssey",
}


def pick_zone(rng: random.Random | None = None) -> SpawnZone:
    """Weighted random zone selection."""
    rng = rng or random
    return rng.choices(SPAWN_ZONES, weights=[z.weight for z in SPAWN_ZONES])[0]


def random_spawn_location(rng: random.Random | None = None) -> Location:
    zone = pick_zone(rng)
    lat, lng = random_point_in_radius(zone.lat, zone.lng, zone.radius_m, rng)
    return Location(lat, lng)


def random_trip(rng: random.Random | None = None) -> tuple[Location, Location]:
    """Two distinct landmarks, used for simulated offers."""
    rng = rng or random
    pickup, destination = rng.sample(LANDMARKS, 2)
    return pickup, destination


def license_plate(index: int) -> str:
    return f"7RH{index:03d}"
