"""
Domain entities with business logic.

Patterns used
-------------
- **State Pattern** on ``Ride``: enforces valid server-side lifecycle
  transitions (searching -> assigned -> enRoute -> arriving -> inProgress
  -> approachingDestination -> completed | cancelled).
- ``Driver`` tracks the one ride it may be attached to; the pool that owns
  drivers (``DriverPool``) is the only writer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .distance import haversine_m
from .enums import RIDE_STATUS_TRANSITIONS, RideStatus, VehicleType


class InvalidStateTransition(Exception):
    """Raised when a ride status change violates the state machine."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Location:
    lat: float
    lng: float
    address: Optional[str] = None

    def distance_to(self, other: Location) -> float:
        """Great-circle distance in meters."""
        return haversine_m(self.lat, self.lng, other.lat, other.lng)

    def without_address(self) -> Location:
        return Location(self.lat, self.lng)


@dataclass(frozen=True)
class RouteInfo:
    distance_m: float
    duration_s: float
    polyline: str = ""


@dataclass(frozen=True)
class DriverInfo:
    """What a rider gets to see about the assigned driver."""

    id: str
    name: str
    rating: float
    vehicle_type: str = VehicleType.STANDARD.value
    vehicle_model: str = ""
    license_plate: str = ""
    location: Optional[Location] = None

    def at(self, location: Location) -> DriverInfo:
        return DriverInfo(
            id=self.id,
            name=self.name,
            rating=self.rating,
            vehicle_type=self.vehicle_type,
            vehicle_model=self.vehicle_model,
            license_plate=self.license_plate,
            location=location,
        )


# ── Entities ──────────────────────────────────────────────────────────


@dataclass
class Driver:
    id: str
    name: str
    location: Location
    vehicle_type: VehicleType = VehicleType.STANDARD
    vehicle_model: str = "Toyota Camry"
    license_plate: str = ""
    rating: float = 4.8
    available: bool = True
    current_ride_id: Optional[str] = None

    def assign_ride(self, ride_id: str) -> None:
        self.available = False
        self.current_ride_id = ride_id

    def complete_ride(self) -> None:
        self.available = True
        self.current_ride_id = None

    def update_location(self, location: Location) -> None:
        self.location = location.without_address()

    def info(self) -> DriverInfo:
        return DriverInfo(
            id=self.id,
            name=self.name,
            rating=self.rating,
            vehicle_type=self.vehicle_type.value,
            vehicle_model=self.vehicle_model,
            license_plate=self.license_plate,
            location=self.location,
        )


@dataclass
class Ride:
    id: str
    pickup: Location
    destination: Location
    status: RideStatus = RideStatus.SEARCHING
    driver: Optional[Driver] = None
    estimated_arrival: Optional[float] = None  # seconds
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 1
    status_history: list[RideStatus] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.status_history:
            self.status_history.append(self.status)

    @property
    def is_terminal(self) -> bool:
        return not RIDE_STATUS_TRANSITIONS.get(self.status)

    def can_transition_to(self, new_status: RideStatus) -> bool:
        return new_status in RIDE_STATUS_TRANSITIONS.get(self.status, set())

    def transition_to(self, new_status: RideStatus) -> None:
        """Move to *new_status* if the transition is legal, else raise."""
        if not self.can_transition_to(new_status):
            raise InvalidStateTransition(
                f"Cannot transition from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        self.status_history.append(new_status)
        self.touch()

    def assign_driver(self, driver: Driver, estimated_arrival: float) -> None:
        self.transition_to(RideStatus.ASSIGNED)
        self.driver = driver
        self.estimated_arrival = estimated_arrival

    def touch(self) -> None:
        self.version += 1
        self.updated_at = utcnow()
