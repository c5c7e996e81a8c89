"""Driver-side duty lifecycle states and their payload value objects."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import ClassVar, Optional

from .entities import Location, utcnow
from .enums import DriverStateKind


# ── Payloads ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class DriverStats:
    online_time_s: float = 0.0
    completed_rides: int = 0
    total_earnings: float = 0.0
    acceptance_rate: float = 1.0
    rating: float = 5.0


@dataclass(frozen=True)
class PassengerInfo:
    name: str = "Passenger"
    rating: float = 4.9


@dataclass(frozen=True)
class RideOffer:
    ride_id: str
    pickup: Location
    destination: Location
    distance_m: float
    estimated_earnings: float
    expires_at: datetime
    simulated: bool = False
    passenger: PassengerInfo = field(default_factory=PassengerInfo)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def seconds_left(self, now: Optional[datetime] = None) -> float:
        return max(0.0, (self.expires_at - (now or utcnow())).total_seconds())


@dataclass(frozen=True)
class ActiveRide:
    ride_id: str
    pickup: Location
    destination: Location
    passenger: PassengerInfo
    driver_location: Optional[Location] = None
    eta_s: Optional[float] = None
    distance_to_target_m: Optional[float] = None
    estimated_earnings: float = 0.0
    started_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_offer(cls, offer: RideOffer, driver_location: Optional[Location]) -> ActiveRide:
        return cls(
            ride_id=offer.ride_id,
            pickup=offer.pickup,
            destination=offer.destination,
            passenger=offer.passenger,
            driver_location=driver_location,
            estimated_earnings=offer.estimated_earnings,
        )


@dataclass(frozen=True)
class RideSummary:
    ride_id: str
    pickup: Location
    destination: Location
    distance_m: float
    duration_s: float
    earnings: float
    completed_at: datetime = field(default_factory=utcnow)


# ── States ────────────────────────────────────────────────────────────

_PAYLOAD_FIELDS = frozenset({"stats", "ride", "offer", "summary"})

_ON_DUTY = frozenset(
    {
        DriverStateKind.ONLINE,
        DriverStateKind.RIDE_OFFERED,
        DriverStateKind.HEADING_TO_PICKUP,
        DriverStateKind.ARRIVED_AT_PICKUP,
        DriverStateKind.RIDE_IN_PROGRESS,
        DriverStateKind.APPROACHING_DESTINATION,
        DriverStateKind.RIDE_COMPLETED,
    }
)

_WITH_RIDE = frozenset(
    {
        DriverStateKind.HEADING_TO_PICKUP,
        DriverStateKind.ARRIVED_AT_PICKUP,
        DriverStateKind.RIDE_IN_PROGRESS,
        DriverStateKind.APPROACHING_DESTINATION,
    }
)


class DriverState:
    kind: ClassVar[DriverStateKind]
    description: ClassVar[str]

    stats: Optional[DriverStats]
    ride: Optional[ActiveRide]

    def __getattr__(self, name: str):
        if name in _PAYLOAD_FIELDS:
            return None
        raise AttributeError(name)

    @property
    def is_online(self) -> bool:
        return self.kind in _ON_DUTY

    @property
    def has_active_ride(self) -> bool:
        return self.kind in _WITH_RIDE

    @property
    def status_description(self) -> str:
        return self.description

    def with_stats(self, stats: DriverStats) -> DriverState:
        """Same case, fresh stats.  A refresh, not a transition."""
        if "stats" not in getattr(self, "__dataclass_fields__", {}):
            return self
        return replace(self, stats=stats)

    def with_ride(self, ride: ActiveRide) -> DriverState:
        if "ride" not in getattr(self, "__dataclass_fields__", {}):
            return self
        return replace(self, ride=ride)


@dataclass(frozen=True)
class Offline(DriverState):
    kind = DriverStateKind.OFFLINE
    description = "Offline"


@dataclass(frozen=True)
class LoggingIn(DriverState):
    kind = DriverStateKind.LOGGING_IN
    description = "Signing in..."


@dataclass(frozen=True)
class Online(DriverState):
    kind = DriverStateKind.ONLINE
    description = "Online - waiting for rides"

    stats: DriverStats


@dataclass(frozen=True)
class RideOffered(DriverState):
    kind = DriverStateKind.RIDE_OFFERED
    description = "New ride request"

    offer: RideOffer
    stats: DriverStats


@dataclass(frozen=True)
class HeadingToPickup(DriverState):
    kind = DriverStateKind.HEADING_TO_PICKUP
    description = "Heading to pickup"

    ride: ActiveRide
    stats: DriverStats


@dataclass(frozen=True)
class ArrivedAtPickup(DriverState):
    kind = DriverStateKind.ARRIVED_AT_PICKUP
    description = "Waiting for passenger"

    ride: ActiveRide
    stats: DriverStats


@dataclass(frozen=True)
class RideInProgress(DriverState):
    kind = DriverStateKind.RIDE_IN_PROGRESS
    description = "Ride in progress"

    ride: ActiveRide
    stats: DriverStats


@dataclass(frozen=True)
class ApproachingDestination(DriverState):
    kind = DriverStateKind.APPROACHING_DESTINATION
    description = "Approaching destination"

    ride: ActiveRide
    stats: DriverStats


@dataclass(frozen=True)
class RideCompleted(DriverState):
    kind = DriverStateKind.RIDE_COMPLETED
    description = "Ride completed"

    summary: RideSummary
    stats: DriverStats


@dataclass(frozen=True)
class DriverError(DriverState):
    kind = DriverStateKind.ERROR
    description = "Error"

    message: str
    previous_state: Optional[DriverState] = None

    @property
    def status_description(self) -> str:
        return f"Error: {self.message}"

    @property
    def stats(self) -> Optional[DriverStats]:  # type: ignore[override]
        return self.previous_state.stats if self.previous_state else None


OFFLINE = Offline()
LOGGING_IN = LoggingIn()
