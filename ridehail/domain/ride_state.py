"""
Rider-side view of a ride as a closed set of immutable states.

Each case is a frozen dataclass carrying only the data that is meaningful
in that phase; ``kind`` is the tag the state machine keys legality on.
Fields a case does not carry read as ``None`` through the base class, so
callers can ask any state for ``ride_id`` or ``driver`` without
type-switching.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import ClassVar, Optional

from .entities import DriverInfo, Location, RouteInfo
from .enums import RideStateKind
from .errors import ErrorKind, RideRequestError


_PAYLOAD_FIELDS = frozenset({"ride_id", "driver", "pickup", "destination", "eta"})


class RideState:
    kind: ClassVar[RideStateKind]

    ride_id: Optional[str]
    driver: Optional[DriverInfo]
    pickup: Optional[Location]
    destination: Optional[Location]
    eta: Optional[float]

    def __getattr__(self, name: str):
        # Only reached for attributes the concrete case does not define
        if name in _PAYLOAD_FIELDS:
            return None
        raise AttributeError(name)

    @property
    def is_active_ride(self) -> bool:
        return self.kind in _ACTIVE_KINDS

    @property
    def is_terminal(self) -> bool:
        return self.kind in (RideStateKind.IDLE, RideStateKind.RIDE_COMPLETED)

    @property
    def is_error(self) -> bool:
        return self.kind is RideStateKind.ERROR


@dataclass(frozen=True)
class Idle(RideState):
    kind = RideStateKind.IDLE


@dataclass(frozen=True)
class SelectingLocations(RideState):
    kind = RideStateKind.SELECTING_LOCATIONS

    pickup: Optional[Location] = None
    destination: Optional[Location] = None

    @property
    def is_complete(self) -> bool:
        return self.pickup is not None and self.destination is not None


@dataclass(frozen=True)
class RouteReady(RideState):
    kind = RideStateKind.ROUTE_READY

    pickup: Location
    destination: Location
    route: RouteInfo


@dataclass(frozen=True)
class SubmittingRequest(RideState):
    kind = RideStateKind.SUBMITTING_REQUEST

    pickup: Location
    destination: Location


@dataclass(frozen=True)
class SearchingForDriver(RideState):
    kind = RideStateKind.SEARCHING_FOR_DRIVER

    ride_id: str
    pickup: Location
    destination: Location


@dataclass(frozen=True)
class DriverAssigned(RideState):
    kind = RideStateKind.DRIVER_ASSIGNED

    ride_id: str
    driver: DriverInfo
    pickup: Location
    destination: Location


@dataclass(frozen=True)
class DriverEnRoute(RideState):
    kind = RideStateKind.DRIVER_EN_ROUTE

    ride_id: str
    driver: DriverInfo
    eta: float
    pickup: Location
    destination: Location


@dataclass(frozen=True)
class DriverArriving(RideState):
    kind = RideStateKind.DRIVER_ARRIVING

    ride_id: str
    driver: DriverInfo
    pickup: Location
    destination: Location


@dataclass(frozen=True)
class RideInProgress(RideState):
    kind = RideStateKind.RIDE_IN_PROGRESS

    ride_id: str
    driver: DriverInfo
    eta: float
    pickup: Location
    destination: Location


@dataclass(frozen=True)
class ApproachingDestination(RideState):
    kind = RideStateKind.APPROACHING_DESTINATION

    ride_id: str
    driver: DriverInfo
    pickup: Location
    destination: Location


@dataclass(frozen=True)
class RideCompleted(RideState):
    kind = RideStateKind.RIDE_COMPLETED

    ride_id: str
    driver: DriverInfo
    pickup: Location
    destination: Location


@dataclass(frozen=True)
class RideError(RideState):
    """Failure state.  Keeps the state it replaced so recovery is deterministic."""

    kind = RideStateKind.ERROR

    error: RideRequestError
    previous_state: Optional[RideState] = None

    @property
    def error_kind(self) -> ErrorKind:
        return self.error.kind

    @property
    def pickup(self) -> Optional[Location]:  # type: ignore[override]
        return self.previous_state.pickup if self.previous_state else None

    @property
    def destination(self) -> Optional[Location]:  # type: ignore[override]
        return self.previous_state.destination if self.previous_state else None

    @property
    def ride_id(self) -> Optional[str]:  # type: ignore[override]
        return self.previous_state.ride_id if self.previous_state else None


IDLE = Idle()

_ACTIVE_KINDS = frozenset(
    {
        RideStateKind.SEARCHING_FOR_DRIVER,
        RideStateKind.DRIVER_ASSIGNED,
        RideStateKind.DRIVER_EN_ROUTE,
        RideStateKind.DRIVER_ARRIVING,
        RideStateKind.RIDE_IN_PROGRESS,
        RideStateKind.APPROACHING_DESTINATION,
    }
)


def with_eta(state: RideState, eta: float) -> RideState:
    """Refresh the ETA on a state that carries one; other states pass through."""
    if isinstance(state, (DriverEnRoute, RideInProgress)):
        return replace(state, eta=eta)
    return state


def with_driver_location(state: RideState, location: Location) -> RideState:
    """Move the driver marker without changing the phase."""
    if state.driver is None or isinstance(state, RideError):
        return state
    return replace(state, driver=state.driver.at(location))


def build_ride_state(
    kind: RideStateKind,
    *,
    ride_id: str,
    pickup: Location,
    destination: Location,
    driver: Optional[DriverInfo],
    eta: Optional[float],
) -> Optional[RideState]:
    """Construct the server-driven phase *kind* from a ride snapshot.

    Returns ``None`` when the snapshot lacks what the case needs (a driver
    for any post-assignment phase).
    """
    if kind is RideStateKind.SEARCHING_FOR_DRIVER:
        return SearchingForDriver(ride_id, pickup, destination)
    if driver is None:
        return None
    if kind is RideStateKind.DRIVER_ASSIGNED:
        return DriverAssigned(ride_id, driver, pickup, destination)
    if kind is RideStateKind.DRIVER_EN_ROUTE:
        return DriverEnRoute(ride_id, driver, eta or 0.0, pickup, destination)
    if kind is RideStateKind.DRIVER_ARRIVING:
        return DriverArriving(ride_id, driver, pickup, destination)
    if kind is RideStateKind.RIDE_IN_PROGRESS:
        return RideInProgress(ride_id, driver, eta or 0.0, pickup, destination)
    if kind is RideStateKind.APPROACHING_DESTINATION:
        return ApproachingDestination(ride_id, driver, pickup, destination)
    if kind is RideStateKind.RIDE_COMPLETED:
        return RideCompleted(ride_id, driver, pickup, destination)
    return None
