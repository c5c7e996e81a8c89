"""Domain enumerations and state-transition rules."""

import enum


class RideStatus(str, enum.Enum):
    """Server-side ride status, as exchanged over the wire."""

    SEARCHING = "searching"
    ASSIGNED = "assigned"
    EN_ROUTE = "enRoute"
    ARRIVING = "arriving"
    IN_PROGRESS = "inProgress"
    APPROACHING_DESTINATION = "approachingDestination"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_DRIVERS_AVAILABLE = "noDriversAvailable"


# Server state machine: maps current status -> set of valid next statuses
RIDE_STATUS_TRANSITIONS: dict[RideStatus, set[RideStatus]] = {
    RideStatus.SEARCHING: {
        RideStatus.ASSIGNED,
        RideStatus.CANCELLED,
        RideStatus.NO_DRIVERS_AVAILABLE,
    },
    RideStatus.ASSIGNED: {
        RideStatus.EN_ROUTE,
        RideStatus.ARRIVING,
        RideStatus.CANCELLED,
    },
    RideStatus.EN_ROUTE: {RideStatus.ARRIVING, RideStatus.CANCELLED},
    RideStatus.ARRIVING: {RideStatus.IN_PROGRESS, RideStatus.CANCELLED},
    RideStatus.IN_PROGRESS: {
        RideStatus.APPROACHING_DESTINATION,
        RideStatus.COMPLETED,
        RideStatus.CANCELLED,
    },
    RideStatus.APPROACHING_DESTINATION: {
        RideStatus.COMPLETED,
        RideStatus.CANCELLED,
    },
    RideStatus.COMPLETED: set(),
    RideStatus.CANCELLED: set(),
    RideStatus.NO_DRIVERS_AVAILABLE: set(),
}

TERMINAL_RIDE_STATUSES = frozenset(
    status for status, nxt in RIDE_STATUS_TRANSITIONS.items() if not nxt
)


class RideStateKind(str, enum.Enum):
    """Tag of a rider-side ``RideState`` case."""

    IDLE = "idle"
    SELECTING_LOCATIONS = "selectingLocations"
    ROUTE_READY = "routeReady"
    SUBMITTING_REQUEST = "submittingRequest"
    SEARCHING_FOR_DRIVER = "searchingForDriver"
    DRIVER_ASSIGNED = "driverAssigned"
    DRIVER_EN_ROUTE = "driverEnRoute"
    DRIVER_ARRIVING = "driverArriving"
    RIDE_IN_PROGRESS = "rideInProgress"
    APPROACHING_DESTINATION = "approachingDestination"
    RIDE_COMPLETED = "rideCompleted"
    ERROR = "error"


_R = RideStateKind

# Rider state machine, keyed on the case tag only
RIDE_STATE_TRANSITIONS: dict[RideStateKind, set[RideStateKind]] = {
    _R.IDLE: {_R.SELECTING_LOCATIONS, _R.ERROR},
    _R.SELECTING_LOCATIONS: {
        _R.SELECTING_LOCATIONS,  # edit in place
        _R.ROUTE_READY,
        _R.IDLE,
        _R.ERROR,
    },
    _R.ROUTE_READY: {_R.SUBMITTING_REQUEST, _R.SELECTING_LOCATIONS, _R.ERROR},
    _R.SUBMITTING_REQUEST: {_R.SEARCHING_FOR_DRIVER, _R.ERROR},
    _R.SEARCHING_FOR_DRIVER: {_R.DRIVER_ASSIGNED, _R.IDLE, _R.ERROR},
    _R.DRIVER_ASSIGNED: {_R.DRIVER_EN_ROUTE, _R.IDLE, _R.ERROR},
    _R.DRIVER_EN_ROUTE: {_R.DRIVER_ARRIVING, _R.IDLE, _R.ERROR},
    _R.DRIVER_ARRIVING: {_R.RIDE_IN_PROGRESS, _R.IDLE, _R.ERROR},
    _R.RIDE_IN_PROGRESS: {
        _R.APPROACHING_DESTINATION,
        _R.RIDE_COMPLETED,
        _R.ERROR,
    },
    _R.APPROACHING_DESTINATION: {_R.RIDE_COMPLETED, _R.IDLE, _R.ERROR},
    _R.RIDE_COMPLETED: {_R.IDLE, _R.ERROR},
    _R.ERROR: {_R.IDLE, _R.SELECTING_LOCATIONS},
}

# Forward order of the server-driven phases, used to catch up on skipped polls
RIDE_PHASE_ORDER: tuple[RideStateKind, ...] = (
    _R.SEARCHING_FOR_DRIVER,
    _R.DRIVER_ASSIGNED,
    _R.DRIVER_EN_ROUTE,
    _R.DRIVER_ARRIVING,
    _R.RIDE_IN_PROGRESS,
    _R.APPROACHING_DESTINATION,
    _R.RIDE_COMPLETED,
)

STATUS_TO_RIDE_STATE: dict[str, RideStateKind] = {
    RideStatus.SEARCHING.value: _R.SEARCHING_FOR_DRIVER,
    RideStatus.ASSIGNED.value: _R.DRIVER_ASSIGNED,
    RideStatus.EN_ROUTE.value: _R.DRIVER_EN_ROUTE,
    RideStatus.ARRIVING.value: _R.DRIVER_ARRIVING,
    RideStatus.IN_PROGRESS.value: _R.RIDE_IN_PROGRESS,
    RideStatus.APPROACHING_DESTINATION.value: _R.APPROACHING_DESTINATION,
    "approaching": _R.APPROACHING_DESTINATION,
    RideStatus.COMPLETED.value: _R.RIDE_COMPLETED,
}


class DriverStateKind(str, enum.Enum):
    """Tag of a driver-side ``DriverState`` case."""

    OFFLINE = "offline"
    LOGGING_IN = "loggingIn"
    ONLINE = "online"
    RIDE_OFFERED = "rideOffered"
    HEADING_TO_PICKUP = "headingToPickup"
    ARRIVED_AT_PICKUP = "arrivedAtPickup"
    RIDE_IN_PROGRESS = "rideInProgress"
    APPROACHING_DESTINATION = "approachingDestination"
    RIDE_COMPLETED = "rideCompleted"
    ERROR = "error"


_D = DriverStateKind

DRIVER_STATE_TRANSITIONS: dict[DriverStateKind, set[DriverStateKind]] = {
    _D.OFFLINE: {_D.LOGGING_IN},
    _D.LOGGING_IN: {_D.ONLINE, _D.ERROR},
    _D.ONLINE: {_D.RIDE_OFFERED, _D.OFFLINE, _D.ERROR},
    _D.RIDE_OFFERED: {_D.HEADING_TO_PICKUP, _D.ONLINE, _D.ERROR},
    _D.HEADING_TO_PICKUP: {_D.ARRIVED_AT_PICKUP, _D.ONLINE, _D.ERROR},
    _D.ARRIVED_AT_PICKUP: {_D.RIDE_IN_PROGRESS, _D.ONLINE, _D.ERROR},
    _D.RIDE_IN_PROGRESS: {
        _D.APPROACHING_DESTINATION,
        _D.RIDE_COMPLETED,
        _D.ERROR,
    },
    _D.APPROACHING_DESTINATION: {_D.RIDE_COMPLETED, _D.ERROR},
    _D.RIDE_COMPLETED: {_D.ONLINE, _D.OFFLINE},
    _D.ERROR: {_D.OFFLINE, _D.ONLINE},
}


class DriverRideStatus(str, enum.Enum):
    """Progress reported by the driver app for an accepted ride."""

    ARRIVED = "arrived"
    PICKED_UP = "pickedUp"
    APPROACHING = "approaching"
    COMPLETED = "completed"


DRIVER_STATUS_TO_RIDE_STATUS: dict[DriverRideStatus, RideStatus] = {
    DriverRideStatus.ARRIVED: RideStatus.ARRIVING,
    DriverRideStatus.PICKED_UP: RideStatus.IN_PROGRESS,
    DriverRideStatus.APPROACHING: RideStatus.APPROACHING_DESTINATION,
    DriverRideStatus.COMPLETED: RideStatus.COMPLETED,
}


class VehicleType(str, enum.Enum):
    STANDARD = "Standard"
    PREMIUM = "Premium"
    XL = "XL"


class TripPhase(str, enum.Enum):
    TO_PICKUP = "toPickup"
    TO_DESTINATION = "toDestination"
