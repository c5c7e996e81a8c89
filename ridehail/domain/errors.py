"""
Error taxonomy shared by the rider flow, the driver flow and the API.

``RideRequestError`` is what the rider side shows to a person: every kind
carries a short description and, where one exists, a recovery hint.  The
plain exceptions below it are raised by the dispatcher and translated to
HTTP status codes by the routes.
"""

from __future__ import annotations

import enum
from typing import Optional


class ErrorKind(str, enum.Enum):
    LOCATION_PERMISSION_DENIED = "locationPermissionDenied"
    LOCATION_SERVICES_DISABLED = "locationServicesDisabled"
    LOCATION_UNAVAILABLE = "locationUnavailable"
    GEOCODING_FAILED = "geocodingFailed"
    ROUTE_CALCULATION_FAILED = "routeCalculationFailed"
    INVALID_PICKUP = "invalidPickup"
    INVALID_DESTINATION = "invalidDestination"
    NETWORK_UNAVAILABLE = "networkUnavailable"
    RIDE_REQUEST_FAILED = "rideRequestFailed"
    DISPATCH_NO_DRIVER_AVAILABLE = "dispatchNoDriverAvailable"
    ILLEGAL_TRANSITION = "illegalTransition"
    UNKNOWN = "unknown"


_DESCRIPTIONS: dict[ErrorKind, str] = {
    ErrorKind.LOCATION_PERMISSION_DENIED: "Location access is required to request a ride.",
    ErrorKind.LOCATION_SERVICES_DISABLED: "Location services are turned off.",
    ErrorKind.LOCATION_UNAVAILABLE: "Unable to determine your current location.",
    ErrorKind.GEOCODING_FAILED: "We couldn't find that address.",
    ErrorKind.ROUTE_CALCULATION_FAILED: "Unable to calculate a route between these locations.",
    ErrorKind.INVALID_PICKUP: "The pickup location is not valid.",
    ErrorKind.INVALID_DESTINATION: "The destination is not valid.",
    ErrorKind.NETWORK_UNAVAILABLE: "No internet connection.",
    ErrorKind.RIDE_REQUEST_FAILED: "Your ride request could not be completed.",
    ErrorKind.DISPATCH_NO_DRIVER_AVAILABLE: "No drivers are available right now.",
    ErrorKind.ILLEGAL_TRANSITION: "Something went wrong with your ride status.",
    ErrorKind.UNKNOWN: "An unexpected error occurred.",
}

_RECOVERY: dict[ErrorKind, str] = {
    ErrorKind.LOCATION_PERMISSION_DENIED: "Enable location access in Settings.",
    ErrorKind.LOCATION_SERVICES_DISABLED: "Turn on location services in Settings.",
    ErrorKind.LOCATION_UNAVAILABLE: "Move to an open area or enter your pickup manually.",
    ErrorKind.GEOCODING_FAILED: "Check the spelling or try a nearby landmark.",
    ErrorKind.ROUTE_CALCULATION_FAILED: "Try a different pickup or destination.",
    ErrorKind.INVALID_PICKUP: "Choose a different pickup location.",
    ErrorKind.INVALID_DESTINATION: "Choose a different destination.",
    ErrorKind.NETWORK_UNAVAILABLE: "Check your connection and try again.",
    ErrorKind.RIDE_REQUEST_FAILED: "Please try again in a moment.",
    ErrorKind.DISPATCH_NO_DRIVER_AVAILABLE: "Try again in a few minutes.",
    ErrorKind.ILLEGAL_TRANSITION: "Start a new ride request.",
}

# Errors fixed by editing the selected locations rather than starting over
LOCATION_ERRORS = frozenset(
    {
        ErrorKind.LOCATION_UNAVAILABLE,
        ErrorKind.GEOCODING_FAILED,
        ErrorKind.ROUTE_CALCULATION_FAILED,
        ErrorKind.INVALID_PICKUP,
        ErrorKind.INVALID_DESTINATION,
    }
)


class RideRequestError(Exception):
    """A rider-facing failure with a kind and an optional underlying cause."""

    def __init__(self, kind: ErrorKind, cause: Optional[BaseException] = None):
        self.kind = kind
        self.cause = cause
        super().__init__(self.description)

    @property
    def description(self) -> str:
        text = _DESCRIPTIONS[self.kind]
        if self.kind is ErrorKind.UNKNOWN and self.cause is not None:
            return f"{text} ({self.cause})"
        return text

    @property
    def recovery_suggestion(self) -> Optional[str]:
        return _RECOVERY.get(self.kind)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, RideRequestError) and other.kind is self.kind

    def __hash__(self) -> int:
        return hash(self.kind)

    def __repr__(self) -> str:
        return f"RideRequestError({self.kind.value})"


# ── Dispatcher-side exceptions ────────────────────────────────────────


class RideNotFound(Exception):
    pass


class DriverNotFound(Exception):
    pass


class OfferNotFound(Exception):
    """The offer expired, was already answered, or never existed."""


class DriverBusy(Exception):
    """The driver is attached to another ride or is not accepting rides."""
