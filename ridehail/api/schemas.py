"""Pydantic request / response schemas for the REST API and the ride stream.

Field names are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from ridehail.domain.driver_state import PassengerInfo, RideOffer
from ridehail.domain.entities import Driver, DriverInfo, Location, Ride
from ridehail.domain.enums import DriverRideStatus

_CAMEL = {"alias_generator": to_camel, "populate_by_name": True}


class WireModel(BaseModel):
    model_config = _CAMEL

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# ── Shared ────────────────────────────────────────────────────────────


class LocationSchema(WireModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    address: Optional[str] = None

    @classmethod
    def from_domain(cls, location: Location) -> LocationSchema:
        return cls(lat=location.lat, lng=location.lng, address=location.address)

    def to_domain(self) -> Location:
        return Location(self.lat, self.lng, self.address)


class DriverSchema(WireModel):
    id: str
    name: str
    rating: float
    vehicle_type: str
    vehicle_model: str = ""
    license_plate: str = ""
    location: Optional[LocationSchema] = None
    available: Optional[bool] = None

    @classmethod
    def from_driver(cls, driver: Driver) -> DriverSchema:
        return cls(
            id=driver.id,
            name=driver.name,
            rating=driver.rating,
            vehicle_type=driver.vehicle_type.value,
            vehicle_model=driver.vehicle_model,
            license_plate=driver.license_plate,
            location=LocationSchema.from_domain(driver.location),
            available=driver.available,
        )

    def to_info(self) -> DriverInfo:
        return DriverInfo(
            id=self.id,
            name=self.name,
            rating=self.rating,
            vehicle_type=self.vehicle_type,
            vehicle_model=self.vehicle_model,
            license_plate=self.license_plate,
            location=self.location.to_domain() if self.location else None,
        )


# ── Rides ─────────────────────────────────────────────────────────────


class RideCreateRequest(WireModel):
    pickup: LocationSchema
    destination: LocationSchema


class RideResponse(WireModel):
    ride_id: str
    status: str
    pickup: LocationSchema
    destination: LocationSchema
    driver: Optional[DriverSchema] = None
    estimated_arrival: Optional[float] = None
    created_at: datetime
    updated_at: datetime
    version: int = 0

    @classmethod
    def from_ride(cls, ride: Ride) -> RideResponse:
        return cls(
            ride_id=ride.id,
            status=ride.status.value,
            pickup=LocationSchema.from_domain(ride.pickup),
            destination=LocationSchema.from_domain(ride.destination),
            driver=DriverSchema.from_driver(ride.driver) if ride.driver else None,
            estimated_arrival=ride.estimated_arrival,
            created_at=ride.created_at,
            updated_at=ride.updated_at,
            version=ride.version,
        )


class CancelResponse(WireModel):
    success: bool
    message: str
    ride: RideResponse


class RideListResponse(WireModel):
    count: int
    rides: list[RideResponse]


# ── Drivers ───────────────────────────────────────────────────────────


class DriverListResponse(WireModel):
    count: int
    available: int
    drivers: list[DriverSchema]


class DriverLoginRequest(WireModel):
    driver_id: str = Field(..., min_length=1)
    location: Optional[LocationSchema] = None


class SessionSchema(WireModel):
    login_time: datetime
    total_earnings: float
    completed_rides: int


class DriverLoginResponse(WireModel):
    success: bool = True
    driver: DriverSchema
    session: SessionSchema


class SessionSummary(WireModel):
    duration_s: float
    earnings: float
    rides_completed: int


class LogoutResponse(WireModel):
    success: bool = True
    message: str = "Logged out successfully"
    session_summary: Optional[SessionSummary] = None


class AvailabilityRequest(WireModel):
    available: bool


class DriverResponse(WireModel):
    success: bool = True
    driver: DriverSchema


class LocationUpdateResponse(WireModel):
    success: bool = True
    location: LocationSchema


class PassengerSchema(WireModel):
    name: str
    rating: float

    def to_domain(self) -> PassengerInfo:
        return PassengerInfo(self.name, self.rating)


class OfferSchema(WireModel):
    ride_id: str
    pickup: LocationSchema
    destination: LocationSchema
    distance: float  # meters
    estimated_earnings: float
    expires_at: datetime
    simulated: bool = False
    passenger: Optional[PassengerSchema] = None

    @classmethod
    def from_offer(cls, offer: RideOffer) -> OfferSchema:
        return cls(
            ride_id=offer.ride_id,
            pickup=LocationSchema.from_domain(offer.pickup),
            destination=LocationSchema.from_domain(offer.destination),
            distance=offer.distance_m,
            estimated_earnings=offer.estimated_earnings,
            expires_at=offer.expires_at,
            simulated=offer.simulated,
            passenger=PassengerSchema(
                name=offer.passenger.name, rating=offer.passenger.rating
            ),
        )

    def to_domain(self) -> RideOffer:
        return RideOffer(
            ride_id=self.ride_id,
            pickup=self.pickup.to_domain(),
            destination=self.destination.to_domain(),
            distance_m=self.distance,
            estimated_earnings=self.estimated_earnings,
            expires_at=self.expires_at,
            simulated=self.simulated,
            passenger=self.passenger.to_domain() if self.passenger else PassengerInfo(),
        )


class OffersResponse(WireModel):
    has_offer: bool
    offer: Optional[OfferSchema] = None


class AcceptResponse(WireModel):
    success: bool = True
    message: str = "Ride accepted"
    ride_id: str
    driver: DriverSchema
    ride: Optional[OfferSchema] = None


class RejectResponse(WireModel):
    success: bool = True
    message: str = "Ride rejected"
    ride_id: str


class RideStatusUpdateRequest(WireModel):
    status: DriverRideStatus


class RideStatusUpdateResponse(WireModel):
    success: bool = True
    status: DriverRideStatus
    ride_id: str
    driver: DriverSchema


class StatsSchema(WireModel):
    online_time: float  # seconds
    completed_rides: int
    total_earnings: float
    acceptance_rate: float
    rating: float


class StatsResponse(WireModel):
    driver: DriverSchema
    stats: StatsSchema


class DriverDetailResponse(WireModel):
    driver: DriverSchema
    session_active: bool
    login_time: Optional[datetime] = None


# ── Stream ────────────────────────────────────────────────────────────


class PositionDriver(WireModel):
    id: str
    location: LocationSchema
    bearing: float


class DriverPositionData(WireModel):
    ride_id: str
    driver: PositionDriver
    status: str
    phase: str
    distance_remaining: float  # meters
    progress: float


class StreamMessage(WireModel):
    type: str
    ride_id: Optional[str] = None
    data: Optional[dict[str, Any]] = None
    message: Optional[str] = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


# ── Admin ─────────────────────────────────────────────────────────────


class PoolHealth(WireModel):
    total: int
    available: int


class HealthResponse(WireModel):
    status: str = "ok"
    drivers: Optional[PoolHealth] = None


class ErrorResponse(WireModel):
    detail: str
