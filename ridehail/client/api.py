"""Typed clients for the rider and driver endpoints.

Responses are validated with the same pydantic schemas the server emits;
a mismatch surfaces as a terminal ``DecodeError``.
"""

from __future__ import annotations

from typing import Any, Optional, TypeVar

from pydantic import BaseModel, ValidationError

from ridehail.api.schemas import (
    AcceptResponse,
    CancelResponse,
    DriverListResponse,
    DriverLoginResponse,
    LocationSchema,
    LogoutResponse,
    OfferSchema,
    OffersResponse,
    RejectResponse,
    RideResponse,
    RideStatusUpdateResponse,
    StatsResponse,
)
from ridehail.domain.entities import Location
from ridehail.domain.enums import DriverRideStatus

from ridehail.client.transport import DecodeError, TransportClient

M = TypeVar("M", bound=BaseModel)


def parse(model: type[M], payload: Any) -> M:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise DecodeError(f"unexpected {model.__name__} payload: {exc.error_count()} errors") from exc


def _location(location: Location) -> dict[str, Any]:
    return LocationSchema.from_domain(location).to_wire()


class RideAPIClient:
    def __init__(self, transport: TransportClient):
        self.transport = transport

    async def request_ride(self, pickup: Location, destination: Location) -> RideResponse:
        payload = await self.transport.send(
            "POST",
            "/rides/request",
            json={"pickup": _location(pickup), "destination": _location(destination)},
        )
        return parse(RideResponse, payload)

    async def get_ride(self, ride_id: str) -> RideResponse:
        return parse(RideResponse, await self.transport.send("GET", f"/rides/{ride_id}"))

    async def cancel_ride(self, ride_id: str) -> CancelResponse:
        return parse(
            CancelResponse, await self.transport.send("POST", f"/rides/{ride_id}/cancel")
        )

    async def list_drivers(self) -> DriverListResponse:
        return parse(DriverListResponse, await self.transport.send("GET", "/drivers"))


class DriverAPIClient:
    def __init__(self, transport: TransportClient):
        self.transport = transport

    async def login(
        self, driver_id: str, location: Optional[Location] = None
    ) -> DriverLoginResponse:
        body: dict[str, Any] = {"driverId": driver_id}
        if location is not None:
            body["location"] = _location(location)
        return parse(
            DriverLoginResponse, await self.transport.send("POST", "/drivers/login", json=body)
        )

    async def logout(self, driver_id: str) -> LogoutResponse:
        return parse(
            LogoutResponse, await self.transport.send("POST", f"/drivers/{driver_id}/logout")
        )

    async def set_availability(self, driver_id: str, available: bool) -> None:
        await self.transport.send(
            "PUT", f"/drivers/{driver_id}/availability", json={"available": available}
        )

    async def update_location(self, driver_id: str, location: Location) -> None:
        await self.transport.send(
            "PUT", f"/drivers/{driver_id}/location", json=_location(location)
        )

    async def get_offer(self, driver_id: str) -> Optional[OfferSchema]:
        response = parse(
            OffersResponse, await self.transport.send("GET", f"/drivers/{driver_id}/offers")
        )
        return response.offer if response.has_offer else None

    async def accept(self, driver_id: str, ride_id: str) -> AcceptResponse:
        return parse(
            AcceptResponse,
            await self.transport.send("POST", f"/drivers/{driver_id}/rides/{ride_id}/accept"),
        )

    async def reject(self, driver_id: str, ride_id: str) -> RejectResponse:
        return parse(
            RejectResponse,
            await self.transport.send("POST", f"/drivers/{driver_id}/rides/{ride_id}/reject"),
        )

    async def update_ride_status(
        self, driver_id: str, ride_id: str, status: DriverRideStatus
    ) -> RideStatusUpdateResponse:
        return parse(
            RideStatusUpdateResponse,
            await self.transport.send(
                "PUT",
                f"/drivers/{driver_id}/rides/{ride_id}/status",
                json={"status": status.value},
            ),
        )

    async def get_stats(self, driver_id: str) -> StatsResponse:
        return parse(
            StatsResponse, await self.transport.send("GET", f"/drivers/{driver_id}/stats")
        )
