"""
Ride endpoints
==============

POST /api/v1/rides/request          -- request a ride (201, matching is async)
GET  /api/v1/rides/{ride_id}        -- current status, driver once assigned
POST /api/v1/rides/{ride_id}/cancel -- cancel a ride that has not finished
GET  /api/v1/rides                  -- debug listing
"""

from fastapi import APIRouter, Depends, HTTPException, Request

from ridehail.api.dependencies import get_dispatcher
from ridehail.api.middleware import RATE_LIMIT, limiter
from ridehail.api.schemas import (
    CancelResponse,
    RideCreateRequest,
    RideListResponse,
    RideResponse,
)
from ridehail.domain.entities import InvalidStateTransition
from ridehail.domain.errors import RideNotFound
from ridehail.workers.dispatcher import Dispatcher

router = APIRouter(prefix="/rides", tags=["rides"])


@router.post(
    "/request",
    status_code=201,
    response_model=RideResponse,
    summary="Request a ride",
    responses={201: {"description": "Ride created in 'searching'; matching is async."}},
)
@limiter.limit(RATE_LIMIT)
async def request_ride(
    request: Request,
    body: RideCreateRequest,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    ride = await dispatcher.request_ride(
        body.pickup.to_domain(), body.destination.to_domain()
    )
    return RideResponse.from_ride(ride)


@router.get("", response_model=RideListResponse, summary="List all rides (debug)")
@limiter.limit(RATE_LIMIT)
async def list_rides(
    request: Request,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    rides = [RideResponse.from_ride(r) for r in dispatcher.rides.list_rides()]
    return RideListResponse(count=len(rides), rides=rides)


@router.get(
    "/{ride_id}",
    response_model=RideResponse,
    summary="Get ride status",
)
@limiter.limit(RATE_LIMIT)
async def get_ride(
    request: Request,
    ride_id: str,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    try:
        ride = dispatcher.get_ride(ride_id)
    except RideNotFound:
        raise HTTPException(status_code=404, detail="Ride not found")
    return RideResponse.from_ride(ride)


@router.post(
    "/{ride_id}/cancel",
    response_model=CancelResponse,
    summary="Cancel a ride",
    description=(
        "Stops matching or the trip simulation, frees the driver and marks "
        "the ride cancelled.  Finished rides cannot be cancelled (409)."
    ),
)
@limiter.limit(RATE_LIMIT)
async def cancel_ride(
    request: Request,
    ride_id: str,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    try:
        ride = await dispatcher.cancel_ride(ride_id)
    except RideNotFound:
        raise HTTPException(status_code=404, detail="Ride not found")
    except InvalidStateTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return CancelResponse(
        success=True,
        message="Ride cancelled successfully",
        ride=RideResponse.from_ride(ride),
    )
