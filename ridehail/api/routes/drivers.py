"""
Driver endpoints
================

GET  /api/v1/drivers                                  -- debug listing of the pool
POST /api/v1/drivers/login                            -- start a driver-app session
POST /api/v1/drivers/{driver_id}/logout               -- end the session
PUT  /api/v1/drivers/{driver_id}/availability         -- go on / off duty
PUT  /api/v1/drivers/{driver_id}/location             -- report position
GET  /api/v1/drivers/{driver_id}/offers               -- pending offer, if any
POST /api/v1/drivers/{driver_id}/rides/{ride_id}/accept
POST /api/v1/drivers/{driver_id}/rides/{ride_id}/reject
PUT  /api/v1/drivers/{driver_id}/rides/{ride_id}/status -- arrived / pickedUp / approaching / completed
GET  /api/v1/drivers/{driver_id}/stats
GET  /api/v1/drivers/{driver_id}
"""

from fastapi import APIRouter, Depends, HTTPException, Request

from ridehail.api.dependencies import get_dispatcher
from ridehail.api.middleware import RATE_LIMIT, limiter
from ridehail.api.schemas import (
    AcceptResponse,
    AvailabilityRequest,
    DriverDetailResponse,
    DriverListResponse,
    DriverLoginRequest,
    DriverLoginResponse,
    DriverResponse,
    DriverSchema,
    LocationSchema,
    LocationUpdateResponse,
    LogoutResponse,
    OfferSchema,
    OffersResponse,
    RejectResponse,
    RideStatusUpdateRequest,
    RideStatusUpdateResponse,
    SessionSchema,
    SessionSummary,
    StatsResponse,
    StatsSchema,
)
from ridehail.domain.entities import InvalidStateTransition
from ridehail.domain.errors import DriverBusy, DriverNotFound, OfferNotFound, RideNotFound
from ridehail.workers.dispatcher import Dispatcher

router = APIRouter(prefix="/drivers", tags=["drivers"])


def _driver_or_404(dispatcher: Dispatcher, driver_id: str):
    try:
        return dispatcher.pool.get(driver_id)
    except DriverNotFound:
        raise HTTPException(status_code=404, detail="Driver not found")


@router.get("", response_model=DriverListResponse, summary="List the driver pool (debug)")
@limiter.limit(RATE_LIMIT)
async def list_drivers(
    request: Request,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    drivers = [DriverSchema.from_driver(d) for d in dispatcher.pool.all()]
    return DriverListResponse(
        count=len(drivers),
        available=dispatcher.pool.count_available(),
        drivers=drivers,
    )


@router.post("/login", response_model=DriverLoginResponse, summary="Driver login")
@limiter.limit(RATE_LIMIT)
async def login(
    request: Request,
    body: DriverLoginRequest,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    location = body.location.to_domain() if body.location else None
    try:
        session = await dispatcher.sessions.login(body.driver_id, location)
    except DriverNotFound:
        raise HTTPException(
            status_code=404, detail=f"No driver found with ID: {body.driver_id}"
        )
    return DriverLoginResponse(
        driver=DriverSchema.from_driver(dispatcher.pool.get(body.driver_id)),
        session=SessionSchema(
            login_time=session.login_time,
            total_earnings=session.total_earnings,
            completed_rides=session.completed_rides,
        ),
    )


@router.post("/{driver_id}/logout", response_model=LogoutResponse, summary="Driver logout")
@limiter.limit(RATE_LIMIT)
async def logout(
    request: Request,
    driver_id: str,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    _driver_or_404(dispatcher, driver_id)
    session = await dispatcher.sessions.logout(driver_id)
    summary = None
    if session is not None:
        summary = SessionSummary(
            duration_s=round(session.online_time_s, 1),
            earnings=round(session.total_earnings, 2),
            rides_completed=session.completed_rides,
        )
    return LogoutResponse(session_summary=summary)


@router.put(
    "/{driver_id}/availability",
    response_model=DriverResponse,
    summary="Toggle availability",
)
@limiter.limit(RATE_LIMIT)
async def set_availability(
    request: Request,
    driver_id: str,
    body: AvailabilityRequest,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    driver = _driver_or_404(dispatcher, driver_id)
    if not body.available and driver.current_ride_id:
        raise HTTPException(
            status_code=400, detail="Complete current ride before going offline"
        )
    driver = await dispatcher.pool.set_availability(driver_id, body.available)
    return DriverResponse(driver=DriverSchema.from_driver(driver))


@router.put(
    "/{driver_id}/location",
    response_model=LocationUpdateResponse,
    summary="Report driver position",
)
@limiter.limit(RATE_LIMIT)
async def update_location(
    request: Request,
    driver_id: str,
    body: LocationSchema,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    _driver_or_404(dispatcher, driver_id)
    await dispatcher.pool.update_location(driver_id, body.to_domain())
    dispatcher.sessions.touch(driver_id)
    return LocationUpdateResponse(
        location=LocationSchema.from_domain(dispatcher.pool.get(driver_id).location)
    )


@router.get("/{driver_id}/offers", response_model=OffersResponse, summary="Pending offer")
@limiter.limit(RATE_LIMIT)
async def get_offers(
    request: Request,
    driver_id: str,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    _driver_or_404(dispatcher, driver_id)
    offer = dispatcher.sessions.current_offer(driver_id)
    if offer is None:
        return OffersResponse(has_offer=False)
    return OffersResponse(has_offer=True, offer=OfferSchema.from_offer(offer))


@router.post(
    "/{driver_id}/rides/{ride_id}/accept",
    response_model=AcceptResponse,
    summary="Accept a ride offer",
)
@limiter.limit(RATE_LIMIT)
async def accept_ride(
    request: Request,
    driver_id: str,
    ride_id: str,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    _driver_or_404(dispatcher, driver_id)
    try:
        offer = await dispatcher.sessions.accept(driver_id, ride_id)
    except DriverNotFound:
        raise HTTPException(status_code=400, detail="Driver must be logged in")
    except OfferNotFound:
        raise HTTPException(status_code=400, detail="Ride may no longer be available")
    except DriverBusy:
        raise HTTPException(
            status_code=400, detail="Complete current ride before accepting another"
        )
    return AcceptResponse(
        message="Simulated ride accepted" if offer.simulated else "Ride accepted",
        ride_id=ride_id,
        driver=DriverSchema.from_driver(dispatcher.pool.get(driver_id)),
        ride=OfferSchema.from_offer(offer),
    )


@router.post(
    "/{driver_id}/rides/{ride_id}/reject",
    response_model=RejectResponse,
    summary="Reject a ride offer",
)
@limiter.limit(RATE_LIMIT)
async def reject_ride(
    request: Request,
    driver_id: str,
    ride_id: str,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    _driver_or_404(dispatcher, driver_id)
    try:
        dispatcher.sessions.reject(driver_id, ride_id)
    except DriverNotFound:
        raise HTTPException(status_code=400, detail="Driver must be logged in")
    except OfferNotFound:
        raise HTTPException(status_code=404, detail="No pending offer for this ride")
    return RejectResponse(ride_id=ride_id)


@router.put(
    "/{driver_id}/rides/{ride_id}/status",
    response_model=RideStatusUpdateResponse,
    summary="Report ride progress",
)
@limiter.limit(RATE_LIMIT)
async def update_ride_status(
    request: Request,
    driver_id: str,
    ride_id: str,
    body: RideStatusUpdateRequest,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    _driver_or_404(dispatcher, driver_id)
    try:
        await dispatcher.apply_driver_status(ride_id, driver_id, body.status)
    except (RideNotFound, OfferNotFound):
        raise HTTPException(status_code=404, detail="Ride not found")
    except DriverBusy:
        raise HTTPException(
            status_code=400, detail="This ride is not assigned to this driver"
        )
    except InvalidStateTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return RideStatusUpdateResponse(
        status=body.status,
        ride_id=ride_id,
        driver=DriverSchema.from_driver(dispatcher.pool.get(driver_id)),
    )


@router.get("/{driver_id}/stats", response_model=StatsResponse, summary="Session stats")
@limiter.limit(RATE_LIMIT)
async def get_stats(
    request: Request,
    driver_id: str,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    driver = _driver_or_404(dispatcher, driver_id)
    try:
        stats = dispatcher.sessions.stats(driver_id)
    except DriverNotFound:
        raise HTTPException(status_code=404, detail="Driver must be logged in")
    return StatsResponse(
        driver=DriverSchema.from_driver(driver),
        stats=StatsSchema(
            online_time=stats.online_time_s,
            completed_rides=stats.completed_rides,
            total_earnings=stats.total_earnings,
            acceptance_rate=stats.acceptance_rate,
            rating=stats.rating,
        ),
    )


@router.get("/{driver_id}", response_model=DriverDetailResponse, summary="Driver details")
@limiter.limit(RATE_LIMIT)
async def get_driver(
    request: Request,
    driver_id: str,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    driver = _driver_or_404(dispatcher, driver_id)
    active = dispatcher.sessions.is_logged_in(driver_id)
    return DriverDetailResponse(
        driver=DriverSchema.from_driver(driver),
        session_active=active,
        login_time=dispatcher.sessions.get(driver_id).login_time if active else None,
    )
