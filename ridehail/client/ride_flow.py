"""
Rider-side orchestration: location selection, ride request, live tracking.

The controller is the only writer of the rider's ``RideState``.  Every
change of case goes through ``RideStateMachine``.  Payload refreshes that
keep the case (ETA, driver position, a newer error replacing the one on
screen) are emitted directly.  Listeners registered with ``subscribe`` see
each state in order.

Concurrency
-----------
* One poll task per ride.  1 s between polls while searching, 2 s once a
  driver is assigned.
* Snapshots are applied only if their ``version`` is not older than the
  last one applied.  When the server is several phases ahead the
  controller walks through the skipped phases so every committed step is
  a legal transition; anything else (duplicates, regressions) is dropped.
* ``_epoch`` is bumped by ``cancel_ride``/``reset``/``close``.  Work that
  started under an older epoch never writes state.
* Route recomputation and geocoding are latest-wins (see ``debounce``).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from ridehail.api.schemas import DriverPositionData, RideResponse
from ridehail.client.api import RideAPIClient
from ridehail.client.debounce import Debouncer, SupersedingRunner
from ridehail.client.providers import (
    GazetteerGeocoder,
    GeocodingProvider,
    InMemoryRideHistory,
    RideHistorySink,
    RouteProvider,
    StraightLineRouter,
)
from ridehail.client.transport import TerminalTransportError, TransportError
from ridehail.config import Settings, settings
from ridehail.domain import ride_state as rs
from ridehail.domain.driver_state import RideSummary
from ridehail.domain.entities import Location, RouteInfo, utcnow
from ridehail.domain.enums import (
    RIDE_PHASE_ORDER,
    STATUS_TO_RIDE_STATE,
    RideStateKind,
    RideStatus,
    VehicleType,
)
from ridehail.domain.errors import ErrorKind, RideRequestError
from ridehail.domain.pricing import PricingEngine
from ridehail.domain.state_machine import RideStateMachine

logger = logging.getLogger(__name__)

Listener = Callable[[rs.RideState], None]

_TOWARD_PICKUP = frozenset(
    {
        RideStateKind.DRIVER_ASSIGNED,
        RideStateKind.DRIVER_EN_ROUTE,
        RideStateKind.DRIVER_ARRIVING,
    }
)
_TOWARD_DESTINATION = frozenset(
    {RideStateKind.RIDE_IN_PROGRESS, RideStateKind.APPROACHING_DESTINATION}
)
# The server already ended the ride; nothing to cancel on recovery
_SERVER_ENDED_ERRORS = frozenset(
    {ErrorKind.DISPATCH_NO_DRIVER_AVAILABLE, ErrorKind.RIDE_REQUEST_FAILED}
)


def _is_valid(location: Optional[Location]) -> bool:
    return (
        location is not None
        and -90 <= location.lat <= 90
        and -180 <= location.lng <= 180
    )


def _catch_up_path(
    current: RideStateKind, target: RideStateKind
) -> tuple[RideStateKind, ...]:
    """Phases to commit, in order, to get from *current* to *target*."""
    if current not in RIDE_PHASE_ORDER or target not in RIDE_PHASE_ORDER:
        return ()
    start, end = RIDE_PHASE_ORDER.index(current), RIDE_PHASE_ORDER.index(target)
    if end <= start:
        return ()
    return RIDE_PHASE_ORDER[start + 1 : end + 1]


class RideFlowController:
    def __init__(
        self,
        api: RideAPIClient,
        geocoder: Optional[GeocodingProvider] = None,
        router: Optional[RouteProvider] = None,
        history: Optional[RideHistorySink] = None,
        location_provider: Optional[Callable[[], Optional[Location]]] = None,
        config: Settings = settings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.api = api
        self.geocoder = geocoder or GazetteerGeocoder()
        self.router = router or StraightLineRouter(config.average_speed_kmh)
        self.history = history or InMemoryRideHistory()
        self.location_provider = location_provider
        self.config = config
        self._sleep = sleep
        self._pricing = PricingEngine(config.base_fare, config.rate_per_km)

        self._state: rs.RideState = rs.IDLE
        self._listeners: list[Listener] = []
        self._closed = False
        self._epoch = 0

        self._poll_task: Optional[asyncio.Task] = None
        self._remote_cancels: set[asyncio.Task] = set()
        self._route_runner = SupersedingRunner("route", sleep)
        self._recompute_runner = SupersedingRunner("route-recompute", sleep)
        self._geocode_debouncer = Debouncer(
            config.geocoding_debounce_seconds, "geocode", sleep
        )
        self._reset_ride_data()

    def _reset_ride_data(self) -> None:
        self._last_version = 0
        self._search_polls = 0
        self._ride_started_at: Optional[datetime] = None
        self._recompute_origin: Optional[Location] = None
        self._recompute_target: Optional[Location] = None
        self.driver_location: Optional[Location] = None
        self.live_route: Optional[RouteInfo] = None

    # ── Observation ───────────────────────────────────────────────────

    @property
    def state(self) -> rs.RideState:
        return self._state

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ── Location selection ────────────────────────────────────────────

    def start_flow(self) -> bool:
        if self._state.kind is RideStateKind.SELECTING_LOCATIONS:
            return True
        return self._commit(rs.SelectingLocations())

    def update_pickup(self, location: Location) -> bool:
        if not _is_valid(location):
            self._fail(ErrorKind.INVALID_PICKUP)
            return False
        return self._update_selection(pickup=location)

    def update_destination(self, location: Location) -> bool:
        if not _is_valid(location):
            self._fail(ErrorKind.INVALID_DESTINATION)
            return False
        return self._update_selection(destination=location)

    def search_address(self, query: str, field: str = "destination") -> asyncio.Task:
        """Geocode *query* after the debounce period and set it as *field*.

        A newer call within the period replaces this one.
        """
        if field not in ("pickup", "destination"):
            raise ValueError(f"unknown field {field!r}")
        return self._geocode_debouncer.call(
            lambda: self.geocoder.geocode(query),
            on_result=lambda result: self._apply_geocode(field, result),
            on_error=lambda exc: self._fail(ErrorKind.GEOCODING_FAILED, exc),
        )

    async def use_current_location(self) -> bool:
        """Set the pickup from ``location_provider``."""
        if self.location_provider is None:
            self._fail(ErrorKind.LOCATION_UNAVAILABLE)
            return False
        try:
            location = self.location_provider()
        except PermissionError as exc:
            self._fail(ErrorKind.LOCATION_PERMISSION_DENIED, exc)
            return False
        if location is None:
            self._fail(ErrorKind.LOCATION_UNAVAILABLE)
            return False

        address = location.address
        if address is None:
            try:
                address = await self.geocoder.reverse_geocode(location)
            except Exception as exc:
                logger.warning("Reverse geocoding failed: %s", exc)
        return self.update_pickup(Location(location.lat, location.lng, address))

    async def calculate_route(self, pickup: Location, destination: Location) -> bool:
        """Select both ends and compute the route now.  True on ``routeReady``."""
        if not _is_valid(pickup):
            self._fail(ErrorKind.INVALID_PICKUP)
            return False
        if not _is_valid(destination):
            self._fail(ErrorKind.INVALID_DESTINATION)
            return False
        if not self._update_selection(
            pickup=pickup, destination=destination, calculate=False
        ):
            return False
        self._route_runner.cancel()
        try:
            route = await self.router.route(pickup, destination)
        except Exception as exc:
            self._route_failed(pickup, destination, exc)
            return False
        self._apply_route(pickup, destination, route)
        return self._state.kind is RideStateKind.ROUTE_READY

    def _update_selection(self, calculate: bool = True, **changes: Location) -> bool:
        state = self._state
        candidate = rs.SelectingLocations(
            pickup=changes.get("pickup", state.pickup),
            destination=changes.get("destination", state.destination),
        )
        if not self._commit(candidate):
            return False
        if not candidate.is_complete:
            self._route_runner.cancel()
        elif calculate:
            pickup, destination = candidate.pickup, candidate.destination
            self._route_runner.run(
                lambda: self.router.route(pickup, destination),
                on_result=lambda route: self._apply_route(pickup, destination, route),
                on_error=lambda exc: self._route_failed(pickup, destination, exc),
            )
        return True

    def _apply_geocode(self, field: str, result: tuple[Location, str]) -> None:
        location, formatted = result
        resolved = Location(location.lat, location.lng, formatted)
        if field == "pickup":
            self.update_pickup(resolved)
        else:
            self.update_destination(resolved)

    def _selection_is(self, pickup: Location, destination: Location) -> bool:
        state = self._state
        return (
            state.kind is RideStateKind.SELECTING_LOCATIONS
            and state.pickup == pickup
            and state.destination == destination
        )

    def _apply_route(self, pickup: Location, destination: Location, route: RouteInfo) -> None:
        if self._selection_is(pickup, destination):
            self._commit(rs.RouteReady(pickup, destination, route))

    def _route_failed(self, pickup: Location, destination: Location, exc: Exception) -> None:
        if self._selection_is(pickup, destination):
            self._fail(ErrorKind.ROUTE_CALCULATION_FAILED, exc)

    # ── Request & tracking ────────────────────────────────────────────

    async def request_ride(self) -> bool:
        state = self._state
        if not isinstance(state, rs.RouteReady):
            # Illegal from here; the machine turns it into an error state
            self._commit(rs.SubmittingRequest(state.pickup, state.destination))
            return False

        pickup, destination = state.pickup, state.destination
        if not _is_valid(pickup):
            self._fail(ErrorKind.INVALID_PICKUP)
            return False
        if not _is_valid(destination) or pickup.distance_to(destination) < self.config.min_movement_m:
            self._fail(ErrorKind.INVALID_DESTINATION)
            return False

        self._commit(rs.SubmittingRequest(pickup, destination))
        epoch = self._epoch
        try:
            ride = await self.api.request_ride(pickup, destination)
        except TransportError as exc:
            if epoch == self._epoch:
                self._fail(
                    ErrorKind.NETWORK_UNAVAILABLE
                    if exc.retryable
                    else ErrorKind.RIDE_REQUEST_FAILED,
                    exc,
                )
            return False

        if epoch != self._epoch or self._closed:
            logger.info("Ride %s created after the flow moved on; cancelling", ride.ride_id)
            await self._cancel_remote(ride.ride_id)
            return False

        logger.info("Requested ride %s", ride.ride_id)
        self._reset_ride_data()
        self._commit(rs.SearchingForDriver(ride.ride_id, pickup, destination))
        self._apply_snapshot(ride)
        if self._state.is_active_ride:
            self._start_polling(ride.ride_id)
        return True

    def ingest_ride_update(self, payload: dict[str, Any]) -> bool:
        """Apply a pushed ride snapshot (bare or wrapped in a stream message)."""
        if payload.get("type") == "rideUpdate":
            payload = payload.get("data") or {}
        try:
            snapshot = RideResponse.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Malformed ride update (%d errors)", exc.error_count())
            return False
        return self._apply_snapshot(snapshot)

    def ingest_driver_position(self, payload: dict[str, Any]) -> bool:
        if payload.get("type") == "driverPosition":
            payload = payload.get("data") or {}
        try:
            data = DriverPositionData.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Malformed driver position (%d errors)", exc.error_count())
            return False

        state = self._state
        if self._closed or data.ride_id != state.ride_id or not state.is_active_ride:
            return False

        location = data.driver.location.to_domain()
        driver = state.driver.at(location) if state.driver else None
        self._advance_to(data.status, driver=driver, eta=None)
        moved = rs.with_driver_location(self._state, location)
        if moved != self._state:
            self._emit(moved)
        self._on_driver_moved(location)
        return True

    def _start_polling(self, ride_id: str) -> None:
        self._cancel_poll()
        self._poll_task = asyncio.create_task(self._poll_loop(ride_id, self._epoch))

    async def _poll_loop(self, ride_id: str, epoch: int) -> None:
        while (
            self._epoch == epoch
            and self._state.is_active_ride
            and self._state.ride_id == ride_id
        ):
            searching = self._state.kind is RideStateKind.SEARCHING_FOR_DRIVER
            await self._sleep(
                self.config.search_poll_interval_seconds
                if searching
                else self.config.ride_poll_interval_seconds
            )
            if self._epoch != epoch:
                return

            if self._state.kind is RideStateKind.SEARCHING_FOR_DRIVER:
                self._search_polls += 1
                if self._search_polls > self.config.max_search_polls:
                    logger.info("No driver for ride %s after %d polls", ride_id, self._search_polls - 1)
                    self._fail(ErrorKind.DISPATCH_NO_DRIVER_AVAILABLE)
                    await self._cancel_remote(ride_id)
                    return

            try:
                snapshot = await self.api.get_ride(ride_id)
            except TerminalTransportError as exc:
                if exc.status_code == 404:
                    if self._epoch == epoch:
                        self._fail(ErrorKind.RIDE_REQUEST_FAILED, exc)
                    return
                logger.warning("Poll for ride %s failed: %s", ride_id, exc)
                continue
            except TransportError as exc:
                logger.warning("Poll for ride %s failed: %s", ride_id, exc)
                continue

            if self._epoch != epoch:
                return
            self._apply_snapshot(snapshot)

        logger.debug("Stopped polling ride %s", ride_id)

    def _apply_snapshot(self, snapshot: RideResponse) -> bool:
        state = self._state
        if self._closed or snapshot.ride_id != state.ride_id or not state.is_active_ride:
            logger.debug("Ignoring update for ride %s", snapshot.ride_id)
            return False
        if snapshot.version < self._last_version:
            logger.debug(
                "Discarding stale ride %s v%d (have v%d)",
                snapshot.ride_id,
                snapshot.version,
                self._last_version,
            )
            return False
        self._last_version = snapshot.version

        driver = snapshot.driver.to_info() if snapshot.driver else state.driver
        advanced = self._advance_to(
            snapshot.status, driver=driver, eta=snapshot.estimated_arrival
        )
        if driver is not None and driver.location is not None:
            self._on_driver_moved(driver.location)
        return advanced

    def _advance_to(self, status: str, driver, eta: Optional[float]) -> bool:
        state = self._state
        if status == RideStatus.CANCELLED.value:
            logger.info("Ride %s was cancelled by the server", state.ride_id)
            self._abandon_ride()
            self._emit(rs.IDLE)
            return True
        if status == RideStatus.NO_DRIVERS_AVAILABLE.value:
            self._fail(ErrorKind.DISPATCH_NO_DRIVER_AVAILABLE)
            return True

        target = STATUS_TO_RIDE_STATE.get(status)
        if target is None:
            logger.warning("Unknown ride status %r, treating as searching", status)
            target = RideStateKind.SEARCHING_FOR_DRIVER

        if target is state.kind:
            refreshed = state
            if driver is not None and state.driver is not None:
                refreshed = replace(refreshed, driver=driver)
            if eta is not None:
                refreshed = rs.with_eta(refreshed, eta)
            if refreshed != state:
                self._emit(refreshed)
            return False

        steps = _catch_up_path(state.kind, target)
        if not steps:
            logger.debug("Dropping out-of-order status %s while %s", status, state.kind.value)
            return False
        for kind in steps:
            candidate = rs.build_ride_state(
                kind,
                ride_id=state.ride_id,
                pickup=state.pickup,
                destination=state.destination,
                driver=driver,
                eta=eta,
            )
            if candidate is None or not RideStateMachine.can_transition(self._state, candidate):
                logger.warning("Cannot move ride %s to %s", state.ride_id, kind.value)
                return False
            self._commit(candidate)
        return True

    # ── Route recomputation ───────────────────────────────────────────

    def _on_driver_moved(self, location: Location) -> None:
        self.driver_location = location
        state = self._state
        if state.kind in _TOWARD_PICKUP:
            target = state.pickup
        elif state.kind in _TOWARD_DESTINATION:
            target = state.destination
        else:
            return

        origin = self._recompute_origin
        if (
            origin is not None
            and target == self._recompute_target
            and origin.distance_to(location) <= self.config.min_movement_m
        ):
            return
        self._recompute_origin = location
        self._recompute_target = target

        ride_id = state.ride_id
        self._recompute_runner.run(
            lambda: self.router.route(location, target),
            on_result=lambda route: self._apply_live_route(ride_id, route),
            on_error=lambda exc: logger.warning("Route recomputation failed: %s", exc),
        )

    def _apply_live_route(self, ride_id: str, route: RouteInfo) -> None:
        state = self._state
        if self._closed or state.ride_id != ride_id or not state.is_active_ride:
            return
        self.live_route = route
        refreshed = rs.with_eta(state, route.duration_s)
        if refreshed != state:
            self._emit(refreshed)

    # ── Cancellation & recovery ───────────────────────────────────────

    async def cancel_ride(self) -> None:
        state = self._state
        if self._closed or state.is_terminal:
            return
        ride_id = state.ride_id
        self._abandon_ride()
        self._emit(rs.IDLE)
        if ride_id is not None:
            await self._cancel_remote(ride_id)

    def reset(self) -> None:
        self._abandon_ride()
        if self._state is not rs.IDLE:
            self._emit(rs.IDLE)

    def clear_error(self) -> bool:
        state = self._state
        if not isinstance(state, rs.RideError):
            return False
        target = RideStateMachine.recovery_state(state)
        orphaned = self._orphaned_ride_id(state)
        if target.kind is RideStateKind.IDLE or orphaned is not None:
            self._abandon_ride()
        applied = self._commit(target)
        if orphaned is not None:
            logger.info("Leaving ride %s after %s; cancelling", orphaned, state.error_kind.value)
            task = asyncio.get_running_loop().create_task(self._cancel_remote(orphaned))
            self._remote_cancels.add(task)
            task.add_done_callback(self._remote_cancels.discard)
        return applied

    @staticmethod
    def _orphaned_ride_id(state: rs.RideError) -> Optional[str]:
        """Ride still live on the server that recovering from *state* walks away from."""
        previous = state.previous_state
        if previous is None or not previous.is_active_ride or previous.ride_id is None:
            return None
        if state.error_kind in _SERVER_ENDED_ERRORS:
            return None
        return previous.ride_id

    async def close(self) -> None:
        if self._closed:
            return
        poll_task = self._poll_task
        self._abandon_ride()
        self._closed = True
        self._listeners.clear()
        if poll_task is not None and poll_task is not asyncio.current_task():
            await asyncio.wait({poll_task})
        if self._remote_cancels:
            await asyncio.wait(set(self._remote_cancels))

    async def _cancel_remote(self, ride_id: str) -> None:
        try:
            await self.api.cancel_ride(ride_id)
        except TransportError as exc:
            logger.warning("Cancel request for ride %s failed: %s", ride_id, exc)

    def _abandon_ride(self) -> None:
        self._epoch += 1
        self._cancel_poll()
        self._route_runner.cancel()
        self._recompute_runner.cancel()
        self._geocode_debouncer.cancel()
        self._reset_ride_data()

    def _cancel_poll(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is None or task.done():
            return
        if task is not asyncio.current_task():
            task.cancel()

    # ── State plumbing ────────────────────────────────────────────────

    def _emit(self, state: rs.RideState) -> None:
        if self._closed:
            return
        self._state = state
        for listener in list(self._listeners):
            listener(state)

    def _commit(self, candidate: rs.RideState) -> bool:
        """Run *candidate* through the machine.  True if it was applied as-is."""
        if self._closed:
            return False
        result = RideStateMachine.transition(self._state, candidate)
        self._emit(result)
        if result is not candidate:
            return False
        if candidate.kind is RideStateKind.RIDE_IN_PROGRESS:
            self._ride_started_at = utcnow()
        elif candidate.kind is RideStateKind.RIDE_COMPLETED:
            self._recompute_runner.cancel()
            self._record_completion(candidate)
        return True

    def _fail(self, kind: ErrorKind, cause: Optional[BaseException] = None) -> None:
        logger.warning("Ride flow error: %s", kind.value)
        error = RideRequestError(kind, cause)
        state = self._state
        if isinstance(state, rs.RideError):
            # Payload refresh: still the error case, wrapping the same prior state
            self._emit(rs.RideError(error, previous_state=state.previous_state))
            return
        self._commit(rs.RideError(error, previous_state=state))

    def _record_completion(self, state: rs.RideState) -> None:
        distance = state.pickup.distance_to(state.destination)
        try:
            vehicle = VehicleType(state.driver.vehicle_type)
        except ValueError:
            vehicle = VehicleType.STANDARD
        started = self._ride_started_at or utcnow()
        self.history.append(
            RideSummary(
                ride_id=state.ride_id,
                pickup=state.pickup,
                destination=state.destination,
                distance_m=distance,
                duration_s=(utcnow() - started).total_seconds(),
                earnings=self._pricing.estimate_fare(distance, vehicle),
            )
        )
        logger.info("Ride %s completed", state.ride_id)
