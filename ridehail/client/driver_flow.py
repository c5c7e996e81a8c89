"""
Driver-app orchestration: sign-in, offers, ride progress, earnings.

Every action asks ``DriverStateMachine.can_transition`` before it touches
the network and returns ``False`` without side effects when the move is
not allowed from the current state.  While on duty three background
tasks run: offer polling (3 s), stats refresh (10 s) and, while an offer
is on screen, its expiry timer.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Optional

from ridehail.api.schemas import DriverSchema, StatsSchema
from ridehail.client.api import DriverAPIClient
from ridehail.client.debounce import SupersedingRunner
from ridehail.client.providers import RouteProvider, StraightLineRouter
from ridehail.client.transport import TerminalTransportError, TransportError
from ridehail.config import Settings, settings
from ridehail.domain import driver_state as ds
from ridehail.domain.entities import Location, RouteInfo, utcnow
from ridehail.domain.enums import DriverRideStatus, DriverStateKind
from ridehail.domain.state_machine import DriverStateMachine

logger = logging.getLogger(__name__)

Listener = Callable[[ds.DriverState], None]

_TOWARD_PICKUP = frozenset(
    {DriverStateKind.HEADING_TO_PICKUP, DriverStateKind.ARRIVED_AT_PICKUP}
)


def stats_from_schema(schema: StatsSchema) -> ds.DriverStats:
    return ds.DriverStats(
        online_time_s=schema.online_time,
        completed_rides=schema.completed_rides,
        total_earnings=schema.total_earnings,
        acceptance_rate=schema.acceptance_rate,
        rating=schema.rating,
    )


def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is not None and not task.done() and task is not asyncio.current_task():
        task.cancel()


class DriverFlowController:
    def __init__(
        self,
        api: DriverAPIClient,
        location_provider: Callable[[], Optional[Location]] = lambda: None,
        router: Optional[RouteProvider] = None,
        config: Settings = settings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.api = api
        self.location_provider = location_provider
        self.router = router or StraightLineRouter(config.average_speed_kmh)
        self.config = config
        self._sleep = sleep

        self.driver_id: Optional[str] = None
        self.driver: Optional[DriverSchema] = None
        self.live_route: Optional[RouteInfo] = None

        self._state: ds.DriverState = ds.OFFLINE
        self._listeners: list[Listener] = []
        self._closed = False

        self._offer_task: Optional[asyncio.Task] = None
        self._stats_task: Optional[asyncio.Task] = None
        self._expiry_task: Optional[asyncio.Task] = None
        self._recompute_runner = SupersedingRunner("driver-route", sleep)
        self._recompute_origin: Optional[Location] = None
        self._recompute_target: Optional[Location] = None

    # ── Observation ───────────────────────────────────────────────────

    @property
    def state(self) -> ds.DriverState:
        return self._state

    @property
    def stats(self) -> ds.DriverStats:
        return self._state.stats or ds.DriverStats()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ── Session ───────────────────────────────────────────────────────

    async def login(self, driver_id: str) -> bool:
        if not self._apply(ds.LOGGING_IN):
            return False
        try:
            response = await self.api.login(driver_id, self._current_location())
            stats = await self.api.get_stats(driver_id)
        except TransportError as exc:
            self._fail(f"Sign-in failed: {exc}")
            return False

        self.driver_id = driver_id
        self.driver = response.driver
        if not self._apply(ds.Online(stats_from_schema(stats.stats))):
            return False
        self._start_background()
        logger.info("Driver %s is online", driver_id)
        return True

    async def logout(self) -> bool:
        if not self._allowed(ds.OFFLINE):
            return False
        self._stop_background()
        driver_id, self.driver_id = self.driver_id, None
        if driver_id is not None:
            try:
                await self.api.logout(driver_id)
            except TransportError as exc:
                logger.warning("Logout for %s failed: %s", driver_id, exc)
        return self._apply(ds.OFFLINE)

    async def go_offline(self) -> bool:
        """Stop taking rides but keep the session (stats survive a re-login)."""
        if not self._allowed(ds.OFFLINE):
            return False
        self._stop_background()
        if self.driver_id is not None:
            try:
                await self.api.set_availability(self.driver_id, False)
            except TransportError as exc:
                logger.warning("Could not mark %s unavailable: %s", self.driver_id, exc)
        return self._apply(ds.OFFLINE)

    async def refresh_stats(self) -> bool:
        if self.driver_id is None:
            return False
        try:
            response = await self.api.get_stats(self.driver_id)
        except TransportError as exc:
            logger.warning("Stats refresh failed: %s", exc)
            return False
        updated = self._state.with_stats(stats_from_schema(response.stats))
        if updated is self._state:
            return False
        self._emit(updated)
        return True

    # ── Offers ────────────────────────────────────────────────────────

    def receive_ride_offer(self, offer: ds.RideOffer) -> bool:
        if offer.is_expired():
            logger.info("Ignoring expired offer %s", offer.ride_id)
            return False
        if not self._apply(ds.RideOffered(offer, self.stats)):
            return False
        _cancel(self._expiry_task)
        self._expiry_task = asyncio.create_task(self._expire_offer(offer))
        return True

    async def accept_ride(self) -> bool:
        state = self._state
        if not isinstance(state, ds.RideOffered):
            return False
        offer = state.offer
        candidate = ds.HeadingToPickup(
            ds.ActiveRide.from_offer(offer, self._current_location()), state.stats
        )
        if not self._allowed(candidate):
            return False

        _cancel(self._expiry_task)
        try:
            await self.api.accept(self.driver_id, offer.ride_id)
        except TerminalTransportError as exc:
            logger.info("Offer %s is no longer available: %s", offer.ride_id, exc.detail)
            if self._state.kind is DriverStateKind.RIDE_OFFERED:
                self._apply(ds.Online(self.stats))
            return False
        except TransportError as exc:
            self._fail(f"Could not accept ride: {exc}")
            return False

        if self._state.kind is not DriverStateKind.RIDE_OFFERED:
            return False
        if not self._apply(replace(candidate, stats=self.stats)):
            return False
        logger.info("Driver %s accepted ride %s", self.driver_id, offer.ride_id)
        if candidate.ride.driver_location is not None:
            self.on_position(candidate.ride.driver_location)
        return True

    async def reject_ride(self) -> bool:
        state = self._state
        if not isinstance(state, ds.RideOffered):
            return False
        if not self._apply(ds.Online(state.stats)):
            return False
        _cancel(self._expiry_task)
        try:
            await self.api.reject(self.driver_id, state.offer.ride_id)
        except TransportError as exc:
            logger.warning("Reject for %s failed: %s", state.offer.ride_id, exc)
        return True

    async def _expire_offer(self, offer: ds.RideOffer) -> None:
        await self._sleep(offer.seconds_left())
        state = self._state
        if isinstance(state, ds.RideOffered) and state.offer.ride_id == offer.ride_id:
            logger.info("Offer %s expired", offer.ride_id)
            self._apply(ds.Online(state.stats))

    # ── Ride progress ─────────────────────────────────────────────────

    async def arrive_at_pickup(self) -> bool:
        return await self._report_progress(
            lambda s: ds.ArrivedAtPickup(s.ride, s.stats), DriverRideStatus.ARRIVED
        )

    async def pickup_passenger(self) -> bool:
        return await self._report_progress(
            lambda s: ds.RideInProgress(replace(s.ride, started_at=utcnow()), s.stats),
            DriverRideStatus.PICKED_UP,
        )

    async def approach_destination(self) -> bool:
        return await self._report_progress(
            lambda s: ds.ApproachingDestination(s.ride, s.stats),
            DriverRideStatus.APPROACHING,
        )

    async def complete_ride(self) -> bool:
        def completed(state: ds.DriverState) -> ds.DriverState:
            ride = state.ride
            summary = ds.RideSummary(
                ride_id=ride.ride_id,
                pickup=ride.pickup,
                destination=ride.destination,
                distance_m=ride.pickup.distance_to(ride.destination),
                duration_s=(utcnow() - ride.started_at).total_seconds(),
                earnings=ride.estimated_earnings,
            )
            stats = replace(
                state.stats,
                completed_rides=state.stats.completed_rides + 1,
                total_earnings=round(state.stats.total_earnings + summary.earnings, 2),
            )
            return ds.RideCompleted(summary, stats)

        done = await self._report_progress(completed, DriverRideStatus.COMPLETED)
        if done:
            self._recompute_runner.cancel()
            self.live_route = None
        return done

    def finish_ride_summary(self) -> bool:
        state = self._state
        if not isinstance(state, ds.RideCompleted):
            return False
        return self._apply(ds.Online(state.stats))

    async def _report_progress(
        self,
        build: Callable[[ds.DriverState], ds.DriverState],
        status: DriverRideStatus,
    ) -> bool:
        state = self._state
        if state.ride is None or not self._allowed(build(state)):
            return False
        try:
            await self.api.update_ride_status(self.driver_id, state.ride.ride_id, status)
        except TransportError as exc:
            self._fail(f"Could not update ride: {exc}")
            return False

        # Stats may have been refreshed meanwhile; rebuild from what is current
        current = self._state
        if current.kind is not state.kind or current.ride.ride_id != state.ride.ride_id:
            return False
        if not self._apply(build(current)):
            return False
        if self.driver_location is not None:
            self.on_position(self.driver_location)
        return True

    # ── Location ──────────────────────────────────────────────────────

    @property
    def driver_location(self) -> Optional[Location]:
        ride = self._state.ride
        return ride.driver_location if ride is not None else None

    async def report_location(self) -> bool:
        location = self._current_location()
        if location is None or self.driver_id is None or not self._state.is_online:
            return False
        try:
            await self.api.update_location(self.driver_id, location)
        except TransportError as exc:
            logger.warning("Location update failed: %s", exc)
            return False
        self.on_position(location)
        return True

    def on_position(self, location: Location) -> None:
        """Recompute the route to the current leg target if the driver moved."""
        state = self._state
        if self._closed or not state.has_active_ride:
            return
        ride = state.ride
        target = ride.pickup if state.kind in _TOWARD_PICKUP else ride.destination

        origin = self._recompute_origin
        if (
            origin is not None
            and target == self._recompute_target
            and origin.distance_to(location) <= self.config.min_movement_m
        ):
            return
        self._recompute_origin = location
        self._recompute_target = target

        ride_id = ride.ride_id
        self._recompute_runner.run(
            lambda: self.router.route(location, target),
            on_result=lambda route: self._apply_live_route(ride_id, location, route),
            on_error=lambda exc: logger.warning("Route recomputation failed: %s", exc),
        )

    def _apply_live_route(self, ride_id: str, location: Location, route: RouteInfo) -> None:
        state = self._state
        if self._closed or not state.has_active_ride or state.ride.ride_id != ride_id:
            return
        self.live_route = route
        self._emit(
            state.with_ride(
                replace(
                    state.ride,
                    driver_location=location,
                    eta_s=route.duration_s,
                    distance_to_target_m=route.distance_m,
                )
            )
        )

    def _current_location(self) -> Optional[Location]:
        try:
            return self.location_provider()
        except PermissionError as exc:
            logger.warning("Location unavailable: %s", exc)
            return None

    # ── Errors & teardown ─────────────────────────────────────────────

    def clear_error(self) -> bool:
        state = self._state
        if not isinstance(state, ds.DriverError):
            return False
        kind = DriverStateMachine.recovery_kind(state)
        if kind is DriverStateKind.ONLINE and self.driver_id is not None:
            if not self._apply(ds.Online(state.stats or ds.DriverStats())):
                return False
            self._recompute_runner.cancel()
            self._start_background()
            return True
        self._stop_background()
        return self._apply(ds.OFFLINE)

    async def close(self) -> None:
        if self._closed:
            return
        tasks = [
            t
            for t in (self._offer_task, self._stats_task, self._expiry_task)
            if t is not None and t is not asyncio.current_task()
        ]
        self._stop_background()
        self._closed = True
        self._listeners.clear()
        if tasks:
            await asyncio.wait(tasks)

    def _fail(self, message: str) -> None:
        if self._apply(ds.DriverError(message, previous_state=self._state)):
            logger.warning("Driver flow error: %s", message)
        else:
            logger.warning("Driver flow error while %s: %s", self._state.kind.value, message)

    # ── Background tasks ──────────────────────────────────────────────

    def _start_background(self) -> None:
        if self._offer_task is None or self._offer_task.done():
            self._offer_task = asyncio.create_task(self._poll_offers())
        if self._stats_task is None or self._stats_task.done():
            self._stats_task = asyncio.create_task(self._refresh_stats_loop())

    def _stop_background(self) -> None:
        for task in (self._offer_task, self._stats_task, self._expiry_task):
            _cancel(task)
        self._offer_task = self._stats_task = self._expiry_task = None
        self._recompute_runner.cancel()

    async def _poll_offers(self) -> None:
        while not self._closed:
            await self._sleep(self.config.offer_poll_interval_seconds)
            if self._state.kind is not DriverStateKind.ONLINE or self.driver_id is None:
                continue
            try:
                offer = await self.api.get_offer(self.driver_id)
            except TransportError as exc:
                logger.warning("Offer poll failed: %s", exc)
                continue
            if offer is not None and self._state.kind is DriverStateKind.ONLINE:
                self.receive_ride_offer(offer.to_domain())

    async def _refresh_stats_loop(self) -> None:
        while not self._closed:
            await self._sleep(self.config.stats_refresh_interval_seconds)
            if self._state.is_online:
                await self.refresh_stats()

    # ── State plumbing ────────────────────────────────────────────────

    def _allowed(self, candidate: ds.DriverState) -> bool:
        return not self._closed and DriverStateMachine.can_transition(self._state, candidate)

    def _apply(self, candidate: ds.DriverState) -> bool:
        if self._closed:
            return False
        result = DriverStateMachine.transition(self._state, candidate)
        if result is None:
            return False
        self._emit(result)
        return True

    def _emit(self, state: ds.DriverState) -> None:
        if self._closed:
            return
        self._state = state
        for listener in list(self._listeners):
            listener(state)
