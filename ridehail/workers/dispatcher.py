"""
Dispatcher
==========

Owns every ride from request to completion.

Flow per request
----------------
1. ``request_ride`` stores the ride as ``searching`` and schedules matching
   after a uniform random delay in ``[search_delay_min, search_delay_max]``
   to emulate real search latency.
2. ``DriverPool.claim_nearest`` picks and reserves the nearest available
   driver atomically.  Nobody free -> ``noDriversAvailable``, broadcast,
   not retried.
3. Driver signed in through the driver app -> a ride offer is sent and the
   ride stays ``searching`` until accept, reject or expiry.  Reject/expiry
   frees the driver and re-matches, excluding everyone who declined.
4. Otherwise the trip is simulated: ``assigned`` -> approach leg
   (``enRoute`` on the first tick) -> ``arriving`` -> boarding pause ->
   ``inProgress`` -> transport leg (``approachingDestination`` inside
   ``approach_radius_m``) -> ``completed``.  The driver is then freed and
   relocated to a fresh spawn point.

Every status change and every movement tick is published on the
``RideEventHub``; a snapshot is serialised at publish time, so subscribers
see each intermediate status in order.

Concurrency
-----------
One background task per ride, tracked in ``_tasks``.  Pool mutations go
through the pool lock.  ``cancel_ride`` and ``shutdown`` cancel the tasks;
every wait inside them (search delay, offer wait, ticks, boarding pause)
is a plain awaitable, so cancellation is immediate.
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import timedelta
from typing import Any, Awaitable, Callable, Coroutine, Optional

from ridehail.api.schemas import (
    DriverPositionData,
    LocationSchema,
    PositionDriver,
    RideResponse,
)
from ridehail.config import Settings, settings as default_settings
from ridehail.domain.driver_state import RideOffer
from ridehail.domain.entities import InvalidStateTransition, Location, Ride, utcnow
from ridehail.domain.enums import (
    DRIVER_STATUS_TO_RIDE_STATUS,
    DriverRideStatus,
    RideStatus,
    TripPhase,
)
from ridehail.domain.errors import DriverBusy
from ridehail.domain.matching import GeoMatcher, Match
from ridehail.domain.pricing import PricingEngine
from ridehail.infrastructure.broadcast import RideEventHub
from ridehail.infrastructure.repositories import DriverPool, RideRepository
from ridehail.workers.movement import Leg, MovementSimulator, PositionTick
from ridehail.workers.sessions import DriverSessions

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class Dispatcher:
    def __init__(
        self,
        pool: Optional[DriverPool] = None,
        rides: Optional[RideRepository] = None,
        hub: Optional[RideEventHub] = None,
        simulator: Optional[MovementSimulator] = None,
        sessions: Optional[DriverSessions] = None,
        pricing: Optional[PricingEngine] = None,
        config: Settings = default_settings,
        rng: Optional[random.Random] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.config = config
        self._rng = rng or random.Random()
        self._sleep = sleep
        self.pool = pool or DriverPool.seeded(
            config.driver_pool_size,
            matcher=GeoMatcher(config.average_speed_kmh),
            rng=self._rng,
        )
        self.rides = rides or RideRepository()
        self.hub = hub or RideEventHub()
        self.simulator = simulator or MovementSimulator(
            config.tick_interval_seconds, config.arrival_threshold_m, sleep=sleep
        )
        self.pricing = pricing or PricingEngine(config.base_fare, config.rate_per_km)
        self.sessions = sessions or DriverSessions(
            self.pool, self.pricing, config=config, rng=self._rng
        )
        self._tasks: dict[str, asyncio.Task] = {}

    # ── Public API ────────────────────────────────────────────────────

    async def request_ride(self, pickup: Location, destination: Location) -> Ride:
        ride = self.rides.create_ride(pickup, destination)
        logger.info("Ride %s requested", ride.id)
        self._publish_ride(ride)
        self._spawn(ride.id, self._dispatch(ride))
        return ride

    def get_ride(self, ride_id: str) -> Ride:
        return self.rides.get(ride_id)

    async def cancel_ride(self, ride_id: str) -> Ride:
        """Stop the ride wherever it is.  Raises on an already finished ride."""
        ride = self.rides.get(ride_id)
        if not ride.can_transition_to(RideStatus.CANCELLED):
            raise InvalidStateTransition(f"Cannot cancel ride in status {ride.status.value}")

        task = self._tasks.pop(ride_id, None)
        if task is not None:
            task.cancel()
        self.simulator.cancel(ride_id)
        released = await self.pool.release_ride(ride_id)

        ride.transition_to(RideStatus.CANCELLED)
        self._publish_ride(ride)
        logger.info("Ride %s cancelled (driver released: %s)", ride_id, released)
        return ride

    async def apply_driver_status(
        self, ride_id: str, driver_id: str, status: DriverRideStatus
    ) -> None:
        """Progress reported by the driver app for a ride it accepted."""
        if self.sessions.is_simulated_ride(driver_id, ride_id):
            await self.sessions.update_simulated_ride(driver_id, ride_id, status)
            return

        ride = self.rides.get(ride_id)
        if ride.driver is None or ride.driver.id != driver_id:
            raise DriverBusy(f"Ride {ride_id} is not assigned to {driver_id}")

        target = DRIVER_STATUS_TO_RIDE_STATUS[status]
        if target is RideStatus.COMPLETED and ride.status is RideStatus.IN_PROGRESS:
            self._advance(ride, RideStatus.APPROACHING_DESTINATION)
        self._advance(ride, target)

        if target is RideStatus.COMPLETED:
            await self.pool.complete_ride(driver_id, relocate=False)
            self.sessions.record_completion(
                driver_id,
                self.pricing.estimate_fare(
                    ride.pickup.distance_to(ride.destination), ride.driver.vehicle_type
                ),
            )

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.simulator.cancel_all()
        await self.sessions.shutdown()
        logger.info("Dispatcher stopped (%d ride tasks cancelled)", len(tasks))

    def active_ride_ids(self) -> list[str]:
        return list(self._tasks)

    # ── Matching ──────────────────────────────────────────────────────

    async def _dispatch(self, ride: Ride) -> None:
        delay = self._rng.uniform(
            self.config.search_delay_min_seconds, self.config.search_delay_max_seconds
        )
        await self._sleep(delay)

        declined: set[str] = set()
        while True:
            match = await self.pool.claim_nearest(ride.pickup, declined, ride_id=ride.id)
            if match is None:
                logger.warning("No drivers available for %s", ride.id)
                ride.transition_to(RideStatus.NO_DRIVERS_AVAILABLE)
                self._publish_ride(ride)
                return

            driver = match.driver
            if not self.sessions.is_logged_in(driver.id):
                await self._run_trip(ride, match)
                return

            if await self._offer(ride, match):
                ride.assign_driver(driver, match.eta_s)
                self._publish_ride(ride)
                return

            declined.add(driver.id)
            await self.pool.release(driver.id)
            logger.info("Driver %s declined %s, re-matching", driver.id, ride.id)

    async def _offer(self, ride: Ride, match: Match) -> bool:
        trip_m = ride.pickup.distance_to(ride.destination)
        offer = RideOffer(
            ride_id=ride.id,
            pickup=ride.pickup,
            destination=ride.destination,
            distance_m=round(trip_m),
            estimated_earnings=self.pricing.estimate_fare(
                trip_m, match.driver.vehicle_type
            ),
            expires_at=utcnow() + timedelta(seconds=self.config.offer_timeout_seconds),
        )
        return await self.sessions.offer(
            match.driver.id, offer, self.config.offer_timeout_seconds
        )

    # ── Trip simulation ───────────────────────────────────────────────

    async def _run_trip(self, ride: Ride, match: Match) -> None:
        driver = match.driver
        ride.assign_driver(driver, match.eta_s)
        self._publish_ride(ride)
        logger.info("Ride %s assigned to %s (ETA %ss)", ride.id, driver.id, match.eta_s)

        approach = Leg(
            driver.location,
            ride.pickup,
            self._rng.uniform(
                self.config.approach_duration_min_seconds,
                self.config.approach_duration_max_seconds,
            ),
        )

        async def on_approach_tick(tick: PositionTick) -> None:
            await self.pool.update_location(driver.id, tick.location)
            if ride.status is RideStatus.ASSIGNED:
                self._advance(ride, RideStatus.EN_ROUTE)
            ride.estimated_arrival = round(approach.duration_s * (1 - tick.progress))
            ride.touch()
            self._publish_position(ride, tick, TripPhase.TO_PICKUP)

        if not await self.simulator.start(ride.id, approach, on_approach_tick).wait():
            return
        self._advance(ride, RideStatus.ARRIVING)

        await self._sleep(self.config.boarding_pause_seconds)
        transport = Leg(ride.pickup, ride.destination, self.config.trip_duration_seconds)
        ride.estimated_arrival = round(transport.duration_s)
        self._advance(ride, RideStatus.IN_PROGRESS)

        async def on_transport_tick(tick: PositionTick) -> None:
            await self.pool.update_location(driver.id, tick.location)
            if (
                ride.status is RideStatus.IN_PROGRESS
                and tick.distance_remaining_m <= self.config.approach_radius_m
            ):
                self._advance(ride, RideStatus.APPROACHING_DESTINATION)
            ride.estimated_arrival = round(transport.duration_s * (1 - tick.progress))
            ride.touch()
            self._publish_position(ride, tick, TripPhase.TO_DESTINATION)

        if not await self.simulator.start(ride.id, transport, on_transport_tick).wait():
            return
        if ride.status is RideStatus.IN_PROGRESS:
            self._advance(ride, RideStatus.APPROACHING_DESTINATION)
        ride.estimated_arrival = 0
        self._advance(ride, RideStatus.COMPLETED)

        await self.pool.complete_ride(driver.id)
        logger.info("Ride %s completed, %s back in the pool", ride.id, driver.id)

    # ── Helpers ───────────────────────────────────────────────────────

    def _advance(self, ride: Ride, status: RideStatus) -> None:
        ride.transition_to(status)
        self._publish_ride(ride)
        logger.info("Ride %s -> %s", ride.id, status.value)

    def _publish_ride(self, ride: Ride) -> None:
        self.hub.publish(
            ride.id,
            {"type": "rideUpdate", "data": RideResponse.from_ride(ride).to_wire()},
        )

    def _publish_position(self, ride: Ride, tick: PositionTick, phase: TripPhase) -> None:
        assert ride.driver is not None
        data = DriverPositionData(
            ride_id=ride.id,
            driver=PositionDriver(
                id=ride.driver.id,
                location=LocationSchema.from_domain(tick.location),
                bearing=round(tick.bearing, 1),
            ),
            status=ride.status.value,
            phase=phase.value,
            distance_remaining=round(tick.distance_remaining_m, 1),
            progress=round(tick.progress, 4),
        )
        self.hub.publish(ride.id, {"type": "driverPosition", "data": data.to_wire()})

    def _spawn(self, ride_id: str, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks[ride_id] = task

        def _done(t: asyncio.Task) -> None:
            if self._tasks.get(ride_id) is t:
                del self._tasks[ride_id]
            if not t.cancelled() and t.exception() is not None:
                logger.error("Ride task %s failed", ride_id, exc_info=t.exception())

        task.add_done_callback(_done)
