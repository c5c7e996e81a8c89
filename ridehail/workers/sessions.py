"""
Driver App Sessions
===================

Tracks drivers who signed in through the driver app and brokers ride
offers to them.

Two kinds of offer reach a signed-in driver:

* **Real** -- the dispatcher matched a rider's request to this driver and
  waits (``offer``) for accept / reject / expiry.  The reply travels back
  through an ``asyncio.Future``.
* **Simulated** -- a per-session background task posts a random landmark
  trip after ``first_offer_delay_seconds`` and then every
  ``offer_interval_seconds`` so the driver app has something to do when no
  rider is around.  Accepting one attaches the driver to a ride that only
  exists inside the session.

A real offer always takes priority over a simulated one.
"""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from ridehail.config import Settings, settings as default_settings
from ridehail.domain import region
from ridehail.domain.driver_state import DriverStats, PassengerInfo, RideOffer
from ridehail.domain.entities import Driver, Location, utcnow
from ridehail.domain.enums import DriverRideStatus
from ridehail.domain.errors import DriverBusy, DriverNotFound, OfferNotFound
from ridehail.domain.pricing import PricingEngine
from ridehail.infrastructure.repositories import DriverPool

logger = logging.getLogger(__name__)

PASSENGER_NAMES = ("Sarah Johnson", "Mike Chen", "Emily Rodriguez", "James Brown", "Lisa Wang")


@dataclass
class DriverSession:
    driver_id: str
    login_time: datetime = field(default_factory=utcnow)
    last_update: datetime = field(default_factory=utcnow)
    completed_rides: int = 0
    total_earnings: float = 0.0
    offers_received: int = 0
    offers_accepted: int = 0
    real_offer: Optional[RideOffer] = None
    simulated_offer: Optional[RideOffer] = None
    simulated_rides: dict[str, RideOffer] = field(default_factory=dict)
    reply: Optional[asyncio.Future] = None
    generator: Optional[asyncio.Task] = None

    @property
    def online_time_s(self) -> float:
        return (utcnow() - self.login_time).total_seconds()

    @property
    def acceptance_rate(self) -> float:
        if not self.offers_received:
            return 1.0
        return round(self.offers_accepted / self.offers_received, 2)

    def current_offer(self) -> Optional[RideOffer]:
        now = utcnow()
        if self.real_offer is not None and not self.real_offer.is_expired(now):
            return self.real_offer
        if self.simulated_offer is not None and self.simulated_offer.is_expired(now):
            self.simulated_offer = None
        return self.simulated_offer

    def stats(self, rating: float) -> DriverStats:
        return DriverStats(
            online_time_s=round(self.online_time_s, 1),
            completed_rides=self.completed_rides,
            total_earnings=round(self.total_earnings, 2),
            acceptance_rate=self.acceptance_rate,
            rating=rating,
        )


class DriverSessions:
    def __init__(
        self,
        pool: DriverPool,
        pricing: Optional[PricingEngine] = None,
        config: Settings = default_settings,
        rng: Optional[random.Random] = None,
        simulate_offers: bool = True,
    ):
        self._pool = pool
        self._config = config
        self._pricing = pricing or PricingEngine(config.base_fare, config.rate_per_km)
        self._rng = rng or random.Random()
        self._simulate_offers = simulate_offers
        self._sessions: dict[str, DriverSession] = {}

    # ── Session lifecycle ─────────────────────────────────────────────

    async def login(self, driver_id: str, location: Optional[Location] = None) -> DriverSession:
        self._pool.get(driver_id)
        if location is not None:
            await self._pool.update_location(driver_id, location)
        await self._pool.set_availability(driver_id, True)

        session = self._sessions.get(driver_id)
        if session is None:
            session = DriverSession(driver_id)
            self._sessions[driver_id] = session
            self._start_generator(session)
        logger.info("Driver %s logged in", driver_id)
        return session

    async def logout(self, driver_id: str) -> Optional[DriverSession]:
        self._pool.get(driver_id)
        await self._pool.set_availability(driver_id, False)
        session = self._sessions.pop(driver_id, None)
        if session is not None:
            self._stop_generator(session)
            self._answer(session, False)
        logger.info("Driver %s logged out", driver_id)
        return session

    def is_logged_in(self, driver_id: str) -> bool:
        return driver_id in self._sessions

    def get(self, driver_id: str) -> DriverSession:
        session = self._sessions.get(driver_id)
        if session is None:
            raise DriverNotFound(f"No active session for {driver_id}")
        return session

    def stats(self, driver_id: str) -> DriverStats:
        return self.get(driver_id).stats(self._pool.get(driver_id).rating)

    def touch(self, driver_id: str) -> None:
        session = self._sessions.get(driver_id)
        if session is not None:
            session.last_update = utcnow()

    async def shutdown(self) -> None:
        for session in self._sessions.values():
            self._stop_generator(session)
            self._answer(session, False)
        self._sessions.clear()

    # ── Offers ────────────────────────────────────────────────────────

    def current_offer(self, driver_id: str) -> Optional[RideOffer]:
        self._pool.get(driver_id)
        session = self._sessions.get(driver_id)
        return session.current_offer() if session else None

    async def offer(self, driver_id: str, offer: RideOffer, timeout: float) -> bool:
        """Send a real offer and wait for the answer.  Expiry counts as a no."""
        session = self.get(driver_id)
        loop = asyncio.get_running_loop()
        session.real_offer = offer
        session.reply = loop.create_future()
        session.offers_received += 1
        logger.info("Offered %s to driver %s", offer.ride_id, driver_id)
        try:
            return await asyncio.wait_for(session.reply, timeout)
        except asyncio.TimeoutError:
            logger.info("Offer %s to driver %s expired", offer.ride_id, driver_id)
            return False
        finally:
            if session.real_offer is offer:
                session.real_offer = None
                session.reply = None

    async def accept(self, driver_id: str, ride_id: str) -> RideOffer:
        session = self.get(driver_id)
        driver = self._pool.get(driver_id)

        real = session.real_offer
        if real is not None and real.ride_id == ride_id and not real.is_expired():
            session.offers_accepted += 1
            self._answer(session, True)
            logger.info("Driver %s accepted ride %s", driver_id, ride_id)
            return real

        simulated = session.simulated_offer
        if simulated is None or simulated.ride_id != ride_id or simulated.is_expired():
            raise OfferNotFound(ride_id)
        if not driver.available or driver.current_ride_id is not None:
            raise DriverBusy(driver_id)

        await self._pool.assign(driver_id, ride_id)
        self._stop_generator(session)
        session.simulated_offer = None
        session.simulated_rides[ride_id] = simulated
        session.offers_received += 1
        session.offers_accepted += 1
        logger.info("Driver %s accepted simulated ride %s", driver_id, ride_id)
        return simulated

    def reject(self, driver_id: str, ride_id: str) -> None:
        session = self.get(driver_id)
        if session.real_offer is not None and session.real_offer.ride_id == ride_id:
            self._answer(session, False)
        elif session.simulated_offer is not None and session.simulated_offer.ride_id == ride_id:
            session.simulated_offer = None
            session.offers_received += 1
        else:
            raise OfferNotFound(ride_id)
        logger.info("Driver %s rejected ride %s", driver_id, ride_id)

    # ── Simulated rides ───────────────────────────────────────────────

    def is_simulated_ride(self, driver_id: str, ride_id: str) -> bool:
        session = self._sessions.get(driver_id)
        return session is not None and ride_id in session.simulated_rides

    async def update_simulated_ride(
        self, driver_id: str, ride_id: str, status: DriverRideStatus
    ) -> None:
        session = self.get(driver_id)
        offer = session.simulated_rides.get(ride_id)
        if offer is None:
            raise OfferNotFound(ride_id)
        if status is not DriverRideStatus.COMPLETED:
            return
        del session.simulated_rides[ride_id]
        await self._pool.complete_ride(driver_id, relocate=False)
        self.record_completion(driver_id, offer.estimated_earnings)
        self._start_generator(session)

    def record_completion(self, driver_id: str, earnings: float) -> None:
        session = self._sessions.get(driver_id)
        if session is None:
            return
        session.completed_rides += 1
        session.total_earnings += earnings
        logger.info("Driver %s completed a ride, earned $%.2f", driver_id, earnings)

    # ── Internals ─────────────────────────────────────────────────────

    def _answer(self, session: DriverSession, accepted: bool) -> None:
        if session.reply is not None and not session.reply.done():
            session.reply.set_result(accepted)

    def _start_generator(self, session: DriverSession) -> None:
        if not self._simulate_offers:
            return
        self._stop_generator(session)
        session.generator = asyncio.create_task(self._generate_offers(session))

    def _stop_generator(self, session: DriverSession) -> None:
        if session.generator is not None:
            session.generator.cancel()
            session.generator = None

    async def _generate_offers(self, session: DriverSession) -> None:
        await asyncio.sleep(self._config.first_offer_delay_seconds)
        while True:
            driver = self._pool.get_by_id(session.driver_id)
            if (
                driver is not None
                and driver.available
                and driver.current_ride_id is None
                and session.current_offer() is None
            ):
                session.simulated_offer = self._simulated_offer(driver)
                logger.debug("Simulated offer posted for %s", driver.id)
            await asyncio.sleep(self._config.offer_interval_seconds)

    def _simulated_offer(self, driver: Driver) -> RideOffer:
        pickup, destination = region.random_trip(self._rng)
        distance_m = pickup.distance_to(destination)
        return RideOffer(
            ride_id=f"sim_{uuid.uuid4().hex[:12]}",
            pickup=pickup,
            destination=destination,
            distance_m=round(distance_m),
            estimated_earnings=self._pricing.estimate_fare(distance_m, driver.vehicle_type),
            expires_at=utcnow() + timedelta(seconds=self._config.offer_expiry_seconds),
            simulated=True,
            passenger=PassengerInfo(
                name=self._rng.choice(PASSENGER_NAMES),
                rating=round(4.5 + self._rng.random() * 0.5, 1),
            ),
        )
