"""
Repository Pattern -- keeps the dispatcher ignorant of how rides and
drivers are stored.

Storage is process memory.  ``DriverPool`` is the one shared, mutable
resource with concurrent writers (every match attempt, every trip
completion, every location report), so each of its mutations runs under a
single ``asyncio.Lock``.  Two concurrent ``claim_nearest`` calls therefore
see each other's effects and can never claim the same driver.
"""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from typing import Collection, Iterable, Optional

from ridehail.domain import region
from ridehail.domain.entities import Driver, Location, Ride
from ridehail.domain.errors import DriverBusy, DriverNotFound, RideNotFound
from ridehail.domain.matching import GeoMatcher, Match

logger = logging.getLogger(__name__)


class RideRepository:
    def __init__(self) -> None:
        self._rides: dict[str, Ride] = {}

    def create_ride(self, pickup: Location, destination: Location) -> Ride:
        ride = Ride(id=f"ride_{uuid.uuid4().hex[:12]}", pickup=pickup, destination=destination)
        self._rides[ride.id] = ride
        return ride

    def get_by_id(self, ride_id: str) -> Optional[Ride]:
        return self._rides.get(ride_id)

    def get(self, ride_id: str) -> Ride:
        ride = self._rides.get(ride_id)
        if ride is None:
            raise RideNotFound(ride_id)
        return ride

    def list_rides(self) -> list[Ride]:
        return sorted(self._rides.values(), key=lambda r: r.created_at, reverse=True)


class DriverPool:
    def __init__(
        self,
        drivers: Iterable[Driver],
        matcher: Optional[GeoMatcher] = None,
        rng: Optional[random.Random] = None,
    ):
        self._drivers: dict[str, Driver] = {d.id: d for d in drivers}
        self._matcher = matcher or GeoMatcher()
        self._rng = rng or random.Random()
        self._lock = asyncio.Lock()

    @classmethod
    def seeded(
        cls,
        size: int = len(region.DRIVER_NAMES),
        matcher: Optional[GeoMatcher] = None,
        rng: Optional[random.Random] = None,
    ) -> DriverPool:
        """Pool of *size* drivers spread over the weighted spawn zones."""
        rng = rng or random.Random()
        drivers = []
        for i in range(size):
            vehicle = region.VEHICLE_MIX[i % len(region.VEHICLE_MIX)]
            drivers.append(
                Driver(
                    id=f"driver_{i + 1}",
                    name=region.DRIVER_NAMES[i % len(region.DRIVER_NAMES)],
                    location=region.random_spawn_location(rng),
                    vehicle_type=vehicle,
                    vehicle_model=region.VEHICLE_MODELS[vehicle],
                    license_plate=region.license_plate(i + 1),
                    rating=round(4.5 + rng.random() * 0.5, 1),
                )
            )
        logger.info("Driver pool initialised with %d drivers", len(drivers))
        return cls(drivers, matcher=matcher, rng=rng)

    # ── Reads (no lock: single event loop, no await inside) ───────────

    def get_by_id(self, driver_id: str) -> Optional[Driver]:
        return self._drivers.get(driver_id)

    def get(self, driver_id: str) -> Driver:
        driver = self._drivers.get(driver_id)
        if driver is None:
            raise DriverNotFound(driver_id)
        return driver

    def all(self) -> list[Driver]:
        return list(self._drivers.values())

    def count_available(self) -> int:
        return sum(1 for d in self._drivers.values() if d.available)

    # ── Mutations ─────────────────────────────────────────────────────

    async def claim_nearest(
        self,
        pickup: Location,
        exclude: Collection[str] = (),
        ride_id: Optional[str] = None,
    ) -> Optional[Match]:
        """Match and reserve in one step.  ``None`` if nobody is free."""
        async with self._lock:
            match = self._matcher.find_nearest_available(
                self._drivers.values(), pickup, exclude
            )
            if match is None:
                return None
            match.driver.assign_ride(ride_id or "")
            logger.info(
                "Claimed %s for %s (%.0f m away)",
                match.driver.id,
                ride_id,
                match.distance_m,
            )
            return match

    async def assign(self, driver_id: str, ride_id: str) -> Driver:
        """Attach a specific driver (one who picked an offer themselves)."""
        async with self._lock:
            driver = self.get(driver_id)
            if driver.current_ride_id not in (None, ride_id):
                raise DriverBusy(driver_id)
            driver.assign_ride(ride_id)
            return driver

    async def release(self, driver_id: str) -> None:
        """Undo a claim without moving the driver (declined or cancelled)."""
        async with self._lock:
            self.get(driver_id).complete_ride()

    async def release_ride(self, ride_id: str) -> Optional[str]:
        """Free whichever driver holds *ride_id*; returns its id."""
        async with self._lock:
            for driver in self._drivers.values():
                if driver.current_ride_id == ride_id:
                    driver.complete_ride()
                    return driver.id
            return None

    async def complete_ride(self, driver_id: str, relocate: bool = True) -> None:
        async with self._lock:
            driver = self.get(driver_id)
            driver.complete_ride()
            if relocate:
                driver.update_location(region.random_spawn_location(self._rng))

    async def update_location(self, driver_id: str, location: Location) -> None:
        async with self._lock:
            self.get(driver_id).update_location(location)

    async def set_availability(self, driver_id: str, available: bool) -> Driver:
        async with self._lock:
            driver = self.get(driver_id)
            if driver.current_ride_id is None:
                driver.available = available
            return driver
