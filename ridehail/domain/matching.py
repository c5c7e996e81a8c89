"""
Nearest-Available Driver Matching
=================================

1. **Filter**   -- keep drivers with ``available == True`` that are not in
   the caller's exclusion set (drivers who already declined this ride).
2. **Distance** -- Haversine great-circle distance from each candidate to
   the pickup point.
3. **Select**   -- minimum distance wins.  Ties keep the first candidate in
   pool order; with floating-point coordinates ties are practically
   impossible, so no secondary key is needed.

Rating, vehicle type and the rest of the profile are ignored: selection
depends on distance only.  Idle-time fairness would be a policy change and
is deliberately not applied here.

Complexity
----------
O(N) over the pool, one Haversine evaluation per available driver.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Collection, Iterable, Optional

from .distance import eta_seconds
from .entities import Driver, Location


@dataclass(frozen=True)
class Match:
    driver: Driver
    distance_m: float
    eta_s: float


class GeoMatcher:
    def __init__(self, average_speed_kmh: float = 40.0):
        self.average_speed_kmh = average_speed_kmh

    def find_nearest_available(
        self,
        drivers: Iterable[Driver],
        pickup: Location,
        exclude: Collection[str] = (),
    ) -> Optional[Match]:
        best: Optional[Driver] = None
        best_distance = float("inf")

        for driver in drivers:
            if not driver.available or driver.id in exclude:
                continue
            distance = driver.location.distance_to(pickup)
            # strict < keeps the earliest driver on a tie
            if distance < best_distance:
                best, best_distance = driver, distance

        if best is None:
            return None
        return Match(
            driver=best,
            distance_m=best_distance,
            eta_s=eta_seconds(best_distance, self.average_speed_kmh),
        )
