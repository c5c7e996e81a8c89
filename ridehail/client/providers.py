"""
Collaborators the flow controllers depend on, plus bundled implementations.

Patterns used
-------------
* **Strategy** -- geocoding, routing and ride history are abstract bases;
  a deployment swaps in a real map SDK or a persistent store without the
  controllers noticing.

The bundled implementations work offline against the region data:
``GazetteerGeocoder`` resolves landmark names, ``StraightLineRouter``
estimates a route from great-circle distance and an average speed.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from ridehail.config import settings
from ridehail.domain.distance import eta_seconds, interpolate
from ridehail.domain.driver_state import RideSummary
from ridehail.domain.entities import Location, RouteInfo
from ridehail.domain.region import LANDMARKS


class GeocodingError(LookupError):
    pass


class RoutingError(RuntimeError):
    pass


# ── Interfaces ────────────────────────────────────────────────────────


class GeocodingProvider(ABC):
    @abstractmethod
    async def geocode(self, address: str) -> tuple[Location, str]:
        """Resolve free text to a location and its formatted address."""

    @abstractmethod
    async def reverse_geocode(self, location: Location) -> str:
        ...


class RouteProvider(ABC):
    @abstractmethod
    async def route(self, origin: Location, target: Location) -> RouteInfo:
        ...


class RideHistorySink(ABC):
    @abstractmethod
    def append(self, summary: RideSummary) -> None:
        ...


# ── Bundled implementations ───────────────────────────────────────────

_COORDINATES = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*,\s*(-?\d+(?:\.\d+)?)\s*$")


class GazetteerGeocoder(GeocodingProvider):
    """Looks addresses up in a fixed list of named places.

    Matching is case-insensitive: an exact name wins, then the first place
    whose name contains the query.  ``"lat, lng"`` text is accepted as-is.
    """

    def __init__(
        self,
        places: Iterable[Location] = LANDMARKS,
        nearby_radius_m: float = 250.0,
    ):
        self.places = tuple(p for p in places if p.address)
        self.nearby_radius_m = nearby_radius_m

    async def geocode(self, address: str) -> tuple[Location, str]:
        query = address.strip()
        if not query:
            raise GeocodingError("empty address")

        coords = _COORDINATES.match(query)
        if coords:
            lat, lng = float(coords.group(1)), float(coords.group(2))
            if not (-90 <= lat <= 90 and -180 <= lng <= 180):
                raise GeocodingError(f"coordinates out of range: {query}")
            formatted = await self.reverse_geocode(Location(lat, lng))
            return Location(lat, lng, formatted), formatted

        needle = query.lower()
        match = next((p for p in self.places if p.address.lower() == needle), None)
        if match is None:
            match = next((p for p in self.places if needle in p.address.lower()), None)
        if match is None:
            raise GeocodingError(f"no match for {query!r}")
        return match, match.address

    async def reverse_geocode(self, location: Location) -> str:
        if not self.places:
            return f"{location.lat:.5f}, {location.lng:.5f}"
        nearest = min(self.places, key=location.distance_to)
        if location.distance_to(nearest) <= self.nearby_radius_m:
            return nearest.address
        return f"Near {nearest.address}"


class StraightLineRouter(RouteProvider):
    """Great-circle distance at a constant average speed.

    The polyline is ``samples + 1`` evenly spaced ``lat,lng`` points joined
    by ``;``.
    """

    def __init__(
        self,
        average_speed_kmh: float = settings.average_speed_kmh,
        samples: int = 8,
    ):
        if average_speed_kmh <= 0:
            raise ValueError("average_speed_kmh must be positive")
        self.average_speed_kmh = average_speed_kmh
        self.samples = max(1, samples)

    async def route(self, origin: Location, target: Location) -> RouteInfo:
        for point in (origin, target):
            if not (-90 <= point.lat <= 90 and -180 <= point.lng <= 180):
                raise RoutingError(f"invalid coordinate ({point.lat}, {point.lng})")

        distance = origin.distance_to(target)
        points = (
            interpolate(origin.lat, origin.lng, target.lat, target.lng, i / self.samples)
            for i in range(self.samples + 1)
        )
        return RouteInfo(
            distance_m=distance,
            duration_s=eta_seconds(distance, self.average_speed_kmh),
            polyline=";".join(f"{lat:.6f},{lng:.6f}" for lat, lng in points),
        )


class InMemoryRideHistory(RideHistorySink):
    def __init__(self, limit: Optional[int] = None):
        self.limit = limit
        self._items: list[RideSummary] = []

    def append(self, summary: RideSummary) -> None:
        self._items.append(summary)
        if self.limit is not None and len(self._items) > self.limit:
            del self._items[: len(self._items) - self.limit]

    def all(self) -> list[RideSummary]:
        """Newest first."""
        return list(reversed(self._items))

    def __len__(self) -> int:
        return len(self._items)
