"""
Movement Simulator
==================

Moves a driver along one *leg* (approach-to-pickup or pickup-to-destination)
by linear interpolation on a fixed tick.

* ``Leg.position_at(p)``  -- point at progress fraction ``p`` in [0, 1].
* ``iter_ticks``           -- lazy generator of ``PositionTick``; starts at
  ``p = 0`` and stops at ``p = 1`` or on the first tick inside the arrival
  threshold, whichever comes first.
* ``MovementSimulator``    -- paces the generator with an injectable
  ``sleep`` and runs legs as cancellable background tasks keyed by ride.

Completion fires exactly once per leg.  A leg cancelled before arrival
never fires completion.

Complexity: O(duration / tick_interval) ticks per leg, O(1) each.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterator, Optional, Union

from ridehail.config import settings
from ridehail.domain.distance import bearing_deg, interpolate
from ridehail.domain.entities import Location

logger = logging.getLogger(__name__)

TickCallback = Callable[["PositionTick"], Union[None, Awaitable[None]]]
CompleteCallback = Callable[["PositionTick"], Union[None, Awaitable[None]]]
Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class Leg:
    start: Location
    end: Location
    duration_s: float

    @property
    def distance_m(self) -> float:
        return self.start.distance_to(self.end)

    @property
    def bearing(self) -> float:
        return bearing_deg(self.start.lat, self.start.lng, self.end.lat, self.end.lng)

    def position_at(self, progress: float) -> Location:
        lat, lng = interpolate(
            self.start.lat, self.start.lng, self.end.lat, self.end.lng, progress
        )
        return Location(lat, lng)


@dataclass(frozen=True)
class PositionTick:
    index: int
    progress: float
    location: Location
    distance_remaining_m: float
    bearing: float

    @property
    def arrived(self) -> bool:
        return self.progress >= 1.0


def iter_ticks(
    leg: Leg,
    tick_interval: float,
    arrival_threshold_m: float = 0.0,
) -> Iterator[PositionTick]:
    if tick_interval <= 0:
        raise ValueError("tick_interval must be positive")
    steps = max(1, math.ceil(leg.duration_s / tick_interval))
    bearing = leg.bearing

    for i in range(steps + 1):
        progress = i / steps
        location = leg.position_at(progress)
        remaining = location.distance_to(leg.end)
        if remaining <= arrival_threshold_m:
            # snap onto the target so the last tick is the end point
            progress, location, remaining = 1.0, leg.end.without_address(), 0.0
        yield PositionTick(i, progress, location, remaining, bearing)
        if progress >= 1.0:
            return


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class SimulationHandle:
    """Control over one running leg.  ``cancel`` is idempotent."""

    def __init__(self, key: str, leg: Leg):
        self.key = key
        self.leg = leg
        self.completed = False
        self.cancelled = False
        self.last_tick: Optional[PositionTick] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def done(self) -> bool:
        return self._task is None or self._task.done()

    def cancel(self) -> bool:
        if self.cancelled or self.completed:
            return False
        self.cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        return True

    async def wait(self) -> bool:
        """Wait for the leg to end; ``True`` if it arrived.

        Cancelling the waiter cancels the leg as well.
        """
        if self._task is None:
            return self.completed
        try:
            await asyncio.wait({self._task})
        except asyncio.CancelledError:
            self.cancel()
            raise
        return self.completed


class MovementSimulator:
    def __init__(
        self,
        tick_interval: float = settings.tick_interval_seconds,
        arrival_threshold_m: float = settings.arrival_threshold_m,
        sleep: Sleep = asyncio.sleep,
    ):
        self.tick_interval = tick_interval
        self.arrival_threshold_m = arrival_threshold_m
        self._sleep = sleep
        self._handles: dict[str, SimulationHandle] = {}

    async def run_leg(
        self, leg: Leg, on_tick: Optional[TickCallback] = None
    ) -> PositionTick:
        """Drive *leg* to the end in the current task; returns the final tick."""
        last: Optional[PositionTick] = None
        for tick in iter_ticks(leg, self.tick_interval, self.arrival_threshold_m):
            if last is not None:
                await self._sleep(self.tick_interval)
            last = tick
            if on_tick is not None:
                await _maybe_await(on_tick(tick))
        assert last is not None
        return last

    def start(
        self,
        key: str,
        leg: Leg,
        on_tick: Optional[TickCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
    ) -> SimulationHandle:
        """Run *leg* in the background.  Replaces any leg running under *key*."""
        self.cancel(key)
        handle = SimulationHandle(key, leg)

        async def _track(tick: PositionTick) -> None:
            handle.last_tick = tick
            if on_tick is not None:
                await _maybe_await(on_tick(tick))

        handle._task = asyncio.create_task(self._run(handle, _track, on_complete))
        self._handles[key] = handle
        return handle

    def cancel(self, key: str) -> bool:
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        return handle.cancel()

    def cancel_all(self) -> None:
        for key in list(self._handles):
            self.cancel(key)

    def active_keys(self) -> list[str]:
        return [k for k, h in self._handles.items() if not h.done]

    async def _run(
        self,
        handle: SimulationHandle,
        on_tick: TickCallback,
        on_complete: Optional[CompleteCallback],
    ) -> None:
        try:
            final = await self.run_leg(handle.leg, on_tick)
        except Exception:
            logger.exception("Leg %s failed", handle.key)
            return
        finally:
            if self._handles.get(handle.key) is handle and handle.cancelled:
                self._handles.pop(handle.key, None)

        if handle.cancelled:
            return
        handle.completed = True
        if self._handles.get(handle.key) is handle:
            del self._handles[handle.key]
        if on_complete is not None:
            try:
                await _maybe_await(on_complete(final))
            except Exception:
                logger.exception("Completion callback for %s failed", handle.key)
