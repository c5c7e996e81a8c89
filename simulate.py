"""
Trip Simulation
===============
Runs one complete rider trip against an in-process server and prints the
rider's status timeline.  No network, no running uvicorn.

    python simulate.py                  # random landmarks, 20x speed
    python simulate.py --drivers 3 --speedup 60 --seed 7
"""

import argparse
import asyncio
import logging
import random
import time

import httpx

from ridehail.api.app import create_app
from ridehail.client.api import RideAPIClient
from ridehail.client.ride_flow import RideFlowController
from ridehail.client.transport import TransportClient
from ridehail.config import Settings, settings
from ridehail.domain.enums import RideStateKind
from ridehail.domain.matching import GeoMatcher
from ridehail.domain.region import random_trip
from ridehail.infrastructure.repositories import DriverPool
from ridehail.workers.dispatcher import Dispatcher

logger = logging.getLogger("simulate")

_SCALED = (
    "search_delay_min_seconds",
    "search_delay_max_seconds",
    "boarding_pause_seconds",
    "approach_duration_min_seconds",
    "approach_duration_max_seconds",
    "trip_duration_seconds",
    "tick_interval_seconds",
    "search_poll_interval_seconds",
    "ride_poll_interval_seconds",
    "geocoding_debounce_seconds",
)


def scaled_settings(speedup: float) -> Settings:
    """Every duration divided by *speedup*; distances and fares untouched."""
    return settings.model_copy(
        update={name: getattr(settings, name) / speedup for name in _SCALED}
    )


def describe(state) -> str:
    parts = [state.kind.value]
    if state.driver is not None:
        parts.append(f"driver={state.driver.name} ({state.driver.vehicle_type})")
    if state.eta is not None:
        parts.append(f"eta={state.eta:.0f}s")
    if state.is_error:
        parts.append(f"error={state.error_kind.value}")
    return "  ".join(parts)


async def run(drivers: int, speedup: float, seed: int) -> int:
    rng = random.Random(seed)
    config = scaled_settings(speedup)
    dispatcher = Dispatcher(
        pool=DriverPool.seeded(drivers, GeoMatcher(config.average_speed_kmh), rng),
        config=config,
        rng=rng,
    )
    app = create_app(dispatcher)
    transport = TransportClient(
        "http://simulation/api/v1", transport=httpx.ASGITransport(app=app)
    )
    flow = RideFlowController(RideAPIClient(transport), config=config)

    started = time.monotonic()
    finished = asyncio.Event()

    def on_state(state) -> None:
        print(f"{time.monotonic() - started:7.2f}s  {describe(state)}")
        if state.kind in (RideStateKind.RIDE_COMPLETED, RideStateKind.ERROR):
            finished.set()

    flow.subscribe(on_state)
    pickup, destination = random_trip(rng)
    print(f"Trip: {pickup.address} -> {destination.address} ({pickup.distance_to(destination):.0f} m)")

    try:
        flow.start_flow()
        if not await flow.calculate_route(pickup, destination):
            return 1
        if not await flow.request_ride():
            return 1
        # Twice the nominal trip length is plenty of slack
        budget = 2 * (
            config.search_delay_max_seconds
            + config.approach_duration_max_seconds
            + config.boarding_pause_seconds
            + config.trip_duration_seconds
        )
        await asyncio.wait_for(finished.wait(), timeout=budget + 5)
    except asyncio.TimeoutError:
        logger.error("Trip did not finish in time (last state: %s)", flow.state.kind.value)
        return 1
    finally:
        await flow.close()
        await transport.aclose()
        await dispatcher.shutdown()

    for summary in flow.history.all():
        print(
            f"Completed {summary.ride_id}: {summary.distance_m:.0f} m, "
            f"fare ${summary.earnings:.2f}"
        )
    return 0 if flow.state.kind is RideStateKind.RIDE_COMPLETED else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Simulate one ride end to end")
    parser.add_argument("--drivers", type=int, default=settings.driver_pool_size)
    parser.add_argument("--speedup", type=float, default=20.0)
    parser.add_argument("--seed", type=int, default=42)
    args = parser.parse_args()

    logging.basicConfig(level=logging.WARNING)
    raise SystemExit(asyncio.run(run(args.drivers, args.speedup, args.seed)))


if __name__ == "__main__":
    main()
