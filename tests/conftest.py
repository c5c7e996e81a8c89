"""
Shared test fixtures.

Everything runs in-process: the dispatcher keeps its state in memory and
the HTTP clients talk to the app through ``httpx.ASGITransport``.  All
durations are shrunk so a full trip takes well under a second.
"""

import random
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from ridehail.api.app import create_app
from ridehail.api.middleware import limiter
from ridehail.client.api import DriverAPIClient, RideAPIClient
from ridehail.client.transport import RetryPolicy, TransportClient
from ridehail.config import Settings
from ridehail.domain.entities import Driver, Location
from ridehail.domain.matching import GeoMatcher
from ridehail.infrastructure.repositories import DriverPool
from ridehail.workers.dispatcher import Dispatcher
from ridehail.workers.sessions import DriverSessions

# Polling clients would trip the per-IP limit within one test run
limiter.enabled = False

PICKUP = Location(37.7749, -122.4194, "Civic Center")
DESTINATION = Location(37.8049, -122.3994, "North Beach")


def make_settings(**overrides) -> Settings:
    values = dict(
        search_delay_min_seconds=0.01,
        search_delay_max_seconds=0.02,
        offer_timeout_seconds=2.0,
        boarding_pause_seconds=0.01,
        approach_duration_min_seconds=0.1,
        approach_duration_max_seconds=0.1,
        trip_duration_seconds=0.1,
        tick_interval_seconds=0.02,
        first_offer_delay_seconds=60.0,
        search_poll_interval_seconds=0.02,
        ride_poll_interval_seconds=0.02,
        offer_poll_interval_seconds=0.02,
        stats_refresh_interval_seconds=0.05,
        geocoding_debounce_seconds=0.05,
        retry_base_delay_seconds=0.01,
        retry_max_delay_seconds=0.05,
    )
    values.update(overrides)
    return Settings(**values)


def make_driver(driver_id: str, lat: float, lng: float, **kwargs) -> Driver:
    return Driver(id=driver_id, name=driver_id.title(), location=Location(lat, lng), **kwargs)


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture
def fast_settings() -> Settings:
    return make_settings()


@pytest.fixture
def pool() -> DriverPool:
    """Three drivers near the pickup, at increasing distance."""
    return DriverPool(
        [
            make_driver("driver_1", 37.7760, -122.4180),
            make_driver("driver_2", 37.7800, -122.4100),
            make_driver("driver_3", 37.7900, -122.4000),
        ],
        matcher=GeoMatcher(),
        rng=random.Random(3),
    )


@pytest_asyncio.fixture
async def dispatcher(pool: DriverPool, fast_settings: Settings) -> AsyncGenerator[Dispatcher, None]:
    sessions = DriverSessions(pool, config=fast_settings, simulate_offers=False)
    d = Dispatcher(
        pool=pool,
        sessions=sessions,
        config=fast_settings,
        rng=random.Random(11),
    )
    yield d
    await d.shutdown()


@pytest_asyncio.fixture
async def client(dispatcher: Dispatcher) -> AsyncGenerator[AsyncClient, None]:
    app = create_app(dispatcher)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def transport(
    dispatcher: Dispatcher, fast_settings: Settings
) -> AsyncGenerator[TransportClient, None]:
    app = create_app(dispatcher)
    tc = TransportClient(
        "http://test/api/v1",
        policy=RetryPolicy(
            max_attempts=fast_settings.retry_max_attempts,
            base_delay=fast_settings.retry_base_delay_seconds,
            max_delay=fast_settings.retry_max_delay_seconds,
        ),
        transport=ASGITransport(app=app),
    )
    yield tc
    await tc.aclose()


@pytest.fixture
def ride_api(transport: TransportClient) -> RideAPIClient:
    return RideAPIClient(transport)


@pytest.fixture
def driver_api(transport: TransportClient) -> DriverAPIClient:
    return DriverAPIClient(transport)


class FakeSleep:
    """Records requested delays and returns immediately."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


def mock_transport_client(handler, **kwargs) -> TransportClient:
    return TransportClient(
        "http://test/api/v1", transport=httpx.MockTransport(handler), **kwargs
    )
