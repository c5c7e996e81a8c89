"""
Rider flow controller tests.

``FakeRideAPI`` stands in for the HTTP client where a test needs to script
exact server snapshots; the end-to-end cases run against the in-process
dispatcher through ``httpx.ASGITransport``.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import httpx
import pytest
import pytest_asyncio

from ridehail.api.schemas import DriverSchema, LocationSchema, RideResponse
from ridehail.client.api import RideAPIClient
from ridehail.client.providers import GazetteerGeocoder, InMemoryRideHistory
from ridehail.client.ride_flow import RideFlowController
from ridehail.client.transport import (
    RetryableTransportError,
    RetryPolicy,
    TerminalTransportError,
)
from ridehail.domain import ride_state as rs
from ridehail.domain.entities import Location, utcnow
from ridehail.domain.enums import RideStateKind
from ridehail.domain.errors import ErrorKind
from tests.conftest import DESTINATION, PICKUP, FakeSleep, make_settings, mock_transport_client

RIDE_ID = "ride_test"
DRIVER_AT = Location(37.7760, -122.4180)

FULL_FLOW = [
    RideStateKind.SELECTING_LOCATIONS,
    RideStateKind.ROUTE_READY,
    RideStateKind.SUBMITTING_REQUEST,
    RideStateKind.SEARCHING_FOR_DRIVER,
    RideStateKind.DRIVER_ASSIGNED,
    RideStateKind.DRIVER_EN_ROUTE,
    RideStateKind.DRIVER_ARRIVING,
    RideStateKind.RIDE_IN_PROGRESS,
    RideStateKind.APPROACHING_DESTINATION,
    RideStateKind.RIDE_COMPLETED,
]


def snapshot(
    status: str,
    version: int,
    ride_id: str = RIDE_ID,
    eta: Optional[float] = None,
    driver_at: Location = DRIVER_AT,
) -> RideResponse:
    driver = None
    if status not in ("searching", "noDriversAvailable"):
        driver = DriverSchema(
            id="driver_1",
            name="Alex",
            rating=4.9,
            vehicle_type="Premium",
            location=LocationSchema.from_domain(driver_at),
        )
    now = utcnow()
    return RideResponse(
        ride_id=ride_id,
        status=status,
        pickup=LocationSchema.from_domain(PICKUP),
        destination=LocationSchema.from_domain(DESTINATION),
        driver=driver,
        estimated_arrival=eta,
        created_at=now,
        updated_at=now,
        version=version,
    )


class FakeRideAPI:
    def __init__(self) -> None:
        self.requests = 0
        self.cancelled: list[str] = []
        self.request_error: Optional[Exception] = None
        self.poll_error: Optional[Exception] = None
        self.poll_snapshots: list[RideResponse] = []
        self.gate: Optional[asyncio.Event] = None

    async def request_ride(self, pickup, destination) -> RideResponse:
        self.requests += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.request_error is not None:
            raise self.request_error
        return snapshot("searching", 1)

    async def get_ride(self, ride_id: str) -> RideResponse:
        if self.poll_error is not None:
            raise self.poll_error
        if len(self.poll_snapshots) > 1:
            return self.poll_snapshots.pop(0)
        return self.poll_snapshots[0] if self.poll_snapshots else snapshot("searching", 1)

    async def cancel_ride(self, ride_id: str) -> None:
        self.cancelled.append(ride_id)


async def park(delay: float) -> None:
    """A sleep that never ends, so the poll loop stays out of the way."""
    await asyncio.Event().wait()


async def wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def dedupe(kinds: list[RideStateKind]) -> list[RideStateKind]:
    out: list[RideStateKind] = []
    for kind in kinds:
        if not out or out[-1] is not kind:
            out.append(kind)
    return out


@pytest.fixture
def fake_api() -> FakeRideAPI:
    return FakeRideAPI()


@pytest_asyncio.fixture
async def controller(fake_api: FakeRideAPI):
    flow = RideFlowController(fake_api, config=make_settings(), sleep=park)
    yield flow
    await flow.close()


async def searching(flow: RideFlowController) -> None:
    assert await flow.calculate_route(PICKUP, DESTINATION)
    assert await flow.request_ride()
    assert flow.state.kind is RideStateKind.SEARCHING_FOR_DRIVER


# ── Selection ─────────────────────────────────────────────────────────


class TestLocationSelection:
    @pytest.mark.asyncio
    async def test_calculate_route(self, controller):
        assert await controller.calculate_route(PICKUP, DESTINATION)
        state = controller.state
        assert isinstance(state, rs.RouteReady)
        assert state.route.distance_m > 0
        assert state.route.duration_s > 0

    @pytest.mark.asyncio
    async def test_setting_both_ends_computes_route(self, controller):
        assert controller.start_flow()
        controller.update_pickup(PICKUP)
        assert controller.state.kind is RideStateKind.SELECTING_LOCATIONS
        controller.update_destination(DESTINATION)
        await wait_until(lambda: controller.state.kind is RideStateKind.ROUTE_READY)

    @pytest.mark.asyncio
    async def test_editing_after_route_ready_reselects(self, controller):
        await controller.calculate_route(PICKUP, DESTINATION)
        other = Location(37.7952, -122.4028, "Transamerica Pyramid")
        assert controller.update_destination(other)
        assert controller.state.kind is RideStateKind.SELECTING_LOCATIONS
        assert controller.state.destination == other

    @pytest.mark.asyncio
    async def test_invalid_pickup(self, controller):
        controller.start_flow()
        assert not controller.update_pickup(Location(91.0, 0.0))
        assert controller.state.error_kind is ErrorKind.INVALID_PICKUP

    @pytest.mark.asyncio
    async def test_clear_location_error_keeps_selection(self, controller):
        controller.start_flow()
        controller.update_pickup(PICKUP)
        controller.update_destination(Location(0.0, 200.0))
        assert controller.state.error_kind is ErrorKind.INVALID_DESTINATION
        assert controller.clear_error()
        assert controller.state.kind is RideStateKind.SELECTING_LOCATIONS
        assert controller.state.pickup == PICKUP

    @pytest.mark.asyncio
    async def test_newer_error_replaces_shown_error(self, controller):
        controller.start_flow()
        controller.update_pickup(PICKUP)
        controller.update_destination(Location(0.0, 200.0))
        assert controller.state.error_kind is ErrorKind.INVALID_DESTINATION

        assert not controller.update_pickup(Location(91.0, 0.0))
        state = controller.state
        assert state.error_kind is ErrorKind.INVALID_PICKUP
        assert state.previous_state.kind is RideStateKind.SELECTING_LOCATIONS
        assert controller.clear_error()
        assert controller.state.pickup == PICKUP

    @pytest.mark.asyncio
    async def test_clear_error_without_error(self, controller):
        assert not controller.clear_error()

    @pytest.mark.asyncio
    async def test_destination_too_close(self, controller):
        nearby = Location(PICKUP.lat + 0.00001, PICKUP.lng)
        assert await controller.calculate_route(PICKUP, nearby)
        assert not await controller.request_ride()
        assert controller.state.error_kind is ErrorKind.INVALID_DESTINATION

    @pytest.mark.asyncio
    async def test_request_without_route_is_illegal(self, controller, fake_api):
        assert not await controller.request_ride()
        assert controller.state.error_kind is ErrorKind.ILLEGAL_TRANSITION
        assert fake_api.requests == 0
        assert controller.clear_error()
        assert controller.state is rs.IDLE


class TestGeocoding:
    @pytest.mark.asyncio
    async def test_only_last_query_is_geocoded(self, fake_api):
        calls = []

        class CountingGeocoder(GazetteerGeocoder):
            async def geocode(self, address):
                calls.append(address)
                return await super().geocode(address)

        flow = RideFlowController(
            fake_api,
            geocoder=CountingGeocoder(),
            config=make_settings(geocoding_debounce_seconds=0.05),
            sleep=asyncio.sleep,
        )
        try:
            flow.search_address("Union")
            flow.search_address("Ferry")
            task = flow.search_address("Ferry Building")
            await task
            assert calls == ["Ferry Building"]
            assert flow.state.destination.address == "Ferry Building"
        finally:
            await flow.close()

    @pytest.mark.asyncio
    async def test_unknown_address_fails(self, fake_api):
        flow = RideFlowController(
            fake_api, config=make_settings(geocoding_debounce_seconds=0.01)
        )
        try:
            await flow.search_address("nowhere at all", field="pickup")
            assert flow.state.error_kind is ErrorKind.GEOCODING_FAILED
        finally:
            await flow.close()

    @pytest.mark.asyncio
    async def test_current_location_unavailable(self, controller):
        assert not await controller.use_current_location()
        assert controller.state.error_kind is ErrorKind.LOCATION_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_current_location_denied(self, fake_api):
        def denied():
            raise PermissionError("no")

        flow = RideFlowController(fake_api, location_provider=denied, sleep=park)
        try:
            assert not await flow.use_current_location()
            assert flow.state.error_kind is ErrorKind.LOCATION_PERMISSION_DENIED
        finally:
            await flow.close()

    @pytest.mark.asyncio
    async def test_current_location_is_reverse_geocoded(self, fake_api):
        flow = RideFlowController(
            fake_api,
            location_provider=lambda: Location(37.7749, -122.4194),
            sleep=park,
        )
        try:
            assert await flow.use_current_location()
            assert flow.state.pickup.address == "Civic Center"
        finally:
            await flow.close()


# ── Request & tracking ────────────────────────────────────────────────


class TestRequestAndTracking:
    @pytest.mark.asyncio
    async def test_request_starts_polling(self, controller, fake_api):
        await searching(controller)
        assert controller.state.ride_id == RIDE_ID
        assert controller.is_polling
        assert fake_api.requests == 1

    @pytest.mark.asyncio
    async def test_skipped_phases_are_walked_through(self, controller):
        await searching(controller)
        seen = []
        controller.subscribe(lambda state: seen.append(state.kind))

        assert controller.ingest_ride_update(snapshot("inProgress", 6, eta=240).to_wire())
        assert dedupe(seen) == [
            RideStateKind.DRIVER_ASSIGNED,
            RideStateKind.DRIVER_EN_ROUTE,
            RideStateKind.DRIVER_ARRIVING,
            RideStateKind.RIDE_IN_PROGRESS,
        ]
        assert controller.state.eta == 240
        assert controller.state.driver.vehicle_type == "Premium"

    @pytest.mark.asyncio
    async def test_stale_version_is_dropped(self, controller):
        await searching(controller)
        controller.ingest_ride_update(snapshot("enRoute", 4, eta=100).to_wire())
        assert not controller.ingest_ride_update(snapshot("assigned", 3).to_wire())
        assert controller.state.kind is RideStateKind.DRIVER_EN_ROUTE

    @pytest.mark.asyncio
    async def test_newer_regression_is_dropped(self, controller):
        await searching(controller)
        controller.ingest_ride_update(snapshot("arriving", 4).to_wire())
        assert not controller.ingest_ride_update(snapshot("assigned", 5).to_wire())
        assert controller.state.kind is RideStateKind.DRIVER_ARRIVING

    @pytest.mark.asyncio
    async def test_same_phase_refreshes_eta(self, controller):
        await searching(controller)
        controller.ingest_ride_update(snapshot("enRoute", 2, eta=120).to_wire())
        controller.ingest_ride_update(snapshot("enRoute", 3, eta=60).to_wire())
        assert controller.state.kind is RideStateKind.DRIVER_EN_ROUTE
        assert controller.state.eta == 60

    @pytest.mark.asyncio
    async def test_unknown_status_while_searching_keeps_searching(self, controller):
        await searching(controller)
        assert not controller.ingest_ride_update(snapshot("teleporting", 2).to_wire())
        assert controller.state.kind is RideStateKind.SEARCHING_FOR_DRIVER
        assert controller.state.ride_id == RIDE_ID
        # the flow is still live
        assert controller.ingest_ride_update(snapshot("assigned", 3).to_wire())
        assert controller.state.kind is RideStateKind.DRIVER_ASSIGNED

    @pytest.mark.asyncio
    async def test_unknown_status_after_assignment_is_dropped(self, controller):
        await searching(controller)
        controller.ingest_ride_update(snapshot("enRoute", 2, eta=90).to_wire())
        seen = []
        controller.subscribe(seen.append)
        assert not controller.ingest_ride_update(snapshot("teleporting", 3).to_wire())
        assert controller.state.kind is RideStateKind.DRIVER_EN_ROUTE
        assert seen == []

    @pytest.mark.asyncio
    async def test_wrapped_stream_message(self, controller):
        await searching(controller)
        message = {"type": "rideUpdate", "data": snapshot("assigned", 2).to_wire()}
        assert controller.ingest_ride_update(message)
        assert controller.state.kind is RideStateKind.DRIVER_ASSIGNED

    @pytest.mark.asyncio
    async def test_other_ride_is_ignored(self, controller):
        await searching(controller)
        assert not controller.ingest_ride_update(
            snapshot("assigned", 9, ride_id="ride_other").to_wire()
        )
        assert controller.state.kind is RideStateKind.SEARCHING_FOR_DRIVER

    @pytest.mark.asyncio
    async def test_malformed_update_is_ignored(self, controller):
        await searching(controller)
        assert not controller.ingest_ride_update({"rideId": RIDE_ID})

    @pytest.mark.asyncio
    async def test_driver_position_moves_marker_and_reroutes(self, controller):
        await searching(controller)
        controller.ingest_ride_update(snapshot("enRoute", 2, eta=300).to_wire())
        moved_to = Location(37.7755, -122.4190)
        message = {
            "type": "driverPosition",
            "data": {
                "rideId": RIDE_ID,
                "driver": {
                    "id": "driver_1",
                    "location": {"lat": moved_to.lat, "lng": moved_to.lng},
                    "bearing": 200.0,
                },
                "status": "enRoute",
                "phase": "toPickup",
                "distanceRemaining": 80.0,
                "progress": 0.9,
            },
        }
        assert controller.ingest_driver_position(message)
        assert controller.state.driver.location == moved_to
        assert controller.driver_location == moved_to

        await wait_until(
            lambda: controller.live_route is not None
            and controller.live_route.distance_m < 100
        )
        assert controller.state.eta == controller.live_route.duration_s

    @pytest.mark.asyncio
    async def test_server_cancel_returns_to_idle(self, controller):
        await searching(controller)
        controller.ingest_ride_update(snapshot("cancelled", 2).to_wire())
        assert controller.state is rs.IDLE
        assert not controller.is_polling

    @pytest.mark.asyncio
    async def test_no_drivers_is_an_error(self, controller, fake_api):
        await searching(controller)
        controller.ingest_ride_update(snapshot("noDriversAvailable", 2).to_wire())
        assert controller.state.error_kind is ErrorKind.DISPATCH_NO_DRIVER_AVAILABLE
        assert controller.clear_error()
        assert controller.state is rs.IDLE
        # the server already ended the ride
        await asyncio.sleep(0.01)
        assert fake_api.cancelled == []

    @pytest.mark.asyncio
    async def test_completion_is_recorded(self, fake_api):
        history = InMemoryRideHistory()
        flow = RideFlowController(fake_api, history=history, config=make_settings(), sleep=park)
        try:
            await searching(flow)
            flow.ingest_ride_update(snapshot("inProgress", 5, eta=100).to_wire())
            flow.ingest_ride_update(snapshot("completed", 9).to_wire())
            assert flow.state.kind is RideStateKind.RIDE_COMPLETED
            assert len(history) == 1
            summary = history.all()[0]
            assert summary.ride_id == RIDE_ID
            assert summary.earnings > 0
            flow.reset()
            assert flow.state is rs.IDLE
        finally:
            await flow.close()


class TestPolling:
    @pytest.mark.asyncio
    async def test_poll_applies_snapshots(self, fake_api):
        fake_api.poll_snapshots = [snapshot("assigned", 2), snapshot("enRoute", 3, eta=50)]
        flow = RideFlowController(fake_api, config=make_settings(), sleep=asyncio.sleep)
        try:
            await searching(flow)
            await wait_until(lambda: flow.state.kind is RideStateKind.DRIVER_EN_ROUTE)
        finally:
            await flow.close()

    @pytest.mark.asyncio
    async def test_search_gives_up_after_max_polls(self, fake_api):
        sleep = FakeSleep()
        flow = RideFlowController(
            fake_api, config=make_settings(max_search_polls=3), sleep=sleep
        )
        try:
            await searching(flow)
            await wait_until(lambda: flow.state.is_error)
            assert flow.state.error_kind is ErrorKind.DISPATCH_NO_DRIVER_AVAILABLE
            assert fake_api.cancelled == [RIDE_ID]
            assert len(sleep.calls) == 4
        finally:
            await flow.close()

    @pytest.mark.asyncio
    async def test_missing_ride_stops_polling(self, fake_api):
        fake_api.poll_error = TerminalTransportError("HTTP 404", status_code=404)
        flow = RideFlowController(fake_api, config=make_settings(), sleep=FakeSleep())
        try:
            await searching(flow)
            await wait_until(lambda: flow.state.is_error)
            assert flow.state.error_kind is ErrorKind.RIDE_REQUEST_FAILED
        finally:
            await flow.close()

    @pytest.mark.asyncio
    async def test_transient_poll_failures_keep_polling(self, fake_api):
        fake_api.poll_error = RetryableTransportError("HTTP 503", status_code=503)
        flow = RideFlowController(fake_api, config=make_settings(), sleep=asyncio.sleep)
        try:
            await searching(flow)
            await asyncio.sleep(0.1)
            assert flow.state.kind is RideStateKind.SEARCHING_FOR_DRIVER
            fake_api.poll_error = None
            fake_api.poll_snapshots = [snapshot("assigned", 2)]
            await wait_until(lambda: flow.state.kind is RideStateKind.DRIVER_ASSIGNED)
        finally:
            await flow.close()


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_ride(self, controller, fake_api):
        await searching(controller)
        await controller.cancel_ride()
        assert controller.state is rs.IDLE
        assert fake_api.cancelled == [RIDE_ID]
        assert not controller.is_polling

        # nothing left to cancel
        await controller.cancel_ride()
        assert fake_api.cancelled == [RIDE_ID]

    @pytest.mark.asyncio
    async def test_late_updates_after_cancel_are_ignored(self, controller):
        await searching(controller)
        await controller.cancel_ride()
        assert not controller.ingest_ride_update(snapshot("assigned", 2).to_wire())
        assert controller.state is rs.IDLE

    @pytest.mark.asyncio
    async def test_reset_during_request_cancels_remote_ride(self, controller, fake_api):
        fake_api.gate = asyncio.Event()
        await controller.calculate_route(PICKUP, DESTINATION)
        pending = asyncio.create_task(controller.request_ride())
        await wait_until(lambda: fake_api.requests == 1)
        assert controller.state.kind is RideStateKind.SUBMITTING_REQUEST

        controller.reset()
        fake_api.gate.set()
        assert await pending is False
        assert controller.state is rs.IDLE
        assert fake_api.cancelled == [RIDE_ID]

    @pytest.mark.asyncio
    async def test_clearing_illegal_edit_cancels_live_ride(self, controller, fake_api):
        await searching(controller)
        assert not controller.update_pickup(PICKUP)
        assert controller.state.error_kind is ErrorKind.ILLEGAL_TRANSITION
        assert controller.state.previous_state.ride_id == RIDE_ID

        assert controller.clear_error()
        assert controller.state is rs.IDLE
        assert not controller.is_polling
        await wait_until(lambda: fake_api.cancelled == [RIDE_ID])

    @pytest.mark.asyncio
    async def test_clearing_location_error_mid_ride_cancels_live_ride(
        self, controller, fake_api
    ):
        await searching(controller)
        assert not controller.update_pickup(Location(91.0, 0.0))
        assert controller.state.error_kind is ErrorKind.INVALID_PICKUP

        assert controller.clear_error()
        assert controller.state.kind is RideStateKind.SELECTING_LOCATIONS
        assert controller.state.pickup == PICKUP
        assert not controller.is_polling
        await wait_until(lambda: fake_api.cancelled == [RIDE_ID])

    @pytest.mark.asyncio
    async def test_close_waits_for_pending_remote_cancel(self, fake_api):
        flow = RideFlowController(fake_api, config=make_settings(), sleep=park)
        await searching(flow)
        flow.update_pickup(PICKUP)
        flow.clear_error()
        await flow.close()
        assert fake_api.cancelled == [RIDE_ID]

    @pytest.mark.asyncio
    async def test_no_state_changes_after_close(self, fake_api):
        flow = RideFlowController(fake_api, config=make_settings(), sleep=park)
        await searching(flow)
        seen = []
        flow.subscribe(seen.append)
        await flow.close()
        before = flow.state

        assert not flow.ingest_ride_update(snapshot("assigned", 2).to_wire())
        await flow.cancel_ride()
        flow.start_flow()
        assert flow.state is before
        assert seen == []
        assert fake_api.cancelled == []
        assert flow.closed
        assert not flow.is_polling

    @pytest.mark.asyncio
    async def test_unsubscribe(self, controller):
        seen = []
        unsubscribe = controller.subscribe(seen.append)
        controller.start_flow()
        unsubscribe()
        controller.update_pickup(PICKUP)
        assert len(seen) == 1


class TestRequestFailures:
    @pytest.mark.asyncio
    async def test_retryable_failure_is_network_error(self, controller, fake_api):
        fake_api.request_error = RetryableTransportError("connection failed")
        await controller.calculate_route(PICKUP, DESTINATION)
        assert not await controller.request_ride()
        assert controller.state.error_kind is ErrorKind.NETWORK_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_terminal_failure_is_request_error(self, controller, fake_api):
        fake_api.request_error = TerminalTransportError("HTTP 400", status_code=400)
        await controller.calculate_route(PICKUP, DESTINATION)
        assert not await controller.request_ride()
        assert controller.state.error_kind is ErrorKind.RIDE_REQUEST_FAILED
        # request errors start over
        assert controller.clear_error()
        assert controller.state is rs.IDLE

    @pytest.mark.asyncio
    async def test_unreachable_server_over_http(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused")

        sleep = FakeSleep()
        transport = mock_transport_client(
            handler, sleep=sleep, policy=RetryPolicy(max_attempts=3, base_delay=0.5)
        )
        flow = RideFlowController(RideAPIClient(transport), config=make_settings(), sleep=park)
        try:
            await flow.calculate_route(PICKUP, DESTINATION)
            assert not await flow.request_ride()
            assert flow.state.error_kind is ErrorKind.NETWORK_UNAVAILABLE
            assert sleep.calls == [0.5, 1.0]
        finally:
            await flow.close()
            await transport.aclose()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stop", ["cancel_ride", "close"])
    async def test_stopping_during_backoff_makes_no_more_attempts(self, stop):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            return httpx.Response(503, json={"detail": "overloaded"})

        backing_off = asyncio.Event()

        async def parked_backoff(delay: float) -> None:
            backing_off.set()
            await asyncio.Event().wait()

        transport = mock_transport_client(
            handler, sleep=parked_backoff, policy=RetryPolicy(max_attempts=3, base_delay=0.5)
        )
        flow = RideFlowController(RideAPIClient(transport), config=make_settings(), sleep=park)
        try:
            await flow.calculate_route(PICKUP, DESTINATION)
            pending = asyncio.create_task(flow.request_ride())
            await asyncio.wait_for(backing_off.wait(), timeout=1)
            assert flow.state.kind is RideStateKind.SUBMITTING_REQUEST

            seen = []
            flow.subscribe(seen.append)
            await getattr(flow, stop)()
            pending.cancel()
            with pytest.raises(asyncio.CancelledError):
                await pending
            await asyncio.sleep(0.02)

            assert len(attempts) == 1
            assert seen == ([] if stop == "close" else [rs.IDLE])
            assert not flow.state.is_error
        finally:
            await flow.close()
            await transport.aclose()


# ── End to end ────────────────────────────────────────────────────────


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_full_ride_against_dispatcher(self, ride_api, fast_settings):
        history = InMemoryRideHistory()
        flow = RideFlowController(ride_api, history=history, config=fast_settings)
        seen = []
        flow.subscribe(lambda state: seen.append(state.kind))
        try:
            assert await flow.calculate_route(PICKUP, DESTINATION)
            assert await flow.request_ride()
            await wait_until(lambda: flow.state.kind is RideStateKind.RIDE_COMPLETED)

            assert dedupe(seen) == FULL_FLOW
            assert flow.state.driver.id == "driver_1"
            assert len(history) == 1

            flow.reset()
            assert flow.state is rs.IDLE
        finally:
            await flow.close()

    @pytest.mark.asyncio
    async def test_cancel_against_dispatcher(self, ride_api, dispatcher, fast_settings):
        flow = RideFlowController(ride_api, config=fast_settings)
        try:
            await flow.calculate_route(PICKUP, DESTINATION)
            await flow.request_ride()
            ride_id = flow.state.ride_id
            await flow.cancel_ride()
            assert flow.state is rs.IDLE
            assert dispatcher.get_ride(ride_id).status.value == "cancelled"
        finally:
            await flow.close()

    @pytest.mark.asyncio
    async def test_illegal_edit_mid_ride_cancels_server_ride(
        self, ride_api, dispatcher, fast_settings
    ):
        flow = RideFlowController(ride_api, config=fast_settings)
        try:
            await flow.calculate_route(PICKUP, DESTINATION)
            assert await flow.request_ride()
            ride_id = flow.state.ride_id

            assert not flow.update_pickup(PICKUP)
            assert flow.state.error_kind is ErrorKind.ILLEGAL_TRANSITION
            assert flow.clear_error()
            assert flow.state is rs.IDLE

            await wait_until(lambda: dispatcher.get_ride(ride_id).status.value == "cancelled")
            await wait_until(lambda: dispatcher.pool.count_available() == 3)
        finally:
            await flow.close()
