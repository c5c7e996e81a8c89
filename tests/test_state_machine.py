"""Unit tests for the rider and driver state machines."""

import pytest

from ridehail.domain import driver_state as ds
from ridehail.domain import ride_state as rs
from ridehail.domain.entities import DriverInfo, Location, RouteInfo, utcnow
from ridehail.domain.enums import (
    DRIVER_STATE_TRANSITIONS,
    RIDE_PHASE_ORDER,
    RIDE_STATE_TRANSITIONS,
    DriverStateKind,
    RideStateKind,
)
from ridehail.domain.errors import ErrorKind, RideRequestError
from ridehail.domain.state_machine import DriverStateMachine, RideStateMachine

PICKUP = Location(37.7749, -122.4194)
DEST = Location(37.8049, -122.3994)
DRIVER = DriverInfo(id="driver_1", name="Alex", rating=4.9)
ROUTE = RouteInfo(distance_m=3800, duration_s=340)


def ride_state(kind: RideStateKind) -> rs.RideState:
    """One representative instance per rider case."""
    return {
        RideStateKind.IDLE: rs.IDLE,
        RideStateKind.SELECTING_LOCATIONS: rs.SelectingLocations(PICKUP, DEST),
        RideStateKind.ROUTE_READY: rs.RouteReady(PICKUP, DEST, ROUTE),
        RideStateKind.SUBMITTING_REQUEST: rs.SubmittingRequest(PICKUP, DEST),
        RideStateKind.SEARCHING_FOR_DRIVER: rs.SearchingForDriver("r1", PICKUP, DEST),
        RideStateKind.DRIVER_ASSIGNED: rs.DriverAssigned("r1", DRIVER, PICKUP, DEST),
        RideStateKind.DRIVER_EN_ROUTE: rs.DriverEnRoute("r1", DRIVER, 120, PICKUP, DEST),
        RideStateKind.DRIVER_ARRIVING: rs.DriverArriving("r1", DRIVER, PICKUP, DEST),
        RideStateKind.RIDE_IN_PROGRESS: rs.RideInProgress("r1", DRIVER, 300, PICKUP, DEST),
        RideStateKind.APPROACHING_DESTINATION: rs.ApproachingDestination("r1", DRIVER, PICKUP, DEST),
        RideStateKind.RIDE_COMPLETED: rs.RideCompleted("r1", DRIVER, PICKUP, DEST),
        RideStateKind.ERROR: rs.RideError(RideRequestError(ErrorKind.UNKNOWN)),
    }[kind]


STATS = ds.DriverStats()
OFFER = ds.RideOffer("r1", PICKUP, DEST, 3800, 7.7, utcnow())
ACTIVE = ds.ActiveRide("r1", PICKUP, DEST, ds.PassengerInfo())
SUMMARY = ds.RideSummary("r1", PICKUP, DEST, 3800, 300, 7.7)


def driver_state(kind: DriverStateKind) -> ds.DriverState:
    return {
        DriverStateKind.OFFLINE: ds.OFFLINE,
        DriverStateKind.LOGGING_IN: ds.LOGGING_IN,
        DriverStateKind.ONLINE: ds.Online(STATS),
        DriverStateKind.RIDE_OFFERED: ds.RideOffered(OFFER, STATS),
        DriverStateKind.HEADING_TO_PICKUP: ds.HeadingToPickup(ACTIVE, STATS),
        DriverStateKind.ARRIVED_AT_PICKUP: ds.ArrivedAtPickup(ACTIVE, STATS),
        DriverStateKind.RIDE_IN_PROGRESS: ds.RideInProgress(ACTIVE, STATS),
        DriverStateKind.APPROACHING_DESTINATION: ds.ApproachingDestination(ACTIVE, STATS),
        DriverStateKind.RIDE_COMPLETED: ds.RideCompleted(SUMMARY, STATS),
        DriverStateKind.ERROR: ds.DriverError("boom"),
    }[kind]


RIDE_PAIRS = [(a, b) for a in RideStateKind for b in RideStateKind]
DRIVER_PAIRS = [(a, b) for a in DriverStateKind for b in DriverStateKind]


class TestRideStateMachine:
    @pytest.mark.parametrize("src,dst", RIDE_PAIRS)
    def test_matches_transition_table(self, src, dst):
        allowed = dst in RIDE_STATE_TRANSITIONS[src]
        assert RideStateMachine.can_transition(ride_state(src), ride_state(dst)) is allowed

    def test_legal_transition_returns_target(self):
        target = ride_state(RideStateKind.DRIVER_ASSIGNED)
        result = RideStateMachine.transition(
            ride_state(RideStateKind.SEARCHING_FOR_DRIVER), target
        )
        assert result is target

    def test_illegal_transition_becomes_error_with_previous_state(self):
        source = ride_state(RideStateKind.ROUTE_READY)
        result = RideStateMachine.transition(source, rs.IDLE)
        assert isinstance(result, rs.RideError)
        assert result.error_kind is ErrorKind.ILLEGAL_TRANSITION
        assert result.previous_state is source

    def test_selecting_locations_self_transition_is_legal(self):
        state = rs.SelectingLocations(PICKUP)
        assert RideStateMachine.can_transition(state, rs.SelectingLocations(PICKUP, DEST))

    def test_ride_in_progress_cannot_go_idle(self):
        assert not RideStateMachine.can_transition(
            ride_state(RideStateKind.RIDE_IN_PROGRESS), rs.IDLE
        )

    def test_error_cannot_chain_into_error(self):
        error = ride_state(RideStateKind.ERROR)
        assert not RideStateMachine.can_transition(error, error)

    def test_phase_order_is_a_legal_chain(self):
        for current, nxt in zip(RIDE_PHASE_ORDER, RIDE_PHASE_ORDER[1:]):
            assert nxt in RIDE_STATE_TRANSITIONS[current]

    def test_valid_next_kinds(self):
        assert RideStateMachine.valid_next_kinds(rs.IDLE) == {
            RideStateKind.SELECTING_LOCATIONS,
            RideStateKind.ERROR,
        }

    # ── Recovery ──────────────────────────────────────────────────

    def test_location_error_recovers_to_selection(self):
        error = rs.RideError(
            RideRequestError(ErrorKind.ROUTE_CALCULATION_FAILED),
            previous_state=rs.SelectingLocations(PICKUP, DEST),
        )
        recovered = RideStateMachine.recovery_state(error)
        assert recovered == rs.SelectingLocations(PICKUP, DEST)

    def test_other_errors_recover_to_idle(self):
        error = rs.RideError(
            RideRequestError(ErrorKind.NETWORK_UNAVAILABLE),
            previous_state=rs.SubmittingRequest(PICKUP, DEST),
        )
        assert RideStateMachine.recovery_state(error) is rs.IDLE


class TestRideStatePayloads:
    def test_absent_payload_reads_as_none(self):
        assert rs.IDLE.ride_id is None
        assert rs.IDLE.driver is None
        assert rs.SearchingForDriver("r1", PICKUP, DEST).driver is None

    def test_unknown_attribute_still_raises(self):
        with pytest.raises(AttributeError):
            rs.IDLE.not_a_field

    def test_error_exposes_previous_ride(self):
        error = rs.RideError(
            RideRequestError(ErrorKind.UNKNOWN),
            previous_state=rs.SearchingForDriver("r1", PICKUP, DEST),
        )
        assert error.ride_id == "r1"
        assert error.pickup == PICKUP

    def test_with_eta_only_touches_eta_cases(self):
        en_route = ride_state(RideStateKind.DRIVER_EN_ROUTE)
        assert rs.with_eta(en_route, 42).eta == 42
        arriving = ride_state(RideStateKind.DRIVER_ARRIVING)
        assert rs.with_eta(arriving, 42) is arriving

    def test_build_requires_driver_after_assignment(self):
        assert (
            rs.build_ride_state(
                RideStateKind.DRIVER_ASSIGNED,
                ride_id="r1",
                pickup=PICKUP,
                destination=DEST,
                driver=None,
                eta=None,
            )
            is None
        )

    def test_error_descriptions(self):
        error = RideRequestError(ErrorKind.DISPATCH_NO_DRIVER_AVAILABLE)
        assert error.description
        assert error.recovery_suggestion
        assert error == RideRequestError(ErrorKind.DISPATCH_NO_DRIVER_AVAILABLE)


class TestDriverStateMachine:
    @pytest.mark.parametrize("src,dst", DRIVER_PAIRS)
    def test_matches_transition_table(self, src, dst):
        allowed = dst in DRIVER_STATE_TRANSITIONS[src]
        assert (
            DriverStateMachine.can_transition(driver_state(src), driver_state(dst))
            is allowed
        )

    def test_illegal_transition_returns_none(self):
        assert (
            DriverStateMachine.transition(
                driver_state(DriverStateKind.RIDE_IN_PROGRESS), ds.Online(STATS)
            )
            is None
        )

    def test_legal_transition_returns_target(self):
        target = ds.RideOffered(OFFER, STATS)
        assert DriverStateMachine.transition(ds.Online(STATS), target) is target

    def test_offline_only_leads_to_login(self):
        assert DriverStateMachine.valid_next_kinds(ds.OFFLINE) == {
            DriverStateKind.LOGGING_IN
        }

    def test_error_during_duty_recovers_online(self):
        error = ds.DriverError("lost", previous_state=ds.HeadingToPickup(ACTIVE, STATS))
        assert DriverStateMachine.recovery_kind(error) is DriverStateKind.ONLINE

    def test_error_during_login_recovers_offline(self):
        error = ds.DriverError("bad login", previous_state=ds.LOGGING_IN)
        assert DriverStateMachine.recovery_kind(error) is DriverStateKind.OFFLINE

    def test_online_flags(self):
        assert ds.Online(STATS).is_online
        assert not ds.OFFLINE.is_online
        assert ds.ArrivedAtPickup(ACTIVE, STATS).has_active_ride
        assert not ds.RideOffered(OFFER, STATS).has_active_ride

    def test_with_stats_is_a_refresh(self):
        fresh = ds.DriverStats(completed_rides=3)
        assert ds.Online(STATS).with_stats(fresh).stats == fresh
        assert ds.OFFLINE.with_stats(fresh) is ds.OFFLINE
