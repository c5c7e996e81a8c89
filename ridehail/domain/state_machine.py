"""
Transition validation for the rider and driver lifecycles.

Both machines are pure: no I/O, no stored state.  Legality is decided on
the ``kind`` tag of the two states alone; payloads ride along untouched.

The two machines fail differently on purpose:

* ``RideStateMachine.transition`` never refuses.  An illegal request comes
  back as a ``RideError(illegalTransition)`` wrapping the state the rider
  was in, so there is always something to display.
* ``DriverStateMachine.transition`` returns ``None`` for an illegal pair.
  Driver actions mutate server-side state, so the caller has to check
  first and must not act on a refused transition.

Complexity: O(1) per check (set membership).
"""

from __future__ import annotations

import logging
from typing import Optional

from . import ride_state as rs
from .driver_state import DriverError, DriverState
from .enums import (
    DRIVER_STATE_TRANSITIONS,
    RIDE_STATE_TRANSITIONS,
    DriverStateKind,
    RideStateKind,
)
from .errors import LOCATION_ERRORS, ErrorKind, RideRequestError

logger = logging.getLogger(__name__)


class RideStateMachine:
    @staticmethod
    def can_transition(from_state: rs.RideState, to_state: rs.RideState) -> bool:
        return to_state.kind in RIDE_STATE_TRANSITIONS.get(from_state.kind, set())

    @staticmethod
    def valid_next_kinds(state: rs.RideState) -> frozenset[RideStateKind]:
        return frozenset(RIDE_STATE_TRANSITIONS.get(state.kind, set()))

    @classmethod
    def transition(cls, from_state: rs.RideState, to_state: rs.RideState) -> rs.RideState:
        if cls.can_transition(from_state, to_state):
            logger.debug(
                "Ride state %s -> %s", from_state.kind.value, to_state.kind.value
            )
            return to_state
        logger.warning(
            "Rejected ride transition %s -> %s",
            from_state.kind.value,
            to_state.kind.value,
        )
        return rs.RideError(
            RideRequestError(ErrorKind.ILLEGAL_TRANSITION), previous_state=from_state
        )

    @staticmethod
    def recovery_state(error_state: rs.RideError) -> rs.RideState:
        """Where ``clear_error`` lands.

        Location-type failures go back to editing with the previous
        selection intact; anything else starts over from ``idle``.
        """
        if error_state.error_kind in LOCATION_ERRORS:
            return rs.SelectingLocations(
                pickup=error_state.pickup, destination=error_state.destination
            )
        return rs.IDLE


class DriverStateMachine:
    @staticmethod
    def can_transition(from_state: DriverState, to_state: DriverState) -> bool:
        return to_state.kind in DRIVER_STATE_TRANSITIONS.get(from_state.kind, set())

    @staticmethod
    def valid_next_kinds(state: DriverState) -> frozenset[DriverStateKind]:
        return frozenset(DRIVER_STATE_TRANSITIONS.get(state.kind, set()))

    @classmethod
    def transition(
        cls, from_state: DriverState, to_state: DriverState
    ) -> Optional[DriverState]:
        if not cls.can_transition(from_state, to_state):
            logger.warning(
                "Rejected driver transition %s -> %s",
                from_state.kind.value,
                to_state.kind.value,
            )
            return None
        logger.debug(
            "Driver state %s -> %s", from_state.kind.value, to_state.kind.value
        )
        return to_state

    @staticmethod
    def recovery_kind(error_state: DriverError) -> DriverStateKind:
        """``online`` if the error interrupted an on-duty state, else ``offline``."""
        previous = error_state.previous_state
        if previous is not None and previous.is_online:
            return DriverStateKind.ONLINE
        return DriverStateKind.OFFLINE
