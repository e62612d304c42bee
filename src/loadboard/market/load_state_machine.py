"""Load state machine: enforces valid load status transitions.

Load lifecycle:
    AVAILABLE → ASSIGNED → IN_TRANSIT → DELIVERED
    AVAILABLE / ASSIGNED → CANCELLED
    ASSIGNED / IN_TRANSIT → AVAILABLE

State semantics:
- AVAILABLE: open for bids until the bidding deadline.
- ASSIGNED: one bid accepted, booking confirmed or picked up.
- IN_TRANSIT: the booking is on the road.
- DELIVERED: terminal; the booking completed.
- CANCELLED: terminal; withdrawn by the cargo owner.

The way back to AVAILABLE exists only for cancelled bookings. Fail-closed:
anything not in the table is rejected; there are no implicit transitions.
"""

from __future__ import annotations

from loadboard.models.load import LoadStatus


_TRANSITIONS: dict[LoadStatus, set[LoadStatus]] = {
    LoadStatus.AVAILABLE: {LoadStatus.ASSIGNED, LoadStatus.CANCELLED},
    LoadStatus.ASSIGNED: {
        LoadStatus.AVAILABLE,
        LoadStatus.IN_TRANSIT,
        LoadStatus.CANCELLED,
    },
    LoadStatus.IN_TRANSIT: {LoadStatus.DELIVERED, LoadStatus.AVAILABLE},
    LoadStatus.DELIVERED: set(),
    LoadStatus.CANCELLED: set(),
}


class LoadStateMachine:
    """Validates load status transitions.

    Pure computation: the LoadStore applies a transition only after this
    check passes and only under its version guard.
    """

    @staticmethod
    def validate_transition(current: LoadStatus, target: LoadStatus) -> list[str]:
        """Check if a transition is valid. Returns errors (empty = OK)."""
        allowed = _TRANSITIONS.get(current, set())
        if target not in allowed:
            allowed_str = ", ".join(s.value for s in sorted(allowed, key=lambda x: x.value))
            return [
                f"Invalid load transition: {current.value} → {target.value}. "
                f"Allowed from {current.value}: [{allowed_str}]"
            ]
        return []

    @staticmethod
    def valid_transitions(status: LoadStatus) -> set[LoadStatus]:
        """Return the set of valid target states from the given state."""
        return set(_TRANSITIONS.get(status, set()))
