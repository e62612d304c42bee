"""Tests for load state machine: lifecycle transitions."""

import pytest

from loadboard.market.load_state_machine import LoadStateMachine
from loadboard.models.load import LoadStatus


class TestValidTransitions:
    def test_available_to_assigned(self) -> None:
        assert LoadStateMachine.validate_transition(LoadStatus.AVAILABLE, LoadStatus.ASSIGNED) == []

    def test_available_to_cancelled(self) -> None:
        assert LoadStateMachine.validate_transition(LoadStatus.AVAILABLE, LoadStatus.CANCELLED) == []

    def test_assigned_to_in_transit(self) -> None:
        assert LoadStateMachine.validate_transition(LoadStatus.ASSIGNED, LoadStatus.IN_TRANSIT) == []

    def test_in_transit_to_delivered(self) -> None:
        assert LoadStateMachine.validate_transition(LoadStatus.IN_TRANSIT, LoadStatus.DELIVERED) == []

    def test_compensation_back_to_available(self) -> None:
        """Cancelled bookings re-open the load from assigned or in transit."""
        for state in (LoadStatus.ASSIGNED, LoadStatus.IN_TRANSIT):
            assert LoadStateMachine.validate_transition(state, LoadStatus.AVAILABLE) == []


class TestInvalidTransitions:
    def test_available_to_delivered(self) -> None:
        errors = LoadStateMachine.validate_transition(LoadStatus.AVAILABLE, LoadStatus.DELIVERED)
        assert len(errors) == 1
        assert "Invalid load transition" in errors[0]

    def test_in_transit_cannot_be_cancelled(self) -> None:
        errors = LoadStateMachine.validate_transition(LoadStatus.IN_TRANSIT, LoadStatus.CANCELLED)
        assert errors

    def test_same_state_is_not_a_transition(self) -> None:
        errors = LoadStateMachine.validate_transition(LoadStatus.ASSIGNED, LoadStatus.ASSIGNED)
        assert errors

    @pytest.mark.parametrize("terminal", [LoadStatus.DELIVERED, LoadStatus.CANCELLED])
    def test_terminal_states_have_no_exits(self, terminal: LoadStatus) -> None:
        for target in LoadStatus:
            assert LoadStateMachine.validate_transition(terminal, target)

    def test_error_lists_allowed_targets(self) -> None:
        errors = LoadStateMachine.validate_transition(LoadStatus.AVAILABLE, LoadStatus.IN_TRANSIT)
        assert "[assigned, cancelled]" in errors[0]


class TestHelpers:
    def test_valid_transitions_returns_copy(self) -> None:
        targets = LoadStateMachine.valid_transitions(LoadStatus.AVAILABLE)
        targets.add(LoadStatus.DELIVERED)
        assert LoadStatus.DELIVERED not in LoadStateMachine.valid_transitions(LoadStatus.AVAILABLE)
