"""
Unit tests for the Emergency State Manager.

Covers the transition table, actor guards and the intervention rule for
cancelling a request that already has a committed provider.
"""

import pytest

from sos_dispatch.models.emergency import EmergencyStatus
from sos_dispatch.services.emergencyStateManager import (
    VALID_TRANSITIONS,
    ActorType,
    ensure_transition,
    get_valid_transitions,
    validate_transition,
)
from sos_dispatch.services.errors import (
    IllegalTransitionError,
    InterventionRequiredError,
)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestValidTransitions:

    def test_pending_to_accepted_by_client(self):
        result = validate_transition(
            EmergencyStatus.PENDING, EmergencyStatus.ACCEPTED, ActorType.CLIENT
        )
        assert result.allowed is True

    def test_pending_to_cancelled_by_client(self):
        result = validate_transition(
            EmergencyStatus.PENDING, EmergencyStatus.CANCELLED, ActorType.CLIENT
        )
        assert result.allowed is True

    def test_pending_to_cancelled_by_system(self):
        result = validate_transition(
            EmergencyStatus.PENDING, EmergencyStatus.CANCELLED, ActorType.SYSTEM
        )
        assert result.allowed is True

    def test_accepted_to_in_progress_by_provider(self):
        result = validate_transition(
            EmergencyStatus.ACCEPTED, EmergencyStatus.IN_PROGRESS, ActorType.PROVIDER
        )
        assert result.allowed is True

    def test_accepted_straight_to_completed(self):
        result = validate_transition(
            EmergencyStatus.ACCEPTED, EmergencyStatus.COMPLETED, ActorType.PROVIDER
        )
        assert result.allowed is True

    def test_in_progress_to_completed(self):
        result = validate_transition(
            EmergencyStatus.IN_PROGRESS, EmergencyStatus.COMPLETED, ActorType.PROVIDER
        )
        assert result.allowed is True


# ---------------------------------------------------------------------------
# Rejections
# ---------------------------------------------------------------------------


class TestInvalidTransitions:

    @pytest.mark.parametrize("terminal", [EmergencyStatus.COMPLETED, EmergencyStatus.CANCELLED])
    def test_terminal_states_have_no_exits(self, terminal):
        assert VALID_TRANSITIONS[terminal] == set()
        for target in EmergencyStatus:
            assert validate_transition(terminal, target).allowed is False

    def test_pending_cannot_skip_to_in_progress(self):
        result = validate_transition(
            EmergencyStatus.PENDING, EmergencyStatus.IN_PROGRESS, ActorType.PROVIDER
        )
        assert result.allowed is False
        assert "pending" in result.reason

    def test_no_going_back_to_pending(self):
        result = validate_transition(EmergencyStatus.ACCEPTED, EmergencyStatus.PENDING)
        assert result.allowed is False

    def test_accepting_twice_is_illegal(self):
        result = validate_transition(
            EmergencyStatus.ACCEPTED, EmergencyStatus.ACCEPTED, ActorType.CLIENT
        )
        assert result.allowed is False
        assert result.requires_intervention is False


class TestActorGuards:

    def test_provider_cannot_accept(self):
        result = validate_transition(
            EmergencyStatus.PENDING, EmergencyStatus.ACCEPTED, ActorType.PROVIDER
        )
        assert result.allowed is False
        assert "provider" in result.reason

    def test_client_cannot_start_journey(self):
        result = validate_transition(
            EmergencyStatus.ACCEPTED, EmergencyStatus.IN_PROGRESS, ActorType.CLIENT
        )
        assert result.allowed is False

    def test_provider_cannot_cancel_pending(self):
        result = validate_transition(
            EmergencyStatus.PENDING, EmergencyStatus.CANCELLED, ActorType.PROVIDER
        )
        assert result.allowed is False


# ---------------------------------------------------------------------------
# Cancelling a committed request
# ---------------------------------------------------------------------------


class TestCancelAfterCommit:

    @pytest.mark.parametrize(
        "status", [EmergencyStatus.ACCEPTED, EmergencyStatus.IN_PROGRESS]
    )
    def test_requires_intervention(self, status):
        result = validate_transition(status, EmergencyStatus.CANCELLED, ActorType.CLIENT)
        assert result.allowed is False
        assert result.requires_intervention is True

    def test_ensure_raises_intervention_error(self):
        with pytest.raises(InterventionRequiredError) as exc_info:
            ensure_transition(
                EmergencyStatus.ACCEPTED, EmergencyStatus.CANCELLED, ActorType.CLIENT
            )
        assert exc_info.value.requires_intervention is True
        assert isinstance(exc_info.value, IllegalTransitionError)

    def test_cancelling_completed_is_plain_illegal(self):
        with pytest.raises(IllegalTransitionError) as exc_info:
            ensure_transition(
                EmergencyStatus.COMPLETED, EmergencyStatus.CANCELLED, ActorType.CLIENT
            )
        assert not isinstance(exc_info.value, InterventionRequiredError)
        assert exc_info.value.requires_intervention is False


class TestGetValidTransitions:

    def test_client_from_pending(self):
        assert get_valid_transitions(EmergencyStatus.PENDING, ActorType.CLIENT) == [
            EmergencyStatus.ACCEPTED,
            EmergencyStatus.CANCELLED,
        ]

    def test_provider_from_accepted(self):
        assert get_valid_transitions(EmergencyStatus.ACCEPTED, ActorType.PROVIDER) == [
            EmergencyStatus.COMPLETED,
            EmergencyStatus.IN_PROGRESS,
        ]

    def test_terminal_is_empty(self):
        assert get_valid_transitions(EmergencyStatus.COMPLETED) == []
