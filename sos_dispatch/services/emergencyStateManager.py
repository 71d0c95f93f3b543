"""
Emergency State Manager
=======================

Finite state machine governing emergency request status transitions. Every
status write in ``requestLifecycle`` goes through ``ensure_transition``
before the conditional UPDATE is issued.

State machine overview::

    pending --> accepted --> in_progress --> completed
       |            |                           ^
       |            +---------------------------+
       +--> cancelled

Cancelling once a provider is committed (``accepted`` / ``in_progress``) is
not a plain illegal move: it needs support to step in, so the result carries
``requires_intervention=True``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from sos_dispatch.models.emergency import EmergencyStatus
from sos_dispatch.services.errors import (
    IllegalTransitionError,
    InterventionRequiredError,
)


# ---------------------------------------------------------------------------
# Actor types for guard enforcement
# ---------------------------------------------------------------------------

class ActorType(str, enum.Enum):
    CLIENT = "client"
    PROVIDER = "provider"
    SYSTEM = "system"


# ---------------------------------------------------------------------------
# Transition guard result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TransitionResult:
    """Result of a transition validation attempt."""
    allowed: bool
    reason: str | None = None
    requires_intervention: bool = False


# ---------------------------------------------------------------------------
# Transition definitions
# ---------------------------------------------------------------------------

VALID_TRANSITIONS: dict[EmergencyStatus, set[EmergencyStatus]] = {
    EmergencyStatus.PENDING: {
        EmergencyStatus.ACCEPTED,
        EmergencyStatus.CANCELLED,
    },
    EmergencyStatus.ACCEPTED: {
        EmergencyStatus.IN_PROGRESS,
        EmergencyStatus.COMPLETED,
    },
    EmergencyStatus.IN_PROGRESS: {
        EmergencyStatus.COMPLETED,
    },
    # Terminal
    EmergencyStatus.COMPLETED: set(),
    EmergencyStatus.CANCELLED: set(),
}

_INTERVENTION_ON_CANCEL: frozenset[EmergencyStatus] = frozenset({
    EmergencyStatus.ACCEPTED,
    EmergencyStatus.IN_PROGRESS,
})

# Which actor may drive the request into each target status
_ALLOWED_ACTORS: dict[EmergencyStatus, frozenset[ActorType]] = {
    EmergencyStatus.ACCEPTED: frozenset({ActorType.CLIENT}),
    EmergencyStatus.IN_PROGRESS: frozenset({ActorType.PROVIDER}),
    EmergencyStatus.COMPLETED: frozenset({ActorType.PROVIDER, ActorType.SYSTEM}),
    EmergencyStatus.CANCELLED: frozenset({ActorType.CLIENT, ActorType.SYSTEM}),
}


def _format_targets(targets: set[EmergencyStatus]) -> str:
    return ", ".join(s.value for s in sorted(targets, key=lambda s: s.value)) or "none"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def validate_transition(
    current_status: EmergencyStatus,
    new_status: EmergencyStatus,
    actor_type: ActorType = ActorType.SYSTEM,
) -> TransitionResult:
    """Validate whether a status transition is allowed for the given actor.

    Returns a ``TransitionResult`` with ``allowed=True`` if the transition
    is permitted, or ``allowed=False`` with a human-readable ``reason``.
    """
    if new_status == EmergencyStatus.CANCELLED and current_status in _INTERVENTION_ON_CANCEL:
        return TransitionResult(
            allowed=False,
            reason=(
                f"Request is '{current_status.value}' with a committed provider; "
                "cancellation requires support intervention."
            ),
            requires_intervention=True,
        )

    allowed_targets = VALID_TRANSITIONS.get(current_status, set())
    if new_status not in allowed_targets:
        return TransitionResult(
            allowed=False,
            reason=(
                f"Invalid transition: '{current_status.value}' -> '{new_status.value}'. "
                f"Allowed transitions from '{current_status.value}': "
                f"{_format_targets(allowed_targets)}."
            ),
        )

    actors = _ALLOWED_ACTORS.get(new_status)
    if actors is not None and actor_type not in actors:
        return TransitionResult(
            allowed=False,
            reason=f"A {actor_type.value} cannot move a request to '{new_status.value}'.",
        )

    return TransitionResult(allowed=True)


def ensure_transition(
    current_status: EmergencyStatus,
    new_status: EmergencyStatus,
    actor_type: ActorType = ActorType.SYSTEM,
) -> None:
    """Raise unless ``validate_transition`` allows the move.

    Raises:
        InterventionRequiredError: Cancelling a request with a committed provider.
        IllegalTransitionError: Any other disallowed transition.
    """
    result = validate_transition(current_status, new_status, actor_type)
    if result.allowed:
        return
    if result.requires_intervention:
        raise InterventionRequiredError(result.reason or "Intervention required")
    raise IllegalTransitionError(result.reason or "Transition not allowed")


def get_valid_transitions(
    current_status: EmergencyStatus,
    actor_type: ActorType = ActorType.SYSTEM,
) -> list[EmergencyStatus]:
    """Statuses the actor can move to from ``current_status`` (for UI hints)."""
    candidates = VALID_TRANSITIONS.get(current_status, set())
    return sorted(
        (t for t in candidates if validate_transition(current_status, t, actor_type).allowed),
        key=lambda s: s.value,
    )
