"""
Domain errors raised by the dispatch services.

Every error derives from ``DispatchError`` so the route layer can map the
whole family to HTTP responses in one place.  Errors that affect persisted
state propagate to the caller; notification failures are the exception and
never leave the broadcaster.
"""

from __future__ import annotations

import uuid
from typing import Optional


class DispatchError(Exception):
    """Base class for every emergency-dispatch domain error."""


class ValidationError(DispatchError):
    """Raised for bad input (location, category, quote) before anything is persisted."""

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


class NotFoundError(DispatchError):
    """Raised when a request or offer cannot be found."""

    def __init__(self, entity: str, entity_id: uuid.UUID | str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} with id '{entity_id}' not found.")


class ConflictError(DispatchError):
    """Raised when a conditional write lost a race or a unique key was hit.

    The caller should refresh state before retrying.
    """

    def __init__(self, reason: str, request_id: Optional[uuid.UUID] = None) -> None:
        self.reason = reason
        self.request_id = request_id
        super().__init__(reason)


class IllegalTransitionError(DispatchError):
    """Raised when a status transition is not permitted from the current state."""

    requires_intervention: bool = False

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class InterventionRequiredError(IllegalTransitionError):
    """Cancelling a committed request needs a human (support/admin) to step in."""

    requires_intervention = True


class ForbiddenActorError(DispatchError):
    """Raised when the caller is not the party allowed to perform the action."""

    def __init__(self, actor_id: uuid.UUID | str, action: str) -> None:
        self.actor_id = actor_id
        self.action = action
        super().__init__(f"User '{actor_id}' is not allowed to {action}.")


class PaymentHoldError(DispatchError):
    """Raised when the payment hold could not be placed; the accept is aborted."""

    def __init__(self, reason: str, request_id: Optional[uuid.UUID] = None) -> None:
        self.reason = reason
        self.request_id = request_id
        super().__init__(f"Payment hold failed: {reason}")


class DownstreamNotificationFailure(DispatchError):
    """A notification exhausted its retries.

    Only ever recorded in the dead-letter log and logged; never raised to
    callers of the lifecycle.
    """

    def __init__(self, user_id: uuid.UUID, attempts: int, cause: Exception) -> None:
        self.user_id = user_id
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"Notification to '{user_id}' failed after {attempts} attempts: {cause}"
        )
