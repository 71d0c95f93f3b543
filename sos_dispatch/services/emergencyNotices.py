"""
Notification templates for the emergency flow.

Each builder returns a ``Notice`` for exactly one recipient; the
broadcaster delivers them.  ``action_ref`` is the in-app route the client
opens when the notification is tapped.
"""

from __future__ import annotations

import uuid
from typing import Optional

from sos_dispatch.services.ports import Notice


def _request_ref(request_id: uuid.UUID) -> str:
    return f"/emergency/{request_id}"


def emergency_call(provider_id: uuid.UUID, request_id: uuid.UUID, category: str) -> Notice:
    return Notice(
        user_id=provider_id,
        title="EMERGENCY CALL",
        message=f"New emergency request for {category} near you. Immediate response needed.",
        action_ref=f"{_request_ref(request_id)}/respond",
        kind="emergency_call",
        request_id=request_id,
    )


def offer_received(
    client_id: uuid.UUID,
    request_id: uuid.UUID,
    provider_id: uuid.UUID,
    eta_label: str,
) -> Notice:
    return Notice(
        user_id=client_id,
        title="New offer for your emergency",
        message=f"Provider {provider_id} can help. ETA: {eta_label}.",
        action_ref=_request_ref(request_id),
        kind="offer_received",
        request_id=request_id,
    )


def offer_accepted(provider_id: uuid.UUID, request_id: uuid.UUID) -> Notice:
    return Notice(
        user_id=provider_id,
        title="Your offer was accepted",
        message="The client chose you. Head to the location as soon as possible.",
        action_ref=f"{_request_ref(request_id)}/respond",
        kind="offer_accepted",
        request_id=request_id,
    )


def offer_rejected(provider_id: uuid.UUID, request_id: uuid.UUID) -> Notice:
    return Notice(
        user_id=provider_id,
        title="Emergency assigned to another provider",
        message="The client selected a different offer. Thank you for responding.",
        action_ref=None,
        kind="offer_rejected",
        request_id=request_id,
    )


def journey_started(client_id: uuid.UUID, request_id: uuid.UUID) -> Notice:
    return Notice(
        user_id=client_id,
        title="Provider on the way",
        message="Your provider has started the journey to your location.",
        action_ref=_request_ref(request_id),
        kind="journey_started",
        request_id=request_id,
    )


def request_completed(client_id: uuid.UUID, request_id: uuid.UUID) -> Notice:
    return Notice(
        user_id=client_id,
        title="Emergency service completed",
        message="Your provider marked the service as completed.",
        action_ref=_request_ref(request_id),
        kind="request_completed",
        request_id=request_id,
    )


def request_cancelled(
    provider_id: uuid.UUID,
    request_id: uuid.UUID,
    reason: Optional[str] = None,
) -> Notice:
    return Notice(
        user_id=provider_id,
        title="Emergency request cancelled",
        message=reason or "The client cancelled this emergency request.",
        action_ref=None,
        kind="request_cancelled",
        request_id=request_id,
    )


def search_still_active(client_id: uuid.UUID, request_id: uuid.UUID, offer_count: int) -> Notice:
    if offer_count:
        message = f"Your search is still active. You have {offer_count} offer(s) to review."
    else:
        message = "Your search is still active. We are still looking for a provider nearby."
    return Notice(
        user_id=client_id,
        title="Still searching",
        message=message,
        action_ref=_request_ref(request_id),
        kind="search_reminder",
        request_id=request_id,
    )


def request_expired(client_id: uuid.UUID, request_id: uuid.UUID) -> Notice:
    return Notice(
        user_id=client_id,
        title="Emergency request expired",
        message="No offer was accepted in time, so your request was closed. You can submit a new one.",
        action_ref=_request_ref(request_id),
        kind="request_expired",
        request_id=request_id,
    )
