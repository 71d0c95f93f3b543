"""
Emergency Event Payloads
========================

Builders for the payloads pushed to the tracking channel whenever an
emergency request changes.  Each emitter logs the event and returns the
payload dict; the caller decides where it is published.

Events emitted:
  - emergency.created
  - emergency.offer_submitted
  - emergency.status_changed
  - emergency.location_updated
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


def _build_event(
    event_type: str,
    request_id: uuid.UUID,
    *,
    data: dict[str, Any] | None = None,
    actor_id: uuid.UUID | None = None,
) -> dict[str, Any]:
    """Construct a standardised event payload."""
    return {
        "event_type": event_type,
        "request_id": str(request_id),
        "actor_id": str(actor_id) if actor_id else None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": data or {},
    }


def emit_emergency_created(
    request_id: uuid.UUID,
    client_id: uuid.UUID,
    category: str,
    eligible_count: int,
) -> dict[str, Any]:
    """Emit event when a new emergency request is created."""
    event = _build_event(
        "emergency.created",
        request_id,
        actor_id=client_id,
        data={
            "status": "pending",
            "category": category,
            "eligible_count": eligible_count,
        },
    )
    logger.info(
        "Event emitted: %s for request %s (eligible=%d)",
        event["event_type"], request_id, eligible_count,
    )
    return event


def emit_offer_submitted(
    request_id: uuid.UUID,
    provider_id: uuid.UUID,
    offer_id: uuid.UUID,
    eta_label: str,
) -> dict[str, Any]:
    """Emit event when a provider quotes on a request."""
    event = _build_event(
        "emergency.offer_submitted",
        request_id,
        actor_id=provider_id,
        data={"offer_id": str(offer_id), "eta_label": eta_label},
    )
    logger.info("Event emitted: %s for request %s", event["event_type"], request_id)
    return event


def emit_status_changed(
    request_id: uuid.UUID,
    old_status: str,
    new_status: str,
    *,
    actor_id: uuid.UUID | None = None,
    provider_id: uuid.UUID | None = None,
    version: int | None = None,
) -> dict[str, Any]:
    """Emit event when a request transitions between states."""
    event = _build_event(
        "emergency.status_changed",
        request_id,
        actor_id=actor_id,
        data={
            "old_status": old_status,
            "status": new_status,
            "provider_id": str(provider_id) if provider_id else None,
            "version": version,
        },
    )
    logger.info(
        "Event emitted: %s for request %s (%s -> %s)",
        event["event_type"], request_id, old_status, new_status,
    )
    return event


def emit_location_updated(
    request_id: uuid.UUID,
    provider_id: uuid.UUID,
    lat: float,
    lng: float,
) -> dict[str, Any]:
    """Emit event carrying the committed provider's latest position."""
    event = _build_event(
        "emergency.location_updated",
        request_id,
        actor_id=provider_id,
        data={"lat": lat, "lng": lng},
    )
    logger.debug("Event emitted: %s for request %s", event["event_type"], request_id)
    return event
