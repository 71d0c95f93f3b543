"""
Provider API Routes
===================

Routes:
  POST   /api/v1/providers/me/presence     -- Heartbeat / online toggle
  GET    /api/v1/providers/me/emergencies  -- The provider's offers, grouped
"""

from __future__ import annotations

import logging

from fastapi import APIRouter

from sos_dispatch.api.deps import CurrentProvider, DBSession, Directory, Lifecycle
from sos_dispatch.api.schemas.emergency import (
    EmergencyOut,
    OfferOut,
    PresenceOut,
    PresenceUpdateRequest,
    ProviderEmergencyBoard,
    ProviderEmergencyItem,
)
from sos_dispatch.models import EmergencyStatus, OfferStatus
from sos_dispatch.services import offerLedger
from sos_dispatch.services.providerDirectory import to_snapshot

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/providers", tags=["Providers"])


# ---------------------------------------------------------------------------
# POST /api/v1/providers/me/presence
# ---------------------------------------------------------------------------

@router.post(
    "/me/presence",
    response_model=PresenceOut,
    summary="Provider heartbeat",
    description=(
        "Overwrites the provider's presence (last write wins). While the "
        "provider is committed to an emergency the location is also pushed "
        "to that request's tracking channel."
    ),
)
async def update_presence(
    body: PresenceUpdateRequest,
    provider: CurrentProvider,
    directory: Directory,
    lifecycle: Lifecycle,
    db: DBSession,
) -> PresenceOut:
    lat = body.location.lat if body.location else None
    lng = body.location.lng if body.location else None

    row = await directory.record_heartbeat(
        provider.user_id,
        is_online=body.is_online,
        lat=lat,
        lng=lng,
        service_radius_km=body.service_radius_km,
    )
    await db.commit()
    snapshot = to_snapshot(row)

    tracking_request_id = None
    if lat is not None and lng is not None:
        tracking_request_id = await lifecycle.report_location(
            provider.user_id, lat, lng, seq=body.seq
        )

    return PresenceOut(
        provider_id=snapshot.provider_id,
        is_online=snapshot.is_online,
        lat=snapshot.lat,
        lng=snapshot.lng,
        service_radius_km=snapshot.radius_km,
        emergency_calls=row.has_emergency_calls,
        tracking_request_id=tracking_request_id,
    )


# ---------------------------------------------------------------------------
# GET /api/v1/providers/me/emergencies
# ---------------------------------------------------------------------------

_ACTIVE = (EmergencyStatus.ACCEPTED, EmergencyStatus.IN_PROGRESS)


@router.get(
    "/me/emergencies",
    response_model=ProviderEmergencyBoard,
    summary="The provider's emergency offers grouped by state",
)
async def list_my_emergencies(
    provider: CurrentProvider,
    db: DBSession,
) -> ProviderEmergencyBoard:
    board = ProviderEmergencyBoard()
    for offer in await offerLedger.list_for_provider(db, provider.user_id):
        item = ProviderEmergencyItem(
            offer=OfferOut.model_validate(offer),
            request=EmergencyOut.model_validate(offer.request),
        )
        if offer.status == OfferStatus.REJECTED:
            board.refused.append(item)
        elif offer.status == OfferStatus.ACCEPTED:
            if offer.request.status in _ACTIVE:
                board.active.append(item)
            else:
                board.concluded.append(item)
        else:
            board.new.append(item)
    return board
