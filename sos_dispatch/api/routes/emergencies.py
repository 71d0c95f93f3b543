"""
Emergency API Routes
====================

REST endpoints for the emergency dispatch lifecycle.

Routes:
  POST   /api/v1/emergencies                      -- Raise an emergency (client)
  GET    /api/v1/emergencies/{request_id}         -- Request detail
  GET    /api/v1/emergencies/{request_id}/offers  -- Offers on the request (owner)
  POST   /api/v1/emergencies/{request_id}/offers  -- Submit a quote (provider)
  POST   /api/v1/emergencies/{request_id}/accept  -- Commit to one provider (owner)
  POST   /api/v1/emergencies/{request_id}/start   -- Provider sets off
  POST   /api/v1/emergencies/{request_id}/complete -- Provider finishes
  POST   /api/v1/emergencies/{request_id}/cancel  -- Withdraw a pending request
  GET    /api/v1/emergencies/{request_id}/tracking -- Merged live snapshot
"""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, HTTPException, status

from sos_dispatch.api.deps import CurrentProvider, CurrentUser, Lifecycle, Tracking
from sos_dispatch.api.schemas.emergency import (
    AcceptRequest,
    AcceptResponse,
    CancelResponse,
    EmergencyCreateRequest,
    EmergencyCreateResponse,
    EmergencyOut,
    OfferCreateRequest,
    OfferOut,
    TrackingSnapshotOut,
)
from sos_dispatch.services.errors import (
    ConflictError,
    DispatchError,
    ForbiddenActorError,
    IllegalTransitionError,
    NotFoundError,
    PaymentHoldError,
    ValidationError,
)
from sos_dispatch.services.offerLedger import Quote

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/emergencies", tags=["Emergencies"])


# ---------------------------------------------------------------------------
# Domain error -> HTTP mapping
# ---------------------------------------------------------------------------

def to_http_exception(exc: DispatchError) -> HTTPException:
    """Map a dispatch domain error to the HTTP response the client sees."""
    if isinstance(exc, ValidationError):
        return HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, ForbiddenActorError):
        return HTTPException(status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, PaymentHoldError):
        return HTTPException(status.HTTP_402_PAYMENT_REQUIRED, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(
            status.HTTP_409_CONFLICT,
            detail={"message": str(exc), "refresh": True},
        )
    if isinstance(exc, IllegalTransitionError):
        return HTTPException(
            status.HTTP_409_CONFLICT,
            detail={
                "message": str(exc),
                "requires_intervention": exc.requires_intervention,
            },
        )
    logger.error("Unmapped dispatch error: %r", exc)
    return HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


# ---------------------------------------------------------------------------
# POST /api/v1/emergencies -- Raise an emergency
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=EmergencyCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Raise an emergency",
    description=(
        "Persists a pending emergency, resolves the eligible providers and "
        "starts notifying them in the background. ``eligible_count == 0`` "
        "with ``dispatch_outcome == 'no_eligible_providers'`` means nobody "
        "was reachable; the request still exists and can be cancelled."
    ),
)
async def create_emergency(
    body: EmergencyCreateRequest,
    user: CurrentUser,
    lifecycle: Lifecycle,
) -> EmergencyCreateResponse:
    try:
        outcome = await lifecycle.create(
            user.user_id,
            body.category,
            body.location.lat,
            body.location.lng,
            service_id=body.service_id,
            description=body.description,
            address=body.address,
            price_multiplier=body.price_multiplier,
        )
    except DispatchError as exc:
        raise to_http_exception(exc)

    return EmergencyCreateResponse(
        request=EmergencyOut.model_validate(outcome.request),
        eligible_count=outcome.eligible_count,
        dispatch_outcome=outcome.dispatch_outcome,
    )


# ---------------------------------------------------------------------------
# GET /api/v1/emergencies/{request_id}
# ---------------------------------------------------------------------------

@router.get(
    "/{request_id}",
    response_model=EmergencyOut,
    summary="Get emergency detail",
)
async def get_emergency(
    request_id: uuid.UUID,
    user: CurrentUser,
    lifecycle: Lifecycle,
) -> EmergencyOut:
    try:
        request = await lifecycle.get(request_id)
    except DispatchError as exc:
        raise to_http_exception(exc)

    # Providers need the detail to decide whether to respond
    if request.client_id != user.user_id and not user.is_provider:
        raise to_http_exception(ForbiddenActorError(user.user_id, "view this request"))
    return EmergencyOut.model_validate(request)


# ---------------------------------------------------------------------------
# Offers
# ---------------------------------------------------------------------------

@router.get(
    "/{request_id}/offers",
    response_model=list[OfferOut],
    summary="List offers on an emergency (owner only)",
)
async def list_offers(
    request_id: uuid.UUID,
    user: CurrentUser,
    lifecycle: Lifecycle,
) -> list[OfferOut]:
    try:
        request = await lifecycle.get(request_id)
        if request.client_id != user.user_id:
            raise ForbiddenActorError(user.user_id, "view offers on this request")
        offers = await lifecycle.list_offers(request_id)
    except DispatchError as exc:
        raise to_http_exception(exc)
    return [OfferOut.model_validate(o) for o in offers]


@router.post(
    "/{request_id}/offers",
    response_model=OfferOut,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a quote for an emergency",
)
async def submit_offer(
    request_id: uuid.UUID,
    body: OfferCreateRequest,
    provider: CurrentProvider,
    lifecycle: Lifecycle,
) -> OfferOut:
    quote = Quote(
        price_per_hour_cents=body.price_per_hour_cents,
        min_hours=body.min_hours,
        eta_label=body.eta_label,
    )
    try:
        offer = await lifecycle.submit_offer(request_id, provider.user_id, quote)
    except DispatchError as exc:
        raise to_http_exception(exc)
    return OfferOut.model_validate(offer)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

@router.post(
    "/{request_id}/accept",
    response_model=AcceptResponse,
    summary="Accept one provider's offer",
    description=(
        "Commits the request to the chosen provider, rejects every other "
        "offer and places the payment hold. A 409 means the request changed "
        "in the meantime; refresh and retry."
    ),
)
async def accept_offer(
    request_id: uuid.UUID,
    body: AcceptRequest,
    user: CurrentUser,
    lifecycle: Lifecycle,
) -> AcceptResponse:
    try:
        outcome = await lifecycle.accept(
            request_id,
            user.user_id,
            body.provider_id,
            expected_version=body.expected_version,
        )
    except DispatchError as exc:
        raise to_http_exception(exc)

    return AcceptResponse(
        request=EmergencyOut.model_validate(outcome.request),
        offer=OfferOut.model_validate(outcome.offer),
        rejected_provider_ids=list(outcome.rejected_provider_ids),
        conversation_id=outcome.conversation_id,
    )


@router.post(
    "/{request_id}/start",
    response_model=EmergencyOut,
    summary="Committed provider starts the journey",
)
async def start_journey(
    request_id: uuid.UUID,
    provider: CurrentProvider,
    lifecycle: Lifecycle,
) -> EmergencyOut:
    try:
        request = await lifecycle.start_journey(request_id, provider.user_id)
    except DispatchError as exc:
        raise to_http_exception(exc)
    return EmergencyOut.model_validate(request)


@router.post(
    "/{request_id}/complete",
    response_model=EmergencyOut,
    summary="Committed provider completes the job",
)
async def complete_emergency(
    request_id: uuid.UUID,
    provider: CurrentProvider,
    lifecycle: Lifecycle,
) -> EmergencyOut:
    try:
        request = await lifecycle.complete(request_id, provider.user_id)
    except DispatchError as exc:
        raise to_http_exception(exc)
    return EmergencyOut.model_validate(request)


@router.post(
    "/{request_id}/cancel",
    response_model=CancelResponse,
    summary="Cancel a pending emergency",
    description=(
        "Only pending requests can be cancelled by the client. Once a "
        "provider is committed the response is 409 with "
        "``requires_intervention: true``."
    ),
)
async def cancel_emergency(
    request_id: uuid.UUID,
    user: CurrentUser,
    lifecycle: Lifecycle,
) -> CancelResponse:
    try:
        outcome = await lifecycle.cancel(request_id, user.user_id)
    except DispatchError as exc:
        raise to_http_exception(exc)
    return CancelResponse(
        request=EmergencyOut.model_validate(outcome.request),
        notified_provider_ids=list(outcome.notified_provider_ids),
    )


# ---------------------------------------------------------------------------
# GET /api/v1/emergencies/{request_id}/tracking
# ---------------------------------------------------------------------------

@router.get(
    "/{request_id}/tracking",
    response_model=TrackingSnapshotOut,
    summary="Current merged tracking snapshot",
)
async def get_tracking(
    request_id: uuid.UUID,
    user: CurrentUser,
    lifecycle: Lifecycle,
    tracking: Tracking,
) -> TrackingSnapshotOut:
    try:
        request = await lifecycle.get(request_id)
        if user.user_id not in (request.client_id, request.provider_id):
            raise ForbiddenActorError(user.user_id, "track this request")
    except DispatchError as exc:
        raise to_http_exception(exc)

    snapshot = await tracking.snapshot(request_id)
    return TrackingSnapshotOut(**snapshot.as_dict())
