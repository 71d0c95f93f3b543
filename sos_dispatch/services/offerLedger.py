"""
Offer Ledger
============

Records provider offers on emergency requests and commits exactly one of
them.

``accept_winner`` is the only critical section in dispatch.  It relies on a
single conditional UPDATE of the parent request::

    UPDATE emergency_requests
       SET status='accepted', provider_id=:p, version=version+1, ...
     WHERE id=:id AND status='pending' AND version=:expected

Exactly one concurrent caller can match that predicate; everyone else sees
zero affected rows and gets ``ConflictError``.  The winning offer and the
rejection of every sibling are written in the same transaction.

All functions flush but never commit; the caller owns the transaction.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from sos_dispatch.models import (
    EmergencyOffer,
    EmergencyRequest,
    EmergencyStatus,
    OfferStatus,
)
from sos_dispatch.services.errors import (
    ConflictError,
    IllegalTransitionError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_MAX_ETA_LABEL_LENGTH = 100


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Quote:
    """A provider's price and timing for one request."""
    price_per_hour_cents: int
    min_hours: int
    eta_label: str

    @property
    def amount_cents(self) -> int:
        return self.price_per_hour_cents * self.min_hours

    def validate(self) -> None:
        """Raise ``ValidationError`` unless every value is usable."""
        if self.price_per_hour_cents <= 0:
            raise ValidationError("price_per_hour_cents", "must be positive")
        if self.min_hours <= 0:
            raise ValidationError("min_hours", "must be positive")
        label = (self.eta_label or "").strip()
        if not label:
            raise ValidationError("eta_label", "must not be empty")
        if len(label) > _MAX_ETA_LABEL_LENGTH:
            raise ValidationError(
                "eta_label", f"must be at most {_MAX_ETA_LABEL_LENGTH} characters"
            )


@dataclass(frozen=True)
class AcceptResult:
    """Outcome of a successful ``accept_winner``."""
    offer: EmergencyOffer
    request: EmergencyRequest
    rejected_provider_ids: tuple[uuid.UUID, ...]


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _now() -> datetime:
    return datetime.now(timezone.utc)


async def _load_request(db: AsyncSession, request_id: uuid.UUID) -> EmergencyRequest:
    result = await db.execute(
        select(EmergencyRequest).where(EmergencyRequest.id == request_id)
    )
    request = result.scalar_one_or_none()
    if request is None:
        raise NotFoundError("EmergencyRequest", request_id)
    return request


async def get_offer(
    db: AsyncSession,
    request_id: uuid.UUID,
    provider_id: uuid.UUID,
) -> Optional[EmergencyOffer]:
    """Return the provider's offer on the request, if any."""
    result = await db.execute(
        select(EmergencyOffer).where(
            EmergencyOffer.request_id == request_id,
            EmergencyOffer.provider_id == provider_id,
        )
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Public service functions
# ---------------------------------------------------------------------------

async def submit(
    db: AsyncSession,
    request_id: uuid.UUID,
    provider_id: uuid.UUID,
    quote: Quote,
) -> EmergencyOffer:
    """Record a pending offer from ``provider_id``.

    Args:
        db: Async database session.
        request_id: Target emergency request.
        provider_id: The quoting provider.
        quote: Price per hour, minimum hours and ETA label.

    Returns:
        The newly created pending EmergencyOffer.

    Raises:
        ValidationError: Quote values are not positive or the ETA is empty.
        NotFoundError: The request does not exist.
        IllegalTransitionError: The request is no longer pending.
        ConflictError: The provider already offered on this request.
    """
    quote.validate()

    request = await _load_request(db, request_id)
    if request.status != EmergencyStatus.PENDING:
        raise IllegalTransitionError(
            f"Request {request_id} is '{request.status.value}' and no longer "
            "accepts offers."
        )
    if request.client_id == provider_id:
        raise ValidationError("provider_id", "cannot offer on your own request")

    if await get_offer(db, request_id, provider_id) is not None:
        raise ConflictError(
            f"Provider {provider_id} already submitted an offer for request {request_id}.",
            request_id=request_id,
        )

    # Row lock on the parent; an accept committed since the read above wins
    still_open = await db.execute(
        update(EmergencyRequest)
        .where(
            EmergencyRequest.id == request_id,
            EmergencyRequest.status == EmergencyStatus.PENDING,
        )
        .values(updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    if still_open.rowcount != 1:
        logger.info(
            "Offer refused, request %s stopped being pending: provider=%s",
            request_id, provider_id,
        )
        raise IllegalTransitionError(
            f"Request {request_id} is no longer pending and no longer accepts offers."
        )

    offer = EmergencyOffer(
        request_id=request_id,
        provider_id=provider_id,
        status=OfferStatus.PENDING,
        price_per_hour_cents=quote.price_per_hour_cents,
        min_hours=quote.min_hours,
        eta_label=quote.eta_label.strip(),
    )
    db.add(offer)
    await db.flush()

    logger.info(
        "Offer submitted: request=%s provider=%s offer=%s price=%d/h min=%dh eta=%r",
        request_id, provider_id, offer.id,
        quote.price_per_hour_cents, quote.min_hours, quote.eta_label,
    )
    return offer


async def accept_winner(
    db: AsyncSession,
    request_id: uuid.UUID,
    provider_id: uuid.UUID,
    expected_version: int,
) -> AcceptResult:
    """Commit ``provider_id``'s offer as the single winner of the request.

    Steps, all in the caller's transaction:
      1. The target offer must exist on this request.
      2. Conditional write on the request: ``pending -> accepted`` only if
         status is still pending and the version equals ``expected_version``.
      3. Target offer ``-> accepted``.
      4. Every other pending offer ``-> rejected``.

    Raises:
        NotFoundError: No offer from this provider on this request.
        ConflictError: The request changed underneath (lost race).
    """
    offer = await get_offer(db, request_id, provider_id)
    if offer is None:
        raise NotFoundError("EmergencyOffer", f"{request_id}/{provider_id}")

    now = _now()

    # 2. The compare-and-swap
    cas = await db.execute(
        update(EmergencyRequest)
        .where(
            EmergencyRequest.id == request_id,
            EmergencyRequest.status == EmergencyStatus.PENDING,
            EmergencyRequest.version == expected_version,
        )
        .values(
            status=EmergencyStatus.ACCEPTED,
            provider_id=provider_id,
            accepted_at=now,
            version=EmergencyRequest.version + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if cas.rowcount != 1:
        logger.warning(
            "Accept lost race: request=%s provider=%s expected_version=%d",
            request_id, provider_id, expected_version,
        )
        raise ConflictError(
            f"Request {request_id} was modified concurrently; refresh and retry.",
            request_id=request_id,
        )

    # 3. Winner
    won = await db.execute(
        update(EmergencyOffer)
        .where(
            EmergencyOffer.id == offer.id,
            EmergencyOffer.status == OfferStatus.PENDING,
        )
        .values(status=OfferStatus.ACCEPTED, responded_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if won.rowcount != 1:
        raise NotFoundError("pending EmergencyOffer", offer.id)

    # 4. Siblings
    sibling_rows = await db.execute(
        select(EmergencyOffer.provider_id).where(
            EmergencyOffer.request_id == request_id,
            EmergencyOffer.id != offer.id,
            EmergencyOffer.status == OfferStatus.PENDING,
        )
    )
    rejected = tuple(sibling_rows.scalars().all())
    if rejected:
        await db.execute(
            update(EmergencyOffer)
            .where(
                EmergencyOffer.request_id == request_id,
                EmergencyOffer.id != offer.id,
                EmergencyOffer.status == OfferStatus.PENDING,
            )
            .values(status=OfferStatus.REJECTED, responded_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    await db.flush()
    request = await _load_request(db, request_id)
    await db.refresh(request)
    await db.refresh(offer)

    logger.info(
        "Offer accepted: request=%s provider=%s offer=%s rejected=%d version=%d",
        request_id, provider_id, offer.id, len(rejected), request.version,
    )
    return AcceptResult(offer=offer, request=request, rejected_provider_ids=rejected)


async def reject_all_pending(db: AsyncSession, request_id: uuid.UUID) -> list[uuid.UUID]:
    """Reject every pending offer on the request.

    Returns:
        Provider ids whose offers were rejected.
    """
    rows = await db.execute(
        select(EmergencyOffer.provider_id).where(
            EmergencyOffer.request_id == request_id,
            EmergencyOffer.status == OfferStatus.PENDING,
        )
    )
    provider_ids = list(rows.scalars().all())
    if not provider_ids:
        return []

    now = _now()
    await db.execute(
        update(EmergencyOffer)
        .where(
            EmergencyOffer.request_id == request_id,
            EmergencyOffer.status == OfferStatus.PENDING,
        )
        .values(status=OfferStatus.REJECTED, responded_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    logger.info("Rejected %d pending offers on request %s", len(provider_ids), request_id)
    return provider_ids


async def list_for_request(db: AsyncSession, request_id: uuid.UUID) -> list[EmergencyOffer]:
    result = await db.execute(
        select(EmergencyOffer)
        .where(EmergencyOffer.request_id == request_id)
        .order_by(EmergencyOffer.created_at)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def list_for_provider(db: AsyncSession, provider_id: uuid.UUID) -> list[EmergencyOffer]:
    """All offers by the provider, newest first, with their requests loaded."""
    result = await db.execute(
        select(EmergencyOffer)
        .where(EmergencyOffer.provider_id == provider_id)
        .options(selectinload(EmergencyOffer.request))
        .order_by(EmergencyOffer.created_at.desc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())
