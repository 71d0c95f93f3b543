"""
Request Lifecycle
=================

Drives an emergency request from creation to a terminal state::

    pending --> accepted --> in_progress --> completed
       +--> cancelled

Every status write is a conditional UPDATE keyed on ``(status, version)``
and bumps ``version``; losing that race raises ``ConflictError``.  The
transition table itself lives in ``emergencyStateManager``.

Ordering rules:
  - Persistence comes first and its errors propagate to the caller.
  - Side effects (notifications, conversation, tracking) run only after a
    successful commit and never fail the operation; they are logged.
  - On accept the payment hold is placed *before* commit.  A hold failure
    rolls the accept back; a commit failure releases the hold.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from sos_dispatch.events import emergencyEvents
from sos_dispatch.models import EmergencyOffer, EmergencyRequest, EmergencyStatus
from sos_dispatch.realtime.trackingChannel import TrackingChannel
from sos_dispatch.services import emergencyNotices, offerLedger
from sos_dispatch.services.dispatchBroadcaster import DispatchBroadcaster, DispatchTicket
from sos_dispatch.services.eligibilityResolver import EligibilityResolver
from sos_dispatch.services.emergencyStateManager import ActorType, ensure_transition
from sos_dispatch.services.errors import (
    ConflictError,
    ForbiddenActorError,
    NotFoundError,
    PaymentHoldError,
    ValidationError,
)
from sos_dispatch.services.geoMath import is_valid_location
from sos_dispatch.services.offerLedger import Quote
from sos_dispatch.services.ports import ConversationStore, Notice, PaymentHold

logger = logging.getLogger(__name__)

AWAITING_OFFERS = "awaiting_offers"
NO_ELIGIBLE_PROVIDERS = "no_eligible_providers"

_ACTIVE_STATUSES = (EmergencyStatus.ACCEPTED, EmergencyStatus.IN_PROGRESS)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CreateOutcome:
    request: EmergencyRequest
    eligible_count: int
    dispatch_outcome: str
    ticket: Optional[DispatchTicket] = None


@dataclass(frozen=True)
class AcceptOutcome:
    request: EmergencyRequest
    offer: EmergencyOffer
    rejected_provider_ids: tuple[uuid.UUID, ...]
    hold_ref: str
    conversation_id: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class CancelOutcome:
    request: EmergencyRequest
    notified_provider_ids: tuple[uuid.UUID, ...]


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class RequestLifecycle:
    """State machine for one unit of work (one ``AsyncSession``)."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        resolver: EligibilityResolver,
        broadcaster: DispatchBroadcaster,
        conversations: ConversationStore,
        payments: PaymentHold,
        tracking: Optional[TrackingChannel] = None,
    ) -> None:
        self.db = db
        self.resolver = resolver
        self.broadcaster = broadcaster
        self.conversations = conversations
        self.payments = payments
        self.tracking = tracking

    # -- reads --------------------------------------------------------------

    async def get(self, request_id: uuid.UUID) -> EmergencyRequest:
        """Load the request fresh from the database.

        Raises:
            NotFoundError: Unknown request id.
        """
        result = await self.db.execute(
            select(EmergencyRequest)
            .where(EmergencyRequest.id == request_id)
            .execution_options(populate_existing=True)
        )
        request = result.scalar_one_or_none()
        if request is None:
            raise NotFoundError("EmergencyRequest", request_id)
        return request

    async def list_offers(self, request_id: uuid.UUID) -> list[EmergencyOffer]:
        await self.get(request_id)
        return await offerLedger.list_for_request(self.db, request_id)

    async def active_request_for_provider(
        self, provider_id: uuid.UUID
    ) -> Optional[EmergencyRequest]:
        """The request the provider is currently committed to, if any."""
        result = await self.db.execute(
            select(EmergencyRequest)
            .where(
                EmergencyRequest.provider_id == provider_id,
                EmergencyRequest.status.in_(_ACTIVE_STATUSES),
            )
            .order_by(EmergencyRequest.accepted_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    # -- create -------------------------------------------------------------

    async def create(
        self,
        client_id: uuid.UUID,
        category: str,
        lat: float,
        lng: float,
        *,
        service_id: Optional[uuid.UUID] = None,
        description: Optional[str] = None,
        address: Optional[str] = None,
        price_multiplier: float = 1.0,
    ) -> CreateOutcome:
        """Persist a pending request and start the broadcast.

        The broadcast runs in the background; this returns as soon as the
        request is committed.  Zero eligible providers is a normal outcome.

        Raises:
            ValidationError: Bad location, category or multiplier.
        """
        slug = (category or "").strip().lower()
        if not slug:
            raise ValidationError("category", "must not be empty")
        if not is_valid_location(lat, lng):
            raise ValidationError("location", f"({lat}, {lng}) is not a valid coordinate")
        if price_multiplier < 1:
            raise ValidationError("price_multiplier", "must be at least 1.0")

        request = EmergencyRequest(
            client_id=client_id,
            category=slug,
            service_id=service_id,
            description=description,
            address=address,
            latitude=Decimal(str(lat)),
            longitude=Decimal(str(lng)),
            price_multiplier=Decimal(str(price_multiplier)),
            status=EmergencyStatus.PENDING,
            version=1,
        )
        self.db.add(request)
        await self.db.flush()

        eligibility = await self.resolver.resolve(
            (lat, lng),
            category=slug,
            service_id=service_id,
            exclude_user_id=client_id,
        )
        request.eligible_provider_count = eligibility.count
        await self.db.commit()

        logger.info(
            "Emergency created: request=%s client=%s category=%s eligible=%d",
            request.id, client_id, slug, eligibility.count,
        )

        ticket = self.broadcaster.broadcast(
            [
                emergencyNotices.emergency_call(pid, request.id, slug)
                for pid in sorted(eligibility.provider_ids, key=str)
            ],
            request_id=request.id,
        )

        await self._publish_status(
            request,
            emergencyEvents.emit_emergency_created(
                request.id, client_id, slug, eligibility.count
            ),
        )

        return CreateOutcome(
            request=request,
            eligible_count=eligibility.count,
            dispatch_outcome=AWAITING_OFFERS if eligibility.count else NO_ELIGIBLE_PROVIDERS,
            ticket=ticket,
        )

    # -- offers -------------------------------------------------------------

    async def submit_offer(
        self,
        request_id: uuid.UUID,
        provider_id: uuid.UUID,
        quote: Quote,
    ) -> EmergencyOffer:
        """Record a provider's quote and tell the client about it."""
        try:
            offer = await offerLedger.submit(self.db, request_id, provider_id, quote)
            request = await self.get(request_id)
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            raise ConflictError(
                f"Provider {provider_id} already submitted an offer for request {request_id}.",
                request_id=request_id,
            ) from exc
        except Exception:
            await self.db.rollback()
            raise

        self._notify([
            emergencyNotices.offer_received(
                request.client_id, request_id, provider_id, offer.eta_label
            )
        ], request_id)

        emergencyEvents.emit_offer_submitted(
            request_id, provider_id, offer.id, offer.eta_label
        )
        return offer

    # -- accept -------------------------------------------------------------

    async def accept(
        self,
        request_id: uuid.UUID,
        client_id: uuid.UUID,
        provider_id: uuid.UUID,
        expected_version: Optional[int] = None,
    ) -> AcceptOutcome:
        """Commit the client to ``provider_id``'s offer.

        Args:
            request_id: The pending request.
            client_id: Must be the request owner.
            provider_id: Provider whose offer wins.
            expected_version: Version the client last saw; defaults to the
                version read at the start of this call.

        Raises:
            NotFoundError: Unknown request, or no offer from the provider.
            ForbiddenActorError: Caller does not own the request.
            IllegalTransitionError: Request is not pending.
            ConflictError: Lost the race against another accept or a cancel.
            PaymentHoldError: The hold was refused; request stays pending.
        """
        request = await self.get(request_id)
        if request.client_id != client_id:
            raise ForbiddenActorError(client_id, "accept offers on this request")
        ensure_transition(request.status, EmergencyStatus.ACCEPTED, ActorType.CLIENT)

        version = expected_version if expected_version is not None else request.version

        try:
            result = await offerLedger.accept_winner(
                self.db, request_id, provider_id, version
            )
        except Exception:
            await self.db.rollback()
            raise

        amount_cents = result.offer.quoted_amount_cents
        try:
            hold_ref = await self.payments.place(
                request_id, client_id, provider_id, amount_cents
            )
        except Exception as exc:
            await self.db.rollback()
            logger.warning(
                "Payment hold refused, accept rolled back: request=%s provider=%s "
                "amount=%d: %s",
                request_id, provider_id, amount_cents, exc,
            )
            raise PaymentHoldError(str(exc), request_id=request_id) from exc

        try:
            await self.db.execute(
                update(EmergencyRequest)
                .where(EmergencyRequest.id == request_id)
                .values(payment_hold_ref=hold_ref)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.error(
                "Commit failed after hold %s was placed for request %s; releasing",
                hold_ref, request_id,
            )
            await self._release_hold(hold_ref)
            raise

        request = result.request
        set_committed_value(request, "payment_hold_ref", hold_ref)

        logger.info(
            "Emergency accepted: request=%s provider=%s hold=%s version=%d",
            request_id, provider_id, hold_ref, request.version,
        )

        conversation_id: Optional[uuid.UUID] = None
        try:
            conversation_id = await self.conversations.get_or_create(
                request_id, client_id, provider_id
            )
        except Exception:
            logger.exception("Could not open conversation for request %s", request_id)

        self._notify(
            [emergencyNotices.offer_accepted(provider_id, request_id)]
            + [
                emergencyNotices.offer_rejected(pid, request_id)
                for pid in result.rejected_provider_ids
            ],
            request_id,
        )

        await self._publish_status(
            request,
            emergencyEvents.emit_status_changed(
                request_id,
                EmergencyStatus.PENDING.value,
                EmergencyStatus.ACCEPTED.value,
                actor_id=client_id,
                provider_id=provider_id,
                version=request.version,
            ),
        )

        return AcceptOutcome(
            request=request,
            offer=result.offer,
            rejected_provider_ids=result.rejected_provider_ids,
            hold_ref=hold_ref,
            conversation_id=conversation_id,
        )

    # -- provider progress --------------------------------------------------

    async def start_journey(
        self, request_id: uuid.UUID, provider_id: uuid.UUID
    ) -> EmergencyRequest:
        """Committed provider sets off: ``accepted -> in_progress``."""
        request = await self._load_for_provider(request_id, provider_id, "start this request")
        request = await self._transition(
            request, EmergencyStatus.IN_PROGRESS, ActorType.PROVIDER, actor_id=provider_id
        )
        self._notify([emergencyNotices.journey_started(request.client_id, request_id)], request_id)
        return request

    async def complete(
        self, request_id: uuid.UUID, provider_id: uuid.UUID
    ) -> EmergencyRequest:
        """Committed provider finishes: ``accepted|in_progress -> completed``."""
        request = await self._load_for_provider(request_id, provider_id, "complete this request")
        request = await self._transition(
            request,
            EmergencyStatus.COMPLETED,
            ActorType.PROVIDER,
            actor_id=provider_id,
            completed_at=_now(),
        )
        self._notify([emergencyNotices.request_completed(request.client_id, request_id)], request_id)
        return request

    # -- cancellation -------------------------------------------------------

    async def cancel(self, request_id: uuid.UUID, client_id: uuid.UUID) -> CancelOutcome:
        """Client withdraws a pending request.

        Raises:
            ForbiddenActorError: Caller does not own the request.
            InterventionRequiredError: A provider is already committed.
            IllegalTransitionError: The request is already terminal.
            ConflictError: The request changed while cancelling.
        """
        request = await self.get(request_id)
        if request.client_id != client_id:
            raise ForbiddenActorError(client_id, "cancel this request")
        return await self._cancel(request, ActorType.CLIENT, actor_id=client_id)

    async def expire(self, request_id: uuid.UUID) -> CancelOutcome:
        """System cancellation of a request nobody was committed to in time."""
        request = await self.get(request_id)
        outcome = await self._cancel(request, ActorType.SYSTEM, actor_id=None)
        self._notify(
            [emergencyNotices.request_expired(request.client_id, request_id)], request_id
        )
        return outcome

    # -- reminders ----------------------------------------------------------

    async def remind_pending(self, request_id: uuid.UUID) -> bool:
        """Tell the client their search is still running.

        Returns False when the request is no longer pending.
        """
        request = await self.get(request_id)
        if request.status != EmergencyStatus.PENDING:
            return False

        offers = await offerLedger.list_for_request(self.db, request_id)
        result = await self.db.execute(
            update(EmergencyRequest)
            .where(
                EmergencyRequest.id == request_id,
                EmergencyRequest.status == EmergencyStatus.PENDING,
            )
            .values(last_reminded_at=_now())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            return False

        self._notify(
            [emergencyNotices.search_still_active(request.client_id, request_id, len(offers))],
            request_id,
        )
        return True

    # -- location -----------------------------------------------------------

    async def report_location(
        self,
        provider_id: uuid.UUID,
        lat: float,
        lng: float,
        seq: Optional[int] = None,
    ) -> Optional[uuid.UUID]:
        """Forward a provider heartbeat to their active request's channel.

        Returns the request id the location was published to, if any.
        """
        request = await self.active_request_for_provider(provider_id)
        if request is None or self.tracking is None:
            return None
        emergencyEvents.emit_location_updated(request.id, provider_id, lat, lng)
        await self.tracking.publish_location(request.id, provider_id, lat, lng, seq=seq)
        return request.id

    # -- internals ----------------------------------------------------------

    async def _load_for_provider(
        self, request_id: uuid.UUID, provider_id: uuid.UUID, action: str
    ) -> EmergencyRequest:
        request = await self.get(request_id)
        if request.provider_id != provider_id:
            raise ForbiddenActorError(provider_id, action)
        return request

    async def _transition(
        self,
        request: EmergencyRequest,
        new_status: EmergencyStatus,
        actor: ActorType,
        *,
        actor_id: Optional[uuid.UUID],
        **values: Any,
    ) -> EmergencyRequest:
        """Validate, then conditionally write ``new_status`` and commit."""
        request_id = request.id
        old_status = request.status
        old_version = request.version
        ensure_transition(old_status, new_status, actor)

        now = _now()
        result = await self.db.execute(
            update(EmergencyRequest)
            .where(
                EmergencyRequest.id == request_id,
                EmergencyRequest.status == old_status,
                EmergencyRequest.version == old_version,
            )
            .values(
                status=new_status,
                version=EmergencyRequest.version + 1,
                updated_at=now,
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # rollback expires ``request``; only the locals are safe below
            await self.db.rollback()
            logger.warning(
                "Transition lost race: request=%s %s -> %s (version %d)",
                request_id, old_status.value, new_status.value, old_version,
            )
            raise ConflictError(
                f"Request {request_id} was modified concurrently; refresh and retry.",
                request_id=request_id,
            )

        await self.db.flush()
        await self.db.refresh(request)
        await self.db.commit()

        logger.info(
            "Emergency %s: %s -> %s (actor=%s, version=%d)",
            request.id, old_status.value, new_status.value, actor.value, request.version,
        )

        await self._publish_status(
            request,
            emergencyEvents.emit_status_changed(
                request.id,
                old_status.value,
                new_status.value,
                actor_id=actor_id,
                provider_id=request.provider_id,
                version=request.version,
            ),
        )
        return request

    async def _cancel(
        self,
        request: EmergencyRequest,
        actor: ActorType,
        *,
        actor_id: Optional[uuid.UUID],
    ) -> CancelOutcome:
        request_id = request.id
        ensure_transition(request.status, EmergencyStatus.CANCELLED, actor)

        offered = await offerLedger.reject_all_pending(self.db, request_id)
        request = await self._transition(
            request,
            EmergencyStatus.CANCELLED,
            actor,
            actor_id=actor_id,
            cancelled_at=_now(),
        )

        self._notify(
            [emergencyNotices.request_cancelled(pid, request_id) for pid in offered],
            request_id,
        )
        return CancelOutcome(request=request, notified_provider_ids=tuple(offered))

    def _notify(self, notices: list[Notice], request_id: uuid.UUID) -> None:
        try:
            self.broadcaster.broadcast(notices, request_id=request_id)
        except Exception:
            logger.exception("Could not schedule notifications for request %s", request_id)

    async def _publish_status(self, request: EmergencyRequest, event: dict[str, Any]) -> None:
        if self.tracking is None:
            return
        await self.tracking.publish_status(request.id, request.version, event)

    async def _release_hold(self, hold_ref: str) -> None:
        try:
            await self.payments.release(hold_ref)
            logger.info("Payment hold %s released", hold_ref)
        except Exception:
            logger.exception("Could not release payment hold %s", hold_ref)
