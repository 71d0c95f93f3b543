"""
Stripe Payment Hold
===================

Authorisation holds for accepted emergencies.  A hold is a PaymentIntent
for the client's default saved card, created with
``capture_method="manual"`` and confirmed server-side: the amount is
reserved once the intent reaches ``requires_capture`` and is only captured
when the job is billed (billing capture is handled elsewhere).  Releasing a
hold cancels the intent.

All monetary amounts are in cents (integers).  The blocking Stripe SDK calls
run in a worker thread so the event loop is never blocked.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

import stripe

from sos_dispatch.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Stripe SDK configuration
# ---------------------------------------------------------------------------

stripe.api_key = settings.stripe_secret_key
stripe.api_version = "2024-06-20"

CUSTOMER_USER_METADATA_KEY = "user_id"
HOLD_READY_STATUS = "requires_capture"


# ---------------------------------------------------------------------------
# Custom exception
# ---------------------------------------------------------------------------

class PaymentError(Exception):
    """Raised when a Stripe hold operation fails.

    Attributes:
        message: Human-readable error description.
        stripe_error_code: The Stripe error code, if available.
        stripe_error_type: The Stripe error type, if available.
        decline_code: The decline code from the card issuer, if available.
    """

    def __init__(
        self,
        message: str,
        stripe_error_code: str | None = None,
        stripe_error_type: str | None = None,
        decline_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stripe_error_code = stripe_error_code
        self.stripe_error_type = stripe_error_type
        self.decline_code = decline_code

    def __repr__(self) -> str:
        return (
            f"PaymentError(message={self.message!r}, "
            f"code={self.stripe_error_code!r}, "
            f"type={self.stripe_error_type!r})"
        )


@dataclass(frozen=True)
class HoldResult:
    """A placed authorisation hold."""
    id: str
    client_secret: Optional[str]
    status: str
    amount_cents: int
    currency: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _handle_stripe_error(exc: stripe.StripeError) -> PaymentError:
    """Convert a Stripe SDK exception into a PaymentError."""
    error_body = getattr(exc, "error", None)

    code = getattr(error_body, "code", None) if error_body else None
    error_type = getattr(error_body, "type", None) if error_body else None
    decline_code = getattr(error_body, "decline_code", None) if error_body else None

    logger.error(
        "Stripe API error: %s (code=%s, type=%s, decline_code=%s)",
        str(exc), code, error_type, decline_code,
    )

    return PaymentError(
        message=str(exc),
        stripe_error_code=code,
        stripe_error_type=error_type,
        decline_code=decline_code,
    )


# ---------------------------------------------------------------------------
# Customer lookup
# ---------------------------------------------------------------------------

async def find_customer_payment_method(client_id: uuid.UUID) -> tuple[str, str]:
    """Return ``(customer_id, default_payment_method_id)`` for a platform user.

    Customers are created by the account service with
    ``metadata[CUSTOMER_USER_METADATA_KEY] = <user id>`` and a default card in
    ``invoice_settings``.

    Raises:
        PaymentError: No customer, no default card, or the Stripe call failed.
    """
    query = f"metadata['{CUSTOMER_USER_METADATA_KEY}']:'{client_id}'"
    try:
        found = await asyncio.to_thread(stripe.Customer.search, query=query, limit=1)
    except stripe.StripeError as exc:
        raise _handle_stripe_error(exc) from exc

    customers = list(found.data)
    if not customers:
        raise PaymentError(f"No Stripe customer for user {client_id}.")
    customer = customers[0]

    invoice_settings = getattr(customer, "invoice_settings", None)
    method = getattr(invoice_settings, "default_payment_method", None) if invoice_settings else None
    if method is not None and not isinstance(method, str):
        method = method.id
    if not method:
        raise PaymentError(f"Customer {customer.id} has no default payment method.")
    return customer.id, method


# ---------------------------------------------------------------------------
# Hold operations
# ---------------------------------------------------------------------------

async def create_hold(
    request_id: uuid.UUID,
    provider_id: uuid.UUID,
    amount_cents: int,
    *,
    customer_id: str,
    payment_method_id: str,
    currency: Optional[str] = None,
) -> HoldResult:
    """Authorise ``amount_cents`` on the customer's saved card.

    The intent is confirmed server-side (``off_session``) with
    ``capture_method="manual"``; a hold exists only once the intent reaches
    ``requires_capture``.  Any other outcome cancels the intent.

    Raises:
        PaymentError: If Stripe refuses the authorisation.
        ValueError: If amount_cents is non-positive.
    """
    if amount_cents <= 0:
        raise ValueError(f"Hold amount must be positive, got {amount_cents}")

    currency = (currency or settings.currency).lower()
    params: dict = {
        "amount": amount_cents,
        "currency": currency,
        "customer": customer_id,
        "payment_method": payment_method_id,
        "payment_method_types": ["card"],
        "capture_method": "manual",
        "confirm": True,
        "off_session": True,
        "metadata": {
            "emergency_request_id": str(request_id),
            "provider_id": str(provider_id),
        },
    }

    try:
        intent = await asyncio.to_thread(
            stripe.PaymentIntent.create,
            idempotency_key=f"emergency-hold-{request_id}",
            **params,
        )
    except stripe.StripeError as exc:
        raise _handle_stripe_error(exc) from exc

    if intent.status != HOLD_READY_STATUS:
        logger.warning(
            "Hold not authorised: intent=%s request=%s status=%s",
            intent.id, request_id, intent.status,
        )
        try:
            await cancel_hold(intent.id)
        except PaymentError:
            logger.exception("Could not cancel unauthorised intent %s", intent.id)
        raise PaymentError(
            f"Card authorisation did not complete (status={intent.status}).",
        )

    logger.info(
        "Hold created: intent=%s request=%s amount=%d %s",
        intent.id, request_id, amount_cents, currency,
    )
    return HoldResult(
        id=intent.id,
        client_secret=getattr(intent, "client_secret", None),
        status=intent.status,
        amount_cents=amount_cents,
        currency=currency,
    )


async def cancel_hold(payment_intent_id: str) -> bool:
    """Cancel an uncaptured hold.

    Raises:
        PaymentError: If the cancellation fails (e.g., already captured).
    """
    try:
        intent = await asyncio.to_thread(
            stripe.PaymentIntent.cancel,
            payment_intent_id,
            cancellation_reason="abandoned",
        )
    except stripe.StripeError as exc:
        raise _handle_stripe_error(exc) from exc

    logger.info("Hold cancelled: intent=%s status=%s", intent.id, intent.status)
    return intent.status == "canceled"


class StripePaymentHold:
    """``PaymentHold`` port backed by Stripe manual-capture intents."""

    def __init__(self, currency: Optional[str] = None) -> None:
        self.currency = currency or settings.currency

    async def place(
        self,
        request_id: uuid.UUID,
        client_id: uuid.UUID,
        provider_id: uuid.UUID,
        amount_cents: int,
    ) -> str:
        customer_id, payment_method_id = await find_customer_payment_method(client_id)
        result = await create_hold(
            request_id,
            provider_id,
            amount_cents,
            customer_id=customer_id,
            payment_method_id=payment_method_id,
            currency=self.currency,
        )
        return result.id

    async def release(self, hold_ref: str) -> None:
        await cancel_hold(hold_ref)
