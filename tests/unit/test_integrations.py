"""
Unit tests for the Stripe hold and FCM push adapters.

The vendor SDK calls are patched; nothing leaves the process.
"""

import uuid
from unittest.mock import MagicMock, patch

import pytest
import stripe
from firebase_admin import messaging

from sos_dispatch.integrations.fcm import FcmNotificationSink, PushDeliveryError, user_topic
from sos_dispatch.integrations.fcm.pushService import build_message
from sos_dispatch.integrations.stripe import (
    PaymentError,
    StripePaymentHold,
    create_hold,
    find_customer_payment_method,
)

pytestmark = pytest.mark.asyncio

_FCM = "sos_dispatch.integrations.fcm.pushService"


def _customer_search(customer_id="cus_1", payment_method="pm_1"):
    customer = MagicMock(id=customer_id)
    customer.invoice_settings.default_payment_method = payment_method
    return MagicMock(data=[customer])


class TestStripePaymentHold:

    async def test_place_confirms_manual_capture_intent_on_saved_card(self):
        request_id, client_id, provider_id = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
        intent = MagicMock(id="pi_123", status="requires_capture", client_secret="sec")

        with patch.object(
            stripe.Customer, "search", return_value=_customer_search()
        ) as search, patch.object(stripe.PaymentIntent, "create", return_value=intent) as create:
            hold_ref = await StripePaymentHold(currency="EUR").place(
                request_id, client_id, provider_id, 9000
            )

        assert hold_ref == "pi_123"
        assert str(client_id) in search.call_args.kwargs["query"]
        kwargs = create.call_args.kwargs
        assert kwargs["amount"] == 9000
        assert kwargs["currency"] == "eur"
        assert kwargs["customer"] == "cus_1"
        assert kwargs["payment_method"] == "pm_1"
        assert kwargs["capture_method"] == "manual"
        assert kwargs["confirm"] is True
        assert kwargs["off_session"] is True
        assert kwargs["idempotency_key"] == f"emergency-hold-{request_id}"
        assert kwargs["metadata"]["provider_id"] == str(provider_id)

    async def test_unauthorised_intent_is_cancelled_and_refused(self):
        intent = MagicMock(id="pi_9", status="requires_payment_method")
        cancelled = MagicMock(id="pi_9", status="canceled")

        with patch.object(stripe.PaymentIntent, "create", return_value=intent), patch.object(
            stripe.PaymentIntent, "cancel", return_value=cancelled
        ) as cancel:
            with pytest.raises(PaymentError) as exc_info:
                await create_hold(
                    uuid.uuid4(), uuid.uuid4(), 5000,
                    customer_id="cus_1", payment_method_id="pm_1",
                )

        assert "requires_payment_method" in exc_info.value.message
        cancel.assert_called_once_with("pi_9", cancellation_reason="abandoned")

    async def test_client_without_customer_cannot_be_held(self):
        with patch.object(
            stripe.Customer, "search", return_value=MagicMock(data=[])
        ), patch.object(stripe.PaymentIntent, "create") as create:
            with pytest.raises(PaymentError):
                await StripePaymentHold().place(uuid.uuid4(), uuid.uuid4(), uuid.uuid4(), 5000)
        create.assert_not_called()

    async def test_customer_without_default_card_cannot_be_held(self):
        with patch.object(stripe.Customer, "search", return_value=_customer_search(payment_method=None)):
            with pytest.raises(PaymentError) as exc_info:
                await find_customer_payment_method(uuid.uuid4())
        assert "default payment method" in exc_info.value.message

    async def test_stripe_error_becomes_payment_error(self):
        with patch.object(stripe.PaymentIntent, "create", side_effect=stripe.StripeError("Your card was declined.")):
            with pytest.raises(PaymentError) as exc_info:
                await create_hold(
                    uuid.uuid4(), uuid.uuid4(), 5000,
                    customer_id="cus_1", payment_method_id="pm_1",
                )
        assert "declined" in exc_info.value.message

    async def test_non_positive_amount_never_reaches_stripe(self):
        with patch.object(stripe.PaymentIntent, "create") as create:
            with pytest.raises(ValueError):
                await create_hold(
                    uuid.uuid4(), uuid.uuid4(), 0,
                    customer_id="cus_1", payment_method_id="pm_1",
                )
        create.assert_not_called()

    async def test_release_cancels_the_intent(self):
        intent = MagicMock(id="pi_123", status="canceled")
        with patch.object(stripe.PaymentIntent, "cancel", return_value=intent) as cancel:
            await StripePaymentHold().release("pi_123")
        cancel.assert_called_once_with("pi_123", cancellation_reason="abandoned")

class TestFcmNotificationSink:

    async def test_notify_sends_to_user_topic(self):
        user_id = uuid.uuid4()
        with patch(f"{_FCM}._ensure_firebase_initialised"), patch.object(
            messaging, "send", return_value="projects/x/messages/1"
        ) as send:
            await FcmNotificationSink().notify(
                user_id, "EMERGENCY CALL", "Immediate response needed.", "/emergency/1/respond"
            )

        [message] = send.call_args.args
        assert message.topic == user_topic(user_id)
        assert message.notification.title == "EMERGENCY CALL"
        assert message.data == {"action_ref": "/emergency/1/respond"}

    async def test_send_failure_raises_for_the_broadcaster_to_retry(self):
        with patch(f"{_FCM}._ensure_firebase_initialised"), patch.object(
            messaging, "send", side_effect=RuntimeError("unavailable")
        ):
            with pytest.raises(PushDeliveryError):
                await FcmNotificationSink().notify(uuid.uuid4(), "t", "m")

    async def test_message_without_action_has_no_data(self):
        message = build_message("user_x", "t", "b")
        assert message.data is None
        assert message.android.priority == "high"
