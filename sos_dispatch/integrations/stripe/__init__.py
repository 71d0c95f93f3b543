"""
Stripe Integration Module
=========================

Usage::

    from sos_dispatch.integrations.stripe import StripePaymentHold
"""

from .paymentService import (
    HoldResult,
    PaymentError,
    StripePaymentHold,
    cancel_hold,
    create_hold,
    find_customer_payment_method,
)

__all__ = [
    "HoldResult",
    "PaymentError",
    "StripePaymentHold",
    "cancel_hold",
    "create_hold",
    "find_customer_payment_method",
]
