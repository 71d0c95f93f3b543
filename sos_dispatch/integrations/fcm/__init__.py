"""
Firebase Cloud Messaging Integration
====================================

Usage::

    from sos_dispatch.integrations.fcm import FcmNotificationSink
"""

from .pushService import (
    FcmNotificationSink,
    PushDeliveryError,
    build_message,
    send_to_topic,
    user_topic,
)

__all__ = [
    "FcmNotificationSink",
    "PushDeliveryError",
    "build_message",
    "send_to_topic",
    "user_topic",
]
