"""
Firebase Cloud Messaging (FCM) Push Service
===========================================

Delivers dispatch notifications as FCM topic messages.  Every user's
devices subscribe to the topic ``user_<user_id>`` at login, so the backend
never handles device tokens.

Initialization:
  The Firebase Admin SDK is initialised lazily on first use. Credentials
  are loaded from one of two settings:
    - FIREBASE_SERVICE_ACCOUNT_PATH  -- path to a JSON service account file
    - FIREBASE_CREDENTIALS_JSON      -- raw JSON string of the service account

Retries are *not* done here: ``FcmNotificationSink.notify`` raises on any
failure and the dispatch broadcaster owns retry and dead-lettering.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Optional

import firebase_admin
from firebase_admin import credentials, messaging

from sos_dispatch.core.config import settings

logger = logging.getLogger(__name__)

ANDROID_CHANNEL_ID = "sos_emergency"


class PushDeliveryError(Exception):
    """Raised when FCM rejects or fails to accept a message."""

    def __init__(self, topic: str, cause: Exception) -> None:
        self.topic = topic
        self.cause = cause
        super().__init__(f"FCM send to topic '{topic}' failed: {cause}")


# ---------------------------------------------------------------------------
# Firebase Admin SDK initialisation (lazy singleton)
# ---------------------------------------------------------------------------

_firebase_app: firebase_admin.App | None = None


def _ensure_firebase_initialised() -> firebase_admin.App:
    """Initialise the Firebase Admin SDK if it has not been already.

    Raises:
        RuntimeError: If no credentials are configured.
    """
    global _firebase_app

    if _firebase_app is not None:
        return _firebase_app

    try:
        _firebase_app = firebase_admin.get_app()
        logger.info("Using existing Firebase Admin app")
        return _firebase_app
    except ValueError:
        pass  # no default app yet

    if settings.firebase_service_account_path:
        logger.info(
            "Initialising Firebase Admin SDK from service account file: %s",
            settings.firebase_service_account_path,
        )
        cred = credentials.Certificate(settings.firebase_service_account_path)
    elif settings.firebase_credentials_json:
        logger.info("Initialising Firebase Admin SDK from JSON setting")
        cred = credentials.Certificate(json.loads(settings.firebase_credentials_json))
    else:
        raise RuntimeError(
            "Firebase credentials not configured. Set either "
            "FIREBASE_SERVICE_ACCOUNT_PATH or FIREBASE_CREDENTIALS_JSON."
        )

    _firebase_app = firebase_admin.initialize_app(cred)
    logger.info("Firebase Admin SDK initialised successfully")
    return _firebase_app


# ---------------------------------------------------------------------------
# Message construction
# ---------------------------------------------------------------------------

def user_topic(user_id: uuid.UUID | str) -> str:
    return f"user_{user_id}"


def build_message(
    topic: str,
    title: str,
    body: str,
    action_ref: Optional[str] = None,
) -> messaging.Message:
    """High-priority topic message with APNS and Android config."""
    data = {"action_ref": action_ref} if action_ref else None
    return messaging.Message(
        topic=topic,
        notification=messaging.Notification(title=title, body=body),
        data=data,
        apns=messaging.APNSConfig(
            headers={"apns-priority": "10"},
            payload=messaging.APNSPayload(aps=messaging.Aps(sound="default")),
        ),
        android=messaging.AndroidConfig(
            priority="high",
            notification=messaging.AndroidNotification(
                sound="default",
                channel_id=ANDROID_CHANNEL_ID,
            ),
        ),
    )


async def send_to_topic(
    topic: str,
    title: str,
    body: str,
    action_ref: Optional[str] = None,
) -> str:
    """Send one message to an FCM topic.

    Runs the blocking Firebase send call in a worker thread.

    Returns:
        The FCM message id.

    Raises:
        PushDeliveryError: On any send failure.
    """
    _ensure_firebase_initialised()
    msg = build_message(topic, title, body, action_ref)
    try:
        message_id: str = await asyncio.to_thread(messaging.send, msg)
    except Exception as exc:
        raise PushDeliveryError(topic, exc) from exc
    logger.debug("FCM message %s sent to topic %s", message_id, topic)
    return message_id


class FcmNotificationSink:
    """``NotificationSink`` port delivering through FCM topics."""

    async def notify(
        self,
        user_id: uuid.UUID,
        title: str,
        message: str,
        action_ref: Optional[str] = None,
    ) -> None:
        await send_to_topic(user_topic(user_id), title, message, action_ref)
