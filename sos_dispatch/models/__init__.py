"""
SOS Dispatch SQLAlchemy Models
==============================

Central import point for all ORM models. Import ``Base`` from here for
``create_all`` in tests and for migration autogeneration.

Usage::

    from sos_dispatch.models import Base, EmergencyRequest, EmergencyOffer
"""

# -- Base & Mixins --
from .base import Base, JSONType, TimestampMixin, UUIDPrimaryKeyMixin, utcnow

# -- Taxonomy --
from .taxonomy import ProviderService, Service, ServiceCategory

# -- Presence --
from .provider import EMERGENCY_CALLS_FLAG, ProviderPresence

# -- Emergencies --
from .emergency import (
    COMMITTED_STATUSES,
    TERMINAL_STATUSES,
    EmergencyOffer,
    EmergencyRequest,
    EmergencyStatus,
    OfferStatus,
)

# -- Conversations --
from .conversation import Conversation

# -- Notifications --
from .notification import NotificationDeadLetter

__all__ = [
    # Base
    "Base",
    "JSONType",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "utcnow",
    # Taxonomy
    "ServiceCategory",
    "Service",
    "ProviderService",
    # Presence
    "ProviderPresence",
    "EMERGENCY_CALLS_FLAG",
    # Emergencies
    "EmergencyRequest",
    "EmergencyStatus",
    "EmergencyOffer",
    "OfferStatus",
    "COMMITTED_STATUSES",
    "TERMINAL_STATUSES",
    # Conversations
    "Conversation",
    # Notifications
    "NotificationDeadLetter",
]
