"""
JWT handling for the dispatch API.

User accounts live in the platform's identity service; this service only
verifies the access tokens it issues.  Claims used: ``sub`` (user id),
``role`` (``client`` or ``provider``) and ``type`` (``access``).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

from sos_dispatch.core.config import settings

ACCESS_TOKEN_EXPIRE_MINUTES = 30

ROLE_CLIENT = "client"
ROLE_PROVIDER = "provider"


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: uuid.UUID
    role: str

    @property
    def is_provider(self) -> bool:
        return self.role == ROLE_PROVIDER


def create_access_token(
    user_id: uuid.UUID,
    role: str,
    expires_minutes: int = ACCESS_TOKEN_EXPIRE_MINUTES,
) -> str:
    """Issue a signed access token (used by the identity service and tests)."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "type": "access",
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def authenticate(token: str) -> AuthenticatedUser:
    """Decode an access token into the caller's identity.

    Raises:
        ValueError: If the token is invalid, expired or missing claims.
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError:
        raise ValueError("Access token has expired.")
    except jwt.InvalidTokenError:
        raise ValueError("Invalid access token.")

    if payload.get("type", "access") != "access":
        raise ValueError("Invalid token type. Expected an access token.")

    role = payload.get("role")
    if role not in (ROLE_CLIENT, ROLE_PROVIDER):
        raise ValueError("Invalid token: missing or unknown role.")

    try:
        user_id = uuid.UUID(payload.get("sub"))
    except (TypeError, ValueError):
        raise ValueError("Invalid token: malformed subject.")

    return AuthenticatedUser(user_id=user_id, role=role)
