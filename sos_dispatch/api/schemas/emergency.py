"""
Pydantic v2 schemas for the Emergency Dispatch API.

Request bodies validate shape and ranges; domain rules (positive quotes,
legal transitions, ownership) are enforced by the services and mapped to
HTTP errors in the route layer.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Location input
# ---------------------------------------------------------------------------

class LocationInput(BaseModel):
    lat: float = Field(ge=-90, le=90, description="Latitude in decimal degrees")
    lng: float = Field(ge=-180, le=180, description="Longitude in decimal degrees")


# ---------------------------------------------------------------------------
# Emergency creation
# ---------------------------------------------------------------------------

class EmergencyCreateRequest(BaseModel):
    """Request body for raising an emergency."""

    category: str = Field(min_length=1, max_length=100, description="Category slug")
    service_id: Optional[uuid.UUID] = Field(
        default=None, description="Explicit service; skips category resolution"
    )
    description: Optional[str] = Field(default=None, max_length=2000)
    location: LocationInput
    address: Optional[str] = Field(default=None, max_length=500)
    price_multiplier: float = Field(default=1.0, ge=1.0, le=10.0)

    @field_validator("category")
    @classmethod
    def normalise_category(cls, v: str) -> str:
        return v.strip().lower()


class EmergencyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    client_id: uuid.UUID
    category: str
    service_id: Optional[uuid.UUID] = None
    description: Optional[str] = None
    latitude: float
    longitude: float
    address: Optional[str] = None
    price_multiplier: float
    status: str
    provider_id: Optional[uuid.UUID] = None
    version: int
    eligible_provider_count: int
    created_at: datetime
    accepted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def status_value(cls, v: Any) -> Any:
        return getattr(v, "value", v)


class EmergencyCreateResponse(BaseModel):
    request: EmergencyOut
    eligible_count: int
    dispatch_outcome: str


# ---------------------------------------------------------------------------
# Offers
# ---------------------------------------------------------------------------

class OfferCreateRequest(BaseModel):
    """A provider's quote. Range checks beyond type happen in the ledger."""

    price_per_hour_cents: int
    min_hours: int
    eta_label: str = Field(max_length=100)


class OfferOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    request_id: uuid.UUID
    provider_id: uuid.UUID
    status: str
    price_per_hour_cents: int
    min_hours: int
    eta_label: str
    quoted_amount_cents: int
    created_at: datetime
    responded_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def status_value(cls, v: Any) -> Any:
        return getattr(v, "value", v)


class AcceptRequest(BaseModel):
    provider_id: uuid.UUID
    expected_version: Optional[int] = Field(
        default=None, ge=1, description="Version the client last saw"
    )


class AcceptResponse(BaseModel):
    request: EmergencyOut
    offer: OfferOut
    rejected_provider_ids: list[uuid.UUID]
    conversation_id: Optional[uuid.UUID] = None


class CancelResponse(BaseModel):
    request: EmergencyOut
    notified_provider_ids: list[uuid.UUID]


class TrackingSnapshotOut(BaseModel):
    request_id: uuid.UUID
    status: Optional[dict[str, Any]] = None
    location: Optional[dict[str, Any]] = None
    sequences: dict[str, int] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Provider-side
# ---------------------------------------------------------------------------

class PresenceUpdateRequest(BaseModel):
    """Heartbeat or online/offline toggle."""

    is_online: bool
    location: Optional[LocationInput] = None
    service_radius_km: Optional[float] = Field(default=None, gt=0, le=500)
    seq: Optional[int] = Field(
        default=None, ge=0, description="Client-side heartbeat counter"
    )


class PresenceOut(BaseModel):
    provider_id: uuid.UUID
    is_online: bool
    lat: Optional[float] = None
    lng: Optional[float] = None
    service_radius_km: Optional[float] = None
    emergency_calls: bool
    tracking_request_id: Optional[uuid.UUID] = None


class ProviderEmergencyItem(BaseModel):
    offer: OfferOut
    request: EmergencyOut


class ProviderEmergencyBoard(BaseModel):
    """The provider's offers grouped the way the provider app lists them."""

    new: list[ProviderEmergencyItem] = Field(default_factory=list)
    active: list[ProviderEmergencyItem] = Field(default_factory=list)
    refused: list[ProviderEmergencyItem] = Field(default_factory=list)
    concluded: list[ProviderEmergencyItem] = Field(default_factory=list)
