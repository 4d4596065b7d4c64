"""Shared Pydantic response models for API endpoints.

These schemas ensure that endpoint responses are validated and documented
in the OpenAPI schema.  Routers import from here to avoid duplication.
"""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Managed services
# ---------------------------------------------------------------------------


class ManagedServiceResponse(BaseModel):
    """One managed-service engagement."""

    id: str
    agency_id: str
    client_id: str
    package_id: str
    package_name: str
    monthly_price_cents: int
    commission_percent: int
    monthly_commission_cents: int
    start_date: date
    end_date: date | None = None
    status: str
    stripe_subscription_item_id: str | None = None
    requested_by: str | None = None
    reviewed_by: str | None = None
    activated_at: datetime | None = None
    canceled_at: datetime | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class ManagedServiceListResponse(BaseModel):
    items: list[ManagedServiceResponse] = Field(default_factory=list)
    total: int = 0


# ---------------------------------------------------------------------------
# Add-ons
# ---------------------------------------------------------------------------


class AddOnResponse(BaseModel):
    """One attached add-on."""

    id: str
    agency_id: str
    add_on_type: str
    add_on_option: str
    display_name: str
    details: str | None = None
    price_cents: int
    billing_interval: str
    stripe_subscription_item_id: str | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class AddOnListResponse(BaseModel):
    items: list[AddOnResponse] = Field(default_factory=list)
    total: int = 0


class AddOnOptionResponse(BaseModel):
    """A purchasable add-on option for the agency's tier."""

    add_on_type: str
    option: str
    display_name: str
    details: str
    price_cents: int
    billing_interval: str
    attached: bool = False
