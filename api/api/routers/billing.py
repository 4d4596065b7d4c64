"""Billing endpoints: plans, subscription summary, plan changes, activation, webhooks."""

from __future__ import annotations

import logging
from typing import Any

from agency_core.catalog.tiers import all_tiers
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from api.dependencies import CatalogDep, EventBusDep, GatewayDep, SessionDep, SettingsDep, TenantDep
from api.middleware.rbac import Permission, Role, require_permission
from api.services.activation_service import ActivationService
from api.services.billing_service import BillingService
from api.services.plan_change_service import PlanChangeService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class BillingPlanTier(BaseModel):
    """A tier returned by ``GET /billing/plans``."""

    tier: str
    name: str
    kind: str
    max_dashboards: int | None = None
    monthly_price_usd: int | None = None
    keywords_per_dashboard: int | None = None
    keywords_total: int | None = None
    research_credits_per_month: int | None = None
    max_team_users: int | None = None
    price_id: str | None = None


class BillingPlansResponse(BaseModel):
    plans: list[BillingPlanTier]


class PlanChangeRequest(BaseModel):
    """Request body for plan-change preview and execution."""

    target_tier: str = Field(..., min_length=1, max_length=32, description="Tier id to move to, e.g. 'growth'.")


class PlanChangePreviewResponse(BaseModel):
    target_tier: str
    allowed: bool
    reason: str | None = None
    message: str | None = None
    limit: int | None = None
    total_clients: int | None = None
    active_managed_clients: int | None = None


class PlanChangeResponse(BaseModel):
    agency_id: str
    previous_tier: str | None = None
    tier: str | None = None


class ActivationRequest(BaseModel):
    """Request body for ``POST /billing/activation``."""

    setup_intent_id: str = Field(..., min_length=1, max_length=256)
    tier: str | None = Field(default=None, max_length=32)


# ---------------------------------------------------------------------------
# Plans and subscription
# ---------------------------------------------------------------------------


@router.get("/plans", response_model=BillingPlansResponse)
async def get_billing_plans(catalog: CatalogDep) -> BillingPlansResponse:
    """Return every tier with its limits and configured price id."""
    plans = [
        BillingPlanTier(
            tier=config.tier_id.value,
            name=config.name,
            kind=config.kind.value,
            max_dashboards=config.max_dashboards,
            monthly_price_usd=config.monthly_price_usd,
            keywords_per_dashboard=config.keywords_per_dashboard,
            keywords_total=config.keywords_total,
            research_credits_per_month=config.research_credits_per_month,
            max_team_users=config.max_team_users,
            price_id=catalog.plan_prices.get(config.tier_id),
        )
        for config in all_tiers()
    ]
    return BillingPlansResponse(plans=plans)


@router.get("/subscription")
async def get_subscription(
    session: SessionDep,
    settings: SettingsDep,
    gateway: GatewayDep,
    catalog: CatalogDep,
    tenant_id: TenantDep,
    _role: Role = Depends(require_permission(Permission.READ_BILLING)),
) -> dict[str, Any]:
    """Return tier, usage and activation state for the caller's agency."""
    service = BillingService(session, gateway=gateway, catalog=catalog)
    summary = await service.get_billing_summary(tenant_id)
    summary["billing_enabled"] = settings.billing_enabled
    return summary


@router.post("/subscription/sync")
async def sync_subscription(
    session: SessionDep,
    gateway: GatewayDep,
    catalog: CatalogDep,
    bus: EventBusDep,
    tenant_id: TenantDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_SUBSCRIPTION)),
) -> dict[str, Any]:
    """Re-read the subscription from the processor and reconcile the tier."""
    service = BillingService(session, gateway=gateway, catalog=catalog, bus=bus)
    tier = await service.sync_tier_from_remote(tenant_id)
    return {"agency_id": tenant_id, "tier": tier}


# ---------------------------------------------------------------------------
# Plan change
# ---------------------------------------------------------------------------


@router.post("/plan-change/preview", response_model=PlanChangePreviewResponse)
async def preview_plan_change(
    body: PlanChangeRequest,
    session: SessionDep,
    gateway: GatewayDep,
    catalog: CatalogDep,
    tenant_id: TenantDep,
    _role: Role = Depends(require_permission(Permission.READ_BILLING)),
) -> PlanChangePreviewResponse:
    """Check whether the agency's usage fits the target tier.  No side effects."""
    service = PlanChangeService(session, gateway=gateway, catalog=catalog)
    decision = await service.preview(tenant_id, body.target_tier)
    return PlanChangePreviewResponse(
        target_tier=decision.target_tier.value,
        allowed=decision.allowed,
        reason=decision.reason,
        message=decision.message,
        limit=decision.limit,
        total_clients=decision.total_clients,
        active_managed_clients=decision.active_managed_clients,
    )


@router.post("/plan-change", response_model=PlanChangeResponse)
async def change_plan(
    body: PlanChangeRequest,
    session: SessionDep,
    gateway: GatewayDep,
    catalog: CatalogDep,
    bus: EventBusDep,
    tenant_id: TenantDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_SUBSCRIPTION)),
) -> dict[str, Any]:
    """Move the agency to another tier by swapping its base-plan price."""
    service = PlanChangeService(session, gateway=gateway, catalog=catalog, bus=bus)
    return await service.change_plan(tenant_id, body.target_tier)


# ---------------------------------------------------------------------------
# Activation
# ---------------------------------------------------------------------------


@router.post("/activation/setup-intent")
async def create_setup_intent(
    session: SessionDep,
    gateway: GatewayDep,
    catalog: CatalogDep,
    tenant_id: TenantDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_SUBSCRIPTION)),
) -> dict[str, Any]:
    """Start collecting a payment method.  Returns the client secret."""
    service = ActivationService(session, gateway=gateway, catalog=catalog, agency_id=tenant_id)
    return await service.create_setup_intent()


@router.post("/activation")
async def activate(
    body: ActivationRequest,
    session: SessionDep,
    gateway: GatewayDep,
    catalog: CatalogDep,
    tenant_id: TenantDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_SUBSCRIPTION)),
) -> dict[str, Any]:
    """Finish activation from a confirmed setup intent."""
    service = ActivationService(session, gateway=gateway, catalog=catalog, agency_id=tenant_id)
    return await service.activate(body.setup_intent_id, body.tier)


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


@router.post("/webhooks")
async def stripe_webhook(
    request: Request,
    session: SessionDep,
    settings: SettingsDep,
    gateway: GatewayDep,
    catalog: CatalogDep,
    bus: EventBusDep,
) -> dict[str, str]:
    """Handle incoming Stripe webhook events.

    Validates the webhook signature using the configured webhook secret and
    dispatches the event to the billing service.  This endpoint bypasses
    token authentication (validated via Stripe signature instead).
    """
    if not settings.billing_enabled:
        return {"status": "billing_disabled"}

    body = await request.body()
    sig_header = request.headers.get("stripe-signature", "")
    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing Stripe signature")

    import stripe

    try:
        event = stripe.Webhook.construct_event(
            payload=body,
            sig_header=sig_header,
            secret=settings.stripe_webhook_secret.get_secret_value(),
        )
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload") from None
    except stripe.SignatureVerificationError as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        raise HTTPException(status_code=400, detail="Signature verification failed") from None

    service = BillingService(session, gateway=gateway, catalog=catalog, bus=bus)
    result = await service.handle_webhook_event(event)
    await session.commit()
    return result
