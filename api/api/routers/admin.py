"""Operator endpoints for billing reconciliation and client maintenance."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, Query

from api.dependencies import CatalogDep, GatewayDep, SessionDep
from api.middleware.rbac import Permission, Role, require_permission
from api.services.billing_service import BillingService
from api.services.client_lifecycle import archive_expired_cancellations

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/billing", tags=["admin"])


@router.get("/unbilled")
async def list_unbilled(
    session: SessionDep,
    gateway: GatewayDep,
    catalog: CatalogDep,
    _role: Role = Depends(require_permission(Permission.RUN_BILLING_MAINTENANCE)),
) -> dict[str, Any]:
    """Active engagements and add-ons that have no processor line-item.

    These need a line-item created by hand.
    """
    service = BillingService(session, gateway=gateway, catalog=catalog)
    report = await service.list_unbilled()
    report["total"] = len(report["managed_services"]) + len(report["add_ons"])
    return report


@router.post("/clients/archive-expired")
async def archive_expired(
    session: SessionDep,
    today: date | None = Query(None, description="Override the cut-off date (defaults to today, UTC)."),
    _role: Role = Depends(require_permission(Permission.RUN_BILLING_MAINTENANCE)),
) -> dict[str, Any]:
    """Archive canceled clients whose end-of-service date has passed."""
    ids = await archive_expired_cancellations(session, today=today)
    return {"archived": ids, "count": len(ids)}
