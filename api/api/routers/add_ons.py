"""Add-on endpoints: list, options, attach and detach."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field

from api.dependencies import (
    CatalogDep,
    EventBusDep,
    GatewayDep,
    SessionDep,
    TenantDep,
    require_trial_not_expired,
)
from api.middleware.rbac import Permission, Role, require_permission
from api.schemas import AddOnListResponse, AddOnOptionResponse, AddOnResponse
from api.services.add_on_service import AddOnLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/add-ons", tags=["add-ons"])


class AttachAddOnRequest(BaseModel):
    """Request body for ``POST /add-ons``."""

    add_on_type: str = Field(..., min_length=1, max_length=32, description="e.g. 'extra_keywords_tracked'.")
    option: str = Field(..., min_length=1, max_length=32, description="e.g. '250'.")


def _ledger(
    session: SessionDep,
    gateway: GatewayDep,
    catalog: CatalogDep,
    bus: EventBusDep,
    tenant_id: TenantDep,
) -> AddOnLedger:
    return AddOnLedger(session, gateway=gateway, catalog=catalog, agency_id=tenant_id, bus=bus)


LedgerDep = Annotated[AddOnLedger, Depends(_ledger)]


@router.get("", response_model=AddOnListResponse)
async def list_add_ons(
    ledger: LedgerDep,
    _role: Role = Depends(require_permission(Permission.READ_BILLING)),
) -> AddOnListResponse:
    """Return the agency's attached add-ons."""
    rows = await ledger.list_all()
    items = [AddOnResponse.model_validate(row) for row in rows]
    return AddOnListResponse(items=items, total=len(items))


@router.get("/options", response_model=list[AddOnOptionResponse])
async def list_add_on_options(
    ledger: LedgerDep,
    _role: Role = Depends(require_permission(Permission.READ_BILLING)),
) -> list[AddOnOptionResponse]:
    """Return the add-on options sold on the agency's current tier."""
    return [AddOnOptionResponse(**opt) for opt in await ledger.options()]


@router.post("", response_model=AddOnResponse, status_code=201)
async def attach_add_on(
    body: AttachAddOnRequest,
    ledger: LedgerDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_ADD_ONS)),
    _trial: None = Depends(require_trial_not_expired),
) -> AddOnResponse:
    """Attach an add-on to the agency's subscription."""
    row = await ledger.attach(body.add_on_type, body.option)
    return AddOnResponse.model_validate(row)


@router.delete("/{add_on_id}", status_code=204)
async def detach_add_on(
    add_on_id: str,
    ledger: LedgerDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_ADD_ONS)),
) -> Response:
    """Detach an add-on and stop billing it."""
    await ledger.detach(add_on_id)
    return Response(status_code=204)
