"""Managed-service endpoints: request, review and cancel engagements."""

from __future__ import annotations

import logging
from datetime import date
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from api.dependencies import (
    CatalogDep,
    EventBusDep,
    GatewayDep,
    SessionDep,
    SettingsDep,
    TenantDep,
    UserDep,
    require_trial_not_expired,
)
from api.middleware.rbac import Permission, Role, require_permission
from api.schemas import ManagedServiceListResponse, ManagedServiceResponse
from api.services.managed_service_workflow import ManagedServiceWorkflow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/managed-services", tags=["managed-services"])


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class ManagedServiceRequestBody(BaseModel):
    """Request body for ``POST /managed-services``."""

    client_id: str = Field(..., min_length=1, max_length=64)
    package: str = Field(..., min_length=1, max_length=32, description="Package id, e.g. 'growth'.")
    start_date: date | None = None


class RejectBody(BaseModel):
    note: str | None = Field(default=None, max_length=1000)


class CancelBody(BaseModel):
    """Request body for ``POST /managed-services/{id}/cancel``."""

    end_date: date | None = Field(
        default=None,
        description="Last day of service for an active engagement. Defaults to the end of the current month.",
    )


def _workflow(
    session: SessionDep,
    settings: SettingsDep,
    gateway: GatewayDep,
    catalog: CatalogDep,
    bus: EventBusDep,
) -> ManagedServiceWorkflow:
    return ManagedServiceWorkflow(
        session,
        gateway=gateway,
        catalog=catalog,
        bus=bus,
        commission_percent=settings.managed_service_commission_percent,
    )


WorkflowDep = Annotated[ManagedServiceWorkflow, Depends(_workflow)]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("", response_model=ManagedServiceListResponse)
async def list_managed_services(
    workflow: WorkflowDep,
    tenant_id: TenantDep,
    status: str | None = Query(None, pattern="^(PENDING|ACTIVE|CANCELED)$"),
    _role: Role = Depends(require_permission(Permission.READ_BILLING)),
) -> ManagedServiceListResponse:
    """Return the agency's managed-service engagements, newest first."""
    rows = await workflow.list_for_agency(tenant_id, status=status)
    items = [ManagedServiceResponse.model_validate(row) for row in rows]
    return ManagedServiceListResponse(items=items, total=len(items))


@router.get("/pending", response_model=ManagedServiceListResponse)
async def list_pending(
    workflow: WorkflowDep,
    _role: Role = Depends(require_permission(Permission.REVIEW_MANAGED_SERVICES)),
) -> ManagedServiceListResponse:
    """Return every agency's pending requests for operator review."""
    rows = await workflow.list_pending()
    items = [ManagedServiceResponse.model_validate(row) for row in rows]
    return ManagedServiceListResponse(items=items, total=len(items))


@router.post("", response_model=ManagedServiceResponse, status_code=201)
async def request_managed_service(
    body: ManagedServiceRequestBody,
    workflow: WorkflowDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    _role: Role = Depends(require_permission(Permission.REQUEST_MANAGED_SERVICES)),
    _trial: None = Depends(require_trial_not_expired),
) -> ManagedServiceResponse:
    """Request a managed service for one of the agency's clients."""
    ms = await workflow.request(
        tenant_id,
        body.client_id,
        body.package,
        start_date=body.start_date,
        requested_by=user_id,
    )
    return ManagedServiceResponse.model_validate(ms)


@router.post("/{managed_service_id}/approve", response_model=ManagedServiceResponse)
async def approve_managed_service(
    managed_service_id: str,
    workflow: WorkflowDep,
    user_id: UserDep,
    _role: Role = Depends(require_permission(Permission.REVIEW_MANAGED_SERVICES)),
) -> ManagedServiceResponse:
    """Approve a pending request and start billing it."""
    ms = await workflow.approve(managed_service_id, reviewed_by=user_id)
    return ManagedServiceResponse.model_validate(ms)


@router.post("/{managed_service_id}/reject", response_model=ManagedServiceResponse)
async def reject_managed_service(
    managed_service_id: str,
    workflow: WorkflowDep,
    user_id: UserDep,
    body: RejectBody | None = None,
    _role: Role = Depends(require_permission(Permission.REVIEW_MANAGED_SERVICES)),
) -> ManagedServiceResponse:
    """Reject a pending request."""
    ms = await workflow.reject(managed_service_id, reviewed_by=user_id, note=body.note if body else None)
    return ManagedServiceResponse.model_validate(ms)


@router.post("/{managed_service_id}/cancel", response_model=ManagedServiceResponse)
async def cancel_managed_service(
    managed_service_id: str,
    workflow: WorkflowDep,
    tenant_id: TenantDep,
    user_id: UserDep,
    body: CancelBody | None = None,
    role: Role = Depends(require_permission(Permission.CANCEL_MANAGED_SERVICES)),
) -> ManagedServiceResponse:
    """Cancel a pending or active engagement.

    Agencies can only cancel their own engagements; operators can cancel
    any.
    """
    ms = await workflow.cancel(
        managed_service_id,
        agency_id=None if role.is_operator else tenant_id,
        end_date=body.end_date if body else None,
        canceled_by=user_id,
    )
    return ManagedServiceResponse.model_validate(ms)
