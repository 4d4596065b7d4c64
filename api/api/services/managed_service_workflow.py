"""Managed-service engagement workflow.

State machine::

    PENDING --approve--> ACTIVE --cancel--> CANCELED
       |                                       ^
       +-------------reject / cancel-----------+

Nothing leaves ``CANCELED``.  Every transition is a compare-and-set on the
current status, so two racing operators cannot both act on one record.

Requesting is purely local; billing starts on approval.  Approve and cancel
are local-first: the processor call is best-effort and a failure is
reported through :mod:`api.services.degraded` while the local transition
still commits.  A line-item created during approve is deleted again if the
local commit then fails.
"""

from __future__ import annotations

import calendar
import logging
from collections.abc import Callable
from datetime import UTC, date, datetime
from typing import Any

from agency_core.catalog.packages import ManagedPackage, compute_commission, parse_package
from agency_core.catalog.pricing import PriceCatalog
from agency_core.errors import NotFoundError, PreconditionError, ValidationError
from agency_core.state.repository import AgencyRepository, ClientRepository, ManagedServiceRepository
from agency_core.state.tables import AgencyTable, ManagedServiceTable
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.activation_service import require_paid_features
from api.services.billing_gateway import BillingGateway
from api.services.degraded import best_effort, report_degraded
from api.services.event_bus import EventBus, EventType

logger = logging.getLogger(__name__)

PENDING = "PENDING"
ACTIVE = "ACTIVE"
CANCELED = "CANCELED"

DEFAULT_COMMISSION_PERCENT = 20

# Client fields that only describe an open engagement.
_CLEARED_CLIENT_FIELDS: dict[str, Any] = {
    "managed_service_package": None,
    "managed_service_price_cents": None,
    "managed_service_requested_date": None,
    "managed_service_activated_date": None,
    "managed_service_canceled_date": None,
    "managed_service_end_date": None,
    "canceled_end_date": None,
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def end_of_month(day: date) -> date:
    """Last calendar day of *day*'s month."""
    return day.replace(day=calendar.monthrange(day.year, day.month)[1])


def is_billable(agency: AgencyTable) -> bool:
    """The agency has both a payer account and a base subscription."""
    return bool(agency.stripe_customer_id and agency.stripe_subscription_id)


class ManagedServiceWorkflow:
    """Request, approve, reject and cancel managed-service engagements.

    Parameters
    ----------
    session:
        Active database session.  Each operation commits it.
    gateway:
        Billing processor, or ``None`` when billing is disabled.
    catalog:
        Package price references.
    bus:
        Notification sink.  Events are published after commit and never
        awaited.
    commission_percent:
        Commission stored on new engagements.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        gateway: BillingGateway | None,
        catalog: PriceCatalog,
        bus: EventBus | None = None,
        commission_percent: int = DEFAULT_COMMISSION_PERCENT,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session = session
        self._gateway = gateway
        self._catalog = catalog
        self._bus = bus
        self._commission_percent = commission_percent
        self._now = now

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load_agency(self, agency_id: str) -> AgencyTable:
        agency = await AgencyRepository(self._session).get(agency_id)
        if agency is None:
            raise NotFoundError("Agency not found", reason="agency_not_found")
        return agency

    async def _load(self, managed_service_id: str, agency_id: str | None) -> ManagedServiceTable:
        ms = await ManagedServiceRepository(self._session, agency_id).get(managed_service_id)
        if ms is None:
            raise NotFoundError("Managed service not found", reason="managed_service_not_found")
        return ms

    def _publish(self, event_type: EventType, ms: ManagedServiceTable, **data: Any) -> None:
        if self._bus is None:
            return
        self._bus.publish_nowait(
            event_type,
            tenant_id=ms.agency_id,
            data={
                "managed_service_id": ms.id,
                "client_id": ms.client_id,
                "package_id": ms.package_id,
                "monthly_price_cents": ms.monthly_price_cents,
                **data,
            },
        )

    async def _delete_item(self, item_id: str, *, entity_id: str, agency_id: str, operation: str) -> None:
        if self._gateway is None:
            report_degraded(
                operation,
                entity_id=entity_id,
                agency_id=agency_id,
                error="billing gateway disabled",
                bus=self._bus,
            )
            return
        await best_effort(
            self._gateway.delete_subscription_item(item_id),
            operation=operation,
            entity_id=entity_id,
            agency_id=agency_id,
            bus=self._bus,
        )

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    async def request(
        self,
        agency_id: str,
        client_id: str,
        package: str,
        *,
        start_date: date | None = None,
        requested_by: str | None = None,
    ) -> ManagedServiceTable:
        """Create a ``PENDING`` engagement for one of the agency's clients.

        The engagement, the client status change and the audit copy commit
        together.  No processor call is made.

        Raises
        ------
        ValidationError
            Unknown or contact-only package.
        PreconditionError
            Agency not activated or in trial, or the client already has a
            pending or active engagement.
        NotFoundError
            The client does not belong to the agency.
        """
        config = parse_package(package)
        agency = await self._load_agency(agency_id)
        require_paid_features(agency, action="request managed services", now=self._now())

        clients = ClientRepository(self._session, agency.id)
        client = await clients.get(client_id)
        if client is None:
            raise NotFoundError("Client not found", reason="client_not_found")

        repo = ManagedServiceRepository(self._session, agency.id)
        if await repo.find_open(client.id):
            raise PreconditionError(
                "A managed service is already pending or active for this client",
                reason="already_pending_or_active",
            )

        now = self._now()
        ms = await repo.create_pending(
            client_id=client.id,
            package_id=config.package_id.value,
            package_name=config.name,
            monthly_price_cents=config.monthly_price_cents,
            commission_percent=self._commission_percent,
            monthly_commission_cents=compute_commission(config.monthly_price_cents, self._commission_percent),
            start_date=start_date or now.date(),
            requested_by=requested_by,
        )
        await repo.record_request(ms, agency=agency, client=client)
        await clients.set_lifecycle(
            client.id,
            status=PENDING,
            managed_service_status="pending",
            **{
                **_CLEARED_CLIENT_FIELDS,
                "managed_service_package": config.package_id.value,
                "managed_service_price_cents": config.monthly_price_cents,
                "managed_service_requested_date": now,
            },
        )
        await self._session.commit()

        logger.info(
            "Managed service %s requested for client %s (agency=%s, package=%s)",
            ms.id,
            client.id,
            agency.id,
            ms.package_id,
        )
        self._publish(EventType.MANAGED_SERVICE_REQUESTED, ms, client_name=client.name, agency_name=agency.name)
        return ms

    # ------------------------------------------------------------------
    # Approve / reject
    # ------------------------------------------------------------------

    async def approve(self, managed_service_id: str, *, reviewed_by: str | None = None) -> ManagedServiceTable:
        """Operator approval: ``PENDING -> ACTIVE``.

        For a billable agency one line-item is created for the package price
        before the local transition.  The transition commits whether or not
        that call succeeded.

        Raises
        ------
        PreconditionError
            (400) if the engagement is not ``PENDING`` (``not_pending``), or
            another engagement for the client is already ``ACTIVE``
            (``already_pending_or_active``).  A line-item created for this
            approval is deleted again.
        ConfigurationError
            The package has no price while the agency is billable.  Nothing
            has changed.
        """
        ms = await self._load(managed_service_id, None)
        if ms.status != PENDING:
            raise PreconditionError(
                f"Only pending managed services can be approved (current status: {ms.status})",
                reason="not_pending",
                status_code=400,
            )
        agency = await self._load_agency(ms.agency_id)
        # Rollback expires loaded rows; keep plain ids for compensation.
        agency_id = agency.id

        item_id: str | None = None
        if is_billable(agency):
            price_id = self._catalog.package_price(ManagedPackage(ms.package_id))
            if self._gateway is None:
                report_degraded(
                    "approve_managed_service",
                    entity_id=ms.id,
                    agency_id=agency.id,
                    error="billing gateway disabled",
                    bus=self._bus,
                )
            else:
                item = await best_effort(
                    self._gateway.create_subscription_item(
                        agency.stripe_subscription_id,  # type: ignore[arg-type]
                        price_id,
                        metadata={"managed_service_id": ms.id, "client_id": ms.client_id, "agency_id": agency.id},
                        idempotency_key=f"managed-service-{ms.id}-approve",
                    ),
                    operation="approve_managed_service",
                    entity_id=ms.id,
                    agency_id=agency.id,
                    bus=self._bus,
                )
                item_id = item.id if item is not None else None
        elif agency.stripe_customer_id is not None:
            logger.info(
                "Agency %s has no subscription; managed service %s approved without a line-item",
                agency.id,
                ms.id,
                extra={"billing": {"operation": "approve_managed_service", "entity_id": ms.id, "agency_id": agency.id}},
            )

        now = self._now()
        try:
            moved = await ManagedServiceRepository(self._session).transition(
                ms.id,
                expected=PENDING,
                status=ACTIVE,
                stripe_subscription_item_id=item_id,
                reviewed_by=reviewed_by,
                activated_at=now,
            )
            if not moved:
                raise PreconditionError(
                    "The managed service changed state while it was being approved",
                    reason="not_pending",
                    status_code=400,
                )
            await ClientRepository(self._session).set_lifecycle(
                ms.client_id,
                status=ACTIVE,
                managed_service_status="active",
                managed_service_activated_date=now,
                managed_service_canceled_date=None,
                managed_service_end_date=None,
                canceled_end_date=None,
            )
            await self._session.commit()
        except Exception as exc:
            await self._session.rollback()
            if item_id is not None:
                logger.warning("Local approve of %s failed; removing line-item %s", managed_service_id, item_id)
                await self._delete_item(
                    item_id, entity_id=managed_service_id, agency_id=agency_id, operation="compensate_approve"
                )
            if isinstance(exc, IntegrityError):
                raise PreconditionError(
                    "A managed service is already active for this client",
                    reason="already_pending_or_active",
                    status_code=400,
                ) from None
            raise

        logger.info(
            "Managed service %s approved by %s (agency=%s, item=%s)",
            ms.id,
            reviewed_by,
            ms.agency_id,
            item_id,
        )
        self._publish(EventType.MANAGED_SERVICE_APPROVED, ms, billed=item_id is not None)
        return ms

    async def reject(
        self,
        managed_service_id: str,
        *,
        reviewed_by: str | None = None,
        note: str | None = None,
    ) -> ManagedServiceTable:
        """Operator rejection: ``PENDING -> CANCELED``.  Purely local."""
        ms = await self._load(managed_service_id, None)
        if ms.status != PENDING:
            raise PreconditionError(
                f"Only pending managed services can be rejected (current status: {ms.status})",
                reason="not_pending",
                status_code=400,
            )

        now = self._now()
        moved = await ManagedServiceRepository(self._session).transition(
            ms.id,
            expected=PENDING,
            status=CANCELED,
            reviewed_by=reviewed_by,
            canceled_at=now,
        )
        if not moved:
            await self._session.rollback()
            raise PreconditionError(
                "The managed service changed state while it was being rejected",
                reason="not_pending",
                status_code=400,
            )
        await ClientRepository(self._session).set_lifecycle(
            ms.client_id,
            status="DASHBOARD_ONLY",
            managed_service_status="none",
            **_CLEARED_CLIENT_FIELDS,
        )
        await self._session.commit()

        logger.info("Managed service %s rejected by %s (agency=%s)", ms.id, reviewed_by, ms.agency_id)
        self._publish(EventType.MANAGED_SERVICE_REJECTED, ms, note=note)
        return ms

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    async def cancel(
        self,
        managed_service_id: str,
        *,
        agency_id: str | None = None,
        end_date: date | None = None,
        canceled_by: str | None = None,
    ) -> ManagedServiceTable:
        """Cancel a pending or active engagement.

        *agency_id* scopes the lookup to one agency; operators pass ``None``.
        An active engagement keeps running until *end_date* (default: end of
        the current month) and its line-item is deleted best-effort.  A
        pending one reverts the client to dashboard-only immediately.

        Raises
        ------
        PreconditionError
            Already canceled.
        ValidationError
            *end_date* is in the past.
        """
        ms = await self._load(managed_service_id, agency_id)
        if ms.status == CANCELED:
            raise PreconditionError("This managed service is already canceled", reason="already_canceled")

        now = self._now()
        today = now.date()
        if end_date is not None and end_date < today:
            raise ValidationError("End date cannot be in the past", reason="end_date_in_past")

        previous = ms.status
        item_id = ms.stripe_subscription_item_id
        if previous == ACTIVE and item_id:
            await self._delete_item(
                item_id, entity_id=ms.id, agency_id=ms.agency_id, operation="cancel_managed_service"
            )

        repo = ManagedServiceRepository(self._session)
        clients = ClientRepository(self._session)
        if previous == ACTIVE:
            effective_end = end_date or end_of_month(today)
            moved = await repo.transition(
                ms.id,
                expected=ACTIVE,
                status=CANCELED,
                end_date=effective_end,
                canceled_at=now,
            )
            client_values: dict[str, Any] = {
                "status": CANCELED,
                "managed_service_status": "canceled",
                "managed_service_canceled_date": now,
                "managed_service_end_date": effective_end,
                "canceled_end_date": effective_end,
            }
        else:
            effective_end = None
            moved = await repo.transition(ms.id, expected=PENDING, status=CANCELED, canceled_at=now)
            client_values = {"status": "DASHBOARD_ONLY", "managed_service_status": "none", **_CLEARED_CLIENT_FIELDS}

        if not moved:
            await self._session.rollback()
            raise PreconditionError(
                "The managed service changed state while it was being canceled",
                reason="state_changed",
            )
        await clients.set_lifecycle(ms.client_id, **client_values)
        await self._session.commit()

        logger.info(
            "Managed service %s canceled from %s by %s (agency=%s, end=%s)",
            ms.id,
            previous,
            canceled_by,
            ms.agency_id,
            effective_end,
        )
        self._publish(
            EventType.MANAGED_SERVICE_CANCELED,
            ms,
            previous_status=previous,
            end_date=effective_end.isoformat() if effective_end else None,
        )
        return ms

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_for_agency(self, agency_id: str, *, status: str | None = None) -> list[ManagedServiceTable]:
        return await ManagedServiceRepository(self._session, agency_id).list_all(status=status)

    async def list_pending(self) -> list[ManagedServiceTable]:
        return await ManagedServiceRepository(self._session).list_all(status=PENDING)
