"""Repository classes providing CRUD access to the billing state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated and constraint violations surface
immediately; the caller is responsible for calling ``session.commit()``.

Repositories scoped with an ``agency_id`` only ever see that agency's rows.
Operator-side code constructs them with ``agency_id=None`` for cross-agency
access.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import ColumnElement, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from agency_core.errors import PreconditionError
from agency_core.state.tables import (
    AgencyAddOnTable,
    AgencyMemberTable,
    AgencyTable,
    ClientTable,
    ManagedServiceRequestTable,
    ManagedServiceTable,
)

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Agencies
# ---------------------------------------------------------------------------


class AgencyRepository:
    """CRUD operations for the ``agencies`` and ``agency_members`` tables."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, agency_id: str) -> AgencyTable | None:
        return await self._session.get(AgencyTable, agency_id)

    async def get_by_customer(self, stripe_customer_id: str) -> AgencyTable | None:
        """Resolve the agency that owns a processor customer id."""
        stmt = select(AgencyTable).where(AgencyTable.stripe_customer_id == stripe_customer_id)
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def create(
        self,
        *,
        name: str,
        contact_email: str | None = None,
        agency_id: str | None = None,
        subscription_tier: str | None = None,
        billing_type: str = "paid",
        trial_ends_at: datetime | None = None,
    ) -> AgencyTable:
        row = AgencyTable(
            id=agency_id or _new_id(),
            name=name,
            contact_email=contact_email,
            subscription_tier=subscription_tier,
            billing_type=billing_type,
            trial_ends_at=trial_ends_at,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def add_member(self, agency_id: str, user_id: str, role: str = "agency") -> AgencyMemberTable:
        row = AgencyMemberTable(agency_id=agency_id, user_id=user_id, role=role)
        self._session.add(row)
        await self._session.flush()
        return row

    async def set_subscription_state(
        self,
        agency_id: str,
        *,
        subscription_tier: str | None,
        stripe_subscription_id: str | None,
    ) -> bool:
        """Overwrite tier and subscription reference.  Returns ``False`` if no row matched."""
        stmt = (
            update(AgencyTable)
            .where(AgencyTable.id == agency_id)
            .values(
                subscription_tier=subscription_tier,
                stripe_subscription_id=stripe_subscription_id,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session="evaluate")
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[union-attr]


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


class ClientRepository:
    """Read and lifecycle access to ``clients``.

    A client belongs to an agency when its owning user is a member of the
    agency, or when it was created directly on the agency's behalf.
    """

    def __init__(self, session: AsyncSession, agency_id: str | None = None) -> None:
        self._session = session
        self._agency_id = agency_id

    def _owned(self) -> ColumnElement[bool]:
        members = select(AgencyMemberTable.user_id).where(AgencyMemberTable.agency_id == self._agency_id)
        return or_(
            ClientTable.user_id.in_(members),
            ClientTable.belongs_to_agency_id == self._agency_id,
        )

    async def get(self, client_id: str) -> ClientTable | None:
        """Fetch a client, restricted to the scoped agency when one is set."""
        stmt = select(ClientTable).where(ClientTable.id == client_id)
        if self._agency_id is not None:
            stmt = stmt.where(self._owned())
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def count_owned(self) -> int:
        stmt = select(func.count()).select_from(ClientTable).where(self._owned())
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def create(
        self,
        *,
        name: str,
        user_id: str | None = None,
        client_id: str | None = None,
        status: str = "DASHBOARD_ONLY",
        domain: str | None = None,
    ) -> ClientTable:
        row = ClientTable(
            id=client_id or _new_id(),
            name=name,
            domain=domain,
            user_id=user_id,
            belongs_to_agency_id=self._agency_id if user_id is None else None,
            status=status,
            managed_service_status="none",
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def set_lifecycle(self, client_id: str, *, status: str, managed_service_status: str, **values: Any) -> bool:
        """Write the client's status pair plus any managed-service fields in *values*.

        Ownership is not re-checked here; callers resolve the client through
        :meth:`get` first.
        """
        stmt = (
            update(ClientTable)
            .where(ClientTable.id == client_id)
            .values(
                status=status,
                managed_service_status=managed_service_status,
                updated_at=datetime.now(UTC),
                **values,
            )
            .execution_options(synchronize_session="evaluate")
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[union-attr]

    async def archive_expired_cancellations(self, today: date) -> list[str]:
        """Move ``CANCELED`` clients whose end date has passed to ``ARCHIVED``.

        Returns the ids of the archived clients.
        """
        stmt = select(ClientTable.id).where(
            ClientTable.status == "CANCELED",
            ClientTable.canceled_end_date.is_not(None),
            ClientTable.canceled_end_date <= today,
        )
        if self._agency_id is not None:
            stmt = stmt.where(self._owned())
        ids = list((await self._session.execute(stmt)).scalars().all())
        if not ids:
            return []

        await self._session.execute(
            update(ClientTable)
            .where(ClientTable.id.in_(ids))
            .values(status="ARCHIVED", managed_service_status="archived", updated_at=datetime.now(UTC))
            .execution_options(synchronize_session="evaluate")
        )
        await self._session.flush()
        return ids


# ---------------------------------------------------------------------------
# Managed services
# ---------------------------------------------------------------------------


class ManagedServiceRepository:
    """CRUD operations for ``managed_services`` and its request audit log."""

    def __init__(self, session: AsyncSession, agency_id: str | None = None) -> None:
        self._session = session
        self._agency_id = agency_id

    def _scoped(self, stmt: Any) -> Any:
        if self._agency_id is not None:
            stmt = stmt.where(ManagedServiceTable.agency_id == self._agency_id)
        return stmt

    async def get(self, managed_service_id: str) -> ManagedServiceTable | None:
        stmt = self._scoped(select(ManagedServiceTable).where(ManagedServiceTable.id == managed_service_id))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_open(self, client_id: str) -> list[ManagedServiceTable]:
        """Return ``PENDING`` and ``ACTIVE`` engagements for a client."""
        stmt = self._scoped(
            select(ManagedServiceTable).where(
                ManagedServiceTable.client_id == client_id,
                ManagedServiceTable.status.in_(("PENDING", "ACTIVE")),
            )
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_all(self, *, status: str | None = None, limit: int = 200) -> list[ManagedServiceTable]:
        stmt = self._scoped(select(ManagedServiceTable))
        if status is not None:
            stmt = stmt.where(ManagedServiceTable.status == status)
        stmt = stmt.order_by(ManagedServiceTable.created_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_active_clients(self) -> int:
        """Distinct clients with an ``ACTIVE`` engagement under the scoped agency."""
        stmt = self._scoped(
            select(func.count(func.distinct(ManagedServiceTable.client_id))).where(
                ManagedServiceTable.status == "ACTIVE"
            )
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def create_pending(
        self,
        *,
        client_id: str,
        package_id: str,
        package_name: str,
        monthly_price_cents: int,
        commission_percent: int,
        monthly_commission_cents: int,
        start_date: date,
        requested_by: str | None = None,
    ) -> ManagedServiceTable:
        """Insert a ``PENDING`` engagement.

        Raises
        ------
        PreconditionError
            If the (agency, client) pair already has a pending or active
            engagement.  The transaction is rolled back first.
        """
        if self._agency_id is None:
            raise RuntimeError("create_pending requires an agency-scoped repository")
        row = ManagedServiceTable(
            id=_new_id(),
            agency_id=self._agency_id,
            client_id=client_id,
            package_id=package_id,
            package_name=package_name,
            monthly_price_cents=monthly_price_cents,
            commission_percent=commission_percent,
            monthly_commission_cents=monthly_commission_cents,
            start_date=start_date,
            status="PENDING",
            requested_by=requested_by,
        )
        self._session.add(row)
        try:
            await self._session.flush()
        except IntegrityError:
            await self._session.rollback()
            logger.info("Duplicate open managed service for agency=%s client=%s", self._agency_id, client_id)
            raise PreconditionError(
                "A managed service is already pending or active for this client",
                reason="already_pending_or_active",
            ) from None
        return row

    async def record_request(
        self,
        managed_service: ManagedServiceTable,
        *,
        agency: AgencyTable,
        client: ClientTable,
    ) -> ManagedServiceRequestTable:
        row = ManagedServiceRequestTable(
            managed_service_id=managed_service.id,
            agency_id=agency.id,
            agency_name=agency.name,
            agency_email=agency.contact_email,
            client_id=client.id,
            client_name=client.name,
            package_id=managed_service.package_id,
            package_name=managed_service.package_name,
            monthly_price_cents=managed_service.monthly_price_cents,
            start_date=managed_service.start_date,
            requested_by=managed_service.requested_by,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def transition(self, managed_service_id: str, *, expected: str, status: str, **values: Any) -> bool:
        """Move an engagement from *expected* to *status* atomically.

        The update only matches while the row is still in *expected*, so a
        concurrent transition makes this return ``False`` instead of
        overwriting it.  Entering a status the client already holds in
        another row violates the open-record index and raises
        :class:`PreconditionError` after a rollback.
        """
        stmt = self._scoped(
            update(ManagedServiceTable).where(
                ManagedServiceTable.id == managed_service_id,
                ManagedServiceTable.status == expected,
            )
        )
        stmt = stmt.values(status=status, updated_at=datetime.now(UTC), **values).execution_options(
            synchronize_session="evaluate"
        )
        try:
            result = await self._session.execute(stmt)
            await self._session.flush()
        except IntegrityError:
            await self._session.rollback()
            logger.info("Open managed service conflict moving %s to %s", managed_service_id, status)
            raise PreconditionError(
                f"Another managed service for this client is already {status.lower()}",
                reason="already_pending_or_active",
                status_code=400,
            ) from None
        return result.rowcount > 0  # type: ignore[union-attr]

    async def list_requests(self, limit: int = 100) -> list[ManagedServiceRequestTable]:
        stmt = select(ManagedServiceRequestTable)
        if self._agency_id is not None:
            stmt = stmt.where(ManagedServiceRequestTable.agency_id == self._agency_id)
        stmt = stmt.order_by(ManagedServiceRequestTable.created_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_unbilled(self) -> list[ManagedServiceTable]:
        """``ACTIVE`` engagements with no line-item at an agency that has a payer account.

        Covers degraded approvals and agencies whose subscription is missing.
        """
        stmt = self._scoped(
            select(ManagedServiceTable)
            .join(AgencyTable, AgencyTable.id == ManagedServiceTable.agency_id)
            .where(
                ManagedServiceTable.status == "ACTIVE",
                ManagedServiceTable.stripe_subscription_item_id.is_(None),
                AgencyTable.stripe_customer_id.is_not(None),
            )
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Add-ons
# ---------------------------------------------------------------------------


class AddOnRepository:
    """CRUD operations for ``agency_add_ons``."""

    def __init__(self, session: AsyncSession, agency_id: str | None = None) -> None:
        self._session = session
        self._agency_id = agency_id

    def _scoped(self, stmt: Any) -> Any:
        if self._agency_id is not None:
            stmt = stmt.where(AgencyAddOnTable.agency_id == self._agency_id)
        return stmt

    async def list_all(self) -> list[AgencyAddOnTable]:
        stmt = self._scoped(select(AgencyAddOnTable)).order_by(AgencyAddOnTable.created_at)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get(self, add_on_id: str) -> AgencyAddOnTable | None:
        stmt = self._scoped(select(AgencyAddOnTable).where(AgencyAddOnTable.id == add_on_id))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find(self, add_on_type: str, add_on_option: str) -> AgencyAddOnTable | None:
        stmt = self._scoped(
            select(AgencyAddOnTable).where(
                AgencyAddOnTable.add_on_type == add_on_type,
                AgencyAddOnTable.add_on_option == add_on_option,
            )
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        *,
        add_on_type: str,
        add_on_option: str,
        display_name: str,
        details: str | None,
        price_cents: int,
        billing_interval: str,
        stripe_subscription_item_id: str | None,
        add_on_id: str | None = None,
    ) -> AgencyAddOnTable:
        """Insert an add-on row.

        Raises
        ------
        PreconditionError
            If the same option is already attached.  The transaction is
            rolled back first.
        """
        if self._agency_id is None:
            raise RuntimeError("create requires an agency-scoped repository")
        row = AgencyAddOnTable(
            id=add_on_id or _new_id(),
            agency_id=self._agency_id,
            add_on_type=add_on_type,
            add_on_option=add_on_option,
            display_name=display_name,
            details=details,
            price_cents=price_cents,
            billing_interval=billing_interval,
            stripe_subscription_item_id=stripe_subscription_item_id,
        )
        self._session.add(row)
        try:
            await self._session.flush()
        except IntegrityError:
            await self._session.rollback()
            raise PreconditionError("This add-on is already attached", reason="already_attached") from None
        return row

    async def delete(self, add_on_id: str) -> bool:
        stmt = self._scoped(delete(AgencyAddOnTable).where(AgencyAddOnTable.id == add_on_id))
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[union-attr]

    async def list_unbilled(self) -> list[AgencyAddOnTable]:
        stmt = self._scoped(
            select(AgencyAddOnTable)
            .join(AgencyTable, AgencyTable.id == AgencyAddOnTable.agency_id)
            .where(
                AgencyAddOnTable.stripe_subscription_item_id.is_(None),
                AgencyTable.stripe_customer_id.is_not(None),
            )
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
