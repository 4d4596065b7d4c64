"""Tests for api/api/services/managed_service_workflow.py

Covers:
- request: activation gate, ownership, duplicate protection, audit copy
- approve: line-item creation, idempotency key, degraded remote, compensation
- reject and cancel: client lifecycle, end-of-month default, past end dates
- CANCELED is terminal for approve, reject and compare-and-set transitions
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from agency_core.catalog.pricing import PriceCatalog
from agency_core.errors import ConfigurationError, NotFoundError, PreconditionError, ValidationError
from agency_core.state.repository import ClientRepository, ManagedServiceRepository
from agency_core.state.tables import ManagedServiceRequestTable, ManagedServiceTable
from sqlalchemy import func, select

from api.services.event_bus import EventType
from api.services.managed_service_workflow import ManagedServiceWorkflow, end_of_month, is_billable

NOW = datetime(2026, 2, 10, 9, 30, tzinfo=UTC)


@pytest.fixture()
def workflow(db_session, gateway, price_catalog, event_bus) -> ManagedServiceWorkflow:
    return ManagedServiceWorkflow(
        db_session, gateway=gateway, catalog=price_catalog, bus=event_bus, now=lambda: NOW
    )


async def _count(db_session, table) -> int:
    result = await db_session.execute(select(func.count()).select_from(table))
    return int(result.scalar_one())


async def _client(db_session, client_id: str = "client-0"):
    return await ClientRepository(db_session).get(client_id)


async def _ms(db_session, ms_id: str) -> ManagedServiceTable:
    return await ManagedServiceRepository(db_session).get(ms_id)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_end_of_month(self) -> None:
        assert end_of_month(date(2026, 2, 10)) == date(2026, 2, 28)
        assert end_of_month(date(2028, 2, 1)) == date(2028, 2, 29)
        assert end_of_month(date(2026, 12, 31)) == date(2026, 12, 31)

    @pytest.mark.asyncio
    async def test_is_billable_needs_customer_and_subscription(self, make_agency) -> None:
        assert is_billable(await make_agency("a-paid"))
        assert not is_billable(await make_agency("a-cus", subscription_id=None))
        assert not is_billable(await make_agency("a-none", customer_id=None, subscription_id=None))


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


class TestRequest:
    @pytest.mark.asyncio
    async def test_request_creates_pending_engagement(
        self, db_session, make_agency, make_clients, workflow, gateway, event_bus, received_events
    ) -> None:
        await make_agency()
        await make_clients(1)

        ms = await workflow.request("agency-1", "client-0", "growth", requested_by="user-1")
        await event_bus.drain()

        assert ms.status == "PENDING"
        assert ms.monthly_price_cents == 150000
        assert ms.commission_percent == 20
        assert ms.monthly_commission_cents == 30000
        assert ms.start_date == NOW.date()
        client = await _client(db_session)
        assert client.status == "PENDING"
        assert client.managed_service_status == "pending"
        assert client.managed_service_package == "growth"
        assert await _count(db_session, ManagedServiceRequestTable) == 1
        assert gateway.calls == []
        assert [e.event_type for e in received_events] == [EventType.MANAGED_SERVICE_REQUESTED]
        assert received_events[0].data["client_name"] == "client 0"

    @pytest.mark.asyncio
    async def test_request_without_payer_account(self, db_session, make_agency, make_clients, workflow) -> None:
        await make_agency(customer_id=None, subscription_id=None)
        await make_clients(1)

        with pytest.raises(PreconditionError) as exc_info:
            await workflow.request("agency-1", "client-0", "foundation")

        assert exc_info.value.reason == "not_activated"
        assert await _count(db_session, ManagedServiceTable) == 0
        assert (await _client(db_session)).status == "DASHBOARD_ONLY"

    @pytest.mark.asyncio
    async def test_request_during_trial(self, db_session, make_agency, make_clients, workflow) -> None:
        await make_agency(trial_ends_at=NOW + timedelta(days=1))
        await make_clients(1)

        with pytest.raises(PreconditionError) as exc_info:
            await workflow.request("agency-1", "client-0", "foundation")

        assert exc_info.value.reason == "in_trial"
        assert await _count(db_session, ManagedServiceTable) == 0

    @pytest.mark.asyncio
    async def test_request_for_foreign_client(self, make_agency, make_clients, workflow) -> None:
        await make_agency()
        await make_clients(1, user_id="outsider", prefix="foreign")

        with pytest.raises(NotFoundError) as exc_info:
            await workflow.request("agency-1", "foreign-0", "foundation")
        assert exc_info.value.reason == "client_not_found"

    @pytest.mark.asyncio
    async def test_contact_only_package_refused(self, make_agency, make_clients, workflow) -> None:
        await make_agency()
        await make_clients(1)

        with pytest.raises(ValidationError) as exc_info:
            await workflow.request("agency-1", "client-0", "custom")
        assert exc_info.value.reason == "package_not_requestable"

    @pytest.mark.asyncio
    async def test_duplicate_request_refused(self, db_session, make_agency, make_clients, workflow) -> None:
        await make_agency()
        await make_clients(1)
        await workflow.request("agency-1", "client-0", "foundation")

        with pytest.raises(PreconditionError) as exc_info:
            await workflow.request("agency-1", "client-0", "growth")

        assert exc_info.value.reason == "already_pending_or_active"
        assert await _count(db_session, ManagedServiceTable) == 1

    @pytest.mark.asyncio
    async def test_storage_rejects_concurrent_duplicate(self, db_session, make_agency, make_clients, workflow) -> None:
        """The unique index catches a duplicate the read check missed."""
        await make_agency()
        await make_clients(1)
        await workflow.request("agency-1", "client-0", "foundation")

        with patch.object(ManagedServiceRepository, "find_open", AsyncMock(return_value=[])):
            with pytest.raises(PreconditionError) as exc_info:
                await workflow.request("agency-1", "client-0", "foundation")

        assert exc_info.value.reason == "already_pending_or_active"
        assert await _count(db_session, ManagedServiceTable) == 1


# ---------------------------------------------------------------------------
# Approve / reject
# ---------------------------------------------------------------------------


class TestApprove:
    @pytest.mark.asyncio
    async def test_approve_creates_line_item(
        self, db_session, make_agency, make_clients, workflow, gateway, event_bus, received_events
    ) -> None:
        await make_agency()
        await make_clients(1)
        ms = await workflow.request("agency-1", "client-0", "domination")

        await workflow.approve(ms.id, reviewed_by="operator-1")
        await event_bus.drain()

        row = await _ms(db_session, ms.id)
        assert row.status == "ACTIVE"
        assert row.stripe_subscription_item_id.startswith("si_fake_")
        assert row.reviewed_by == "operator-1"
        assert row.activated_at is not None
        calls = gateway.called("create_subscription_item")
        assert len(calls) == 1
        assert calls[0]["subscription_id"] == "sub_1"
        assert calls[0]["price_id"] == "price_pkg_domination"
        assert calls[0]["idempotency_key"] == f"managed-service-{ms.id}-approve"
        client = await _client(db_session)
        assert client.status == "ACTIVE"
        assert client.managed_service_status == "active"
        assert EventType.MANAGED_SERVICE_APPROVED in [e.event_type for e in received_events]

    @pytest.mark.asyncio
    async def test_approve_without_subscription_skips_processor(
        self, db_session, make_agency, make_clients, workflow, gateway
    ) -> None:
        await make_agency(subscription_id=None)
        await make_clients(1)
        ms = await workflow.request("agency-1", "client-0", "foundation")

        await workflow.approve(ms.id)

        row = await _ms(db_session, ms.id)
        assert row.status == "ACTIVE"
        assert row.stripe_subscription_item_id is None
        assert gateway.called("create_subscription_item") == []
        unbilled = await ManagedServiceRepository(db_session).list_unbilled()
        assert [u.id for u in unbilled] == [ms.id]

    @pytest.mark.asyncio
    async def test_remote_failure_still_activates(
        self, db_session, make_agency, make_clients, workflow, gateway, event_bus, received_events
    ) -> None:
        await make_agency()
        await make_clients(1)
        ms = await workflow.request("agency-1", "client-0", "foundation")
        gateway.fail("create_subscription_item")

        await workflow.approve(ms.id)
        await event_bus.drain()

        row = await _ms(db_session, ms.id)
        assert row.status == "ACTIVE"
        assert row.stripe_subscription_item_id is None
        degraded = [e for e in received_events if e.event_type is EventType.REMOTE_DEGRADED]
        assert len(degraded) == 1
        assert degraded[0].data["operation"] == "approve_managed_service"
        assert degraded[0].data["entity_id"] == ms.id
        unbilled = await ManagedServiceRepository(db_session).list_unbilled()
        assert [u.id for u in unbilled] == [ms.id]

    @pytest.mark.asyncio
    async def test_approve_non_pending_is_rejected(self, db_session, make_agency, make_clients, workflow, gateway) -> None:
        await make_agency()
        await make_clients(1)
        ms = await workflow.request("agency-1", "client-0", "foundation")
        await workflow.approve(ms.id)
        item_id = (await _ms(db_session, ms.id)).stripe_subscription_item_id

        with pytest.raises(PreconditionError) as exc_info:
            await workflow.approve(ms.id)

        assert exc_info.value.status_code == 400
        assert exc_info.value.reason == "not_pending"
        assert len(gateway.called("create_subscription_item")) == 1
        assert (await _ms(db_session, ms.id)).stripe_subscription_item_id == item_id

    @pytest.mark.asyncio
    async def test_approve_beside_active_engagement_is_refused(
        self, db_session, make_agency, make_clients, workflow, gateway
    ) -> None:
        """A pending row that slipped past the read check cannot become a second ACTIVE."""
        await make_agency()
        await make_clients(1)
        first = await workflow.request("agency-1", "client-0", "foundation")
        await workflow.approve(first.id)
        first_id = first.id
        with patch.object(ManagedServiceRepository, "find_open", AsyncMock(return_value=[])):
            second = await workflow.request("agency-1", "client-0", "growth")
        second_id = second.id

        with pytest.raises(PreconditionError) as exc_info:
            await workflow.approve(second_id, reviewed_by="operator-1")

        assert exc_info.value.reason == "already_pending_or_active"
        assert exc_info.value.status_code == 400
        created = gateway.called("create_subscription_item")
        assert len(created) == 2
        assert created[1]["idempotency_key"] == f"managed-service-{second_id}-approve"
        assert len(gateway.called("delete_subscription_item")) == 1
        assert (await _ms(db_session, second_id)).status == "PENDING"
        assert (await _ms(db_session, first_id)).status == "ACTIVE"

    @pytest.mark.asyncio
    async def test_missing_package_price_changes_nothing(
        self, db_session, make_agency, make_clients, gateway, event_bus
    ) -> None:
        await make_agency()
        await make_clients(1)
        workflow = ManagedServiceWorkflow(
            db_session, gateway=gateway, catalog=PriceCatalog(), bus=event_bus, now=lambda: NOW
        )
        ms = await workflow.request("agency-1", "client-0", "foundation")

        with pytest.raises(ConfigurationError):
            await workflow.approve(ms.id)

        assert (await _ms(db_session, ms.id)).status == "PENDING"
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_local_failure_deletes_created_item(
        self, db_session, make_agency, make_clients, workflow, gateway
    ) -> None:
        await make_agency()
        await make_clients(1)
        ms = await workflow.request("agency-1", "client-0", "foundation")
        ms_id = ms.id

        with patch.object(ClientRepository, "set_lifecycle", AsyncMock(side_effect=RuntimeError("db down"))):
            with pytest.raises(RuntimeError):
                await workflow.approve(ms_id)

        created = gateway.called("create_subscription_item")
        deleted = gateway.called("delete_subscription_item")
        assert len(created) == 1
        assert len(deleted) == 1
        assert (await _ms(db_session, ms_id)).status == "PENDING"


class TestReject:
    @pytest.mark.asyncio
    async def test_reject_reverts_client(
        self, db_session, make_agency, make_clients, workflow, gateway, event_bus, received_events
    ) -> None:
        await make_agency()
        await make_clients(1)
        ms = await workflow.request("agency-1", "client-0", "foundation")

        await workflow.reject(ms.id, reviewed_by="operator-1", note="capacity")
        await event_bus.drain()

        row = await _ms(db_session, ms.id)
        assert row.status == "CANCELED"
        assert row.canceled_at is not None
        client = await _client(db_session)
        assert client.status == "DASHBOARD_ONLY"
        assert client.managed_service_status == "none"
        assert client.managed_service_package is None
        assert gateway.calls == []
        rejected = [e for e in received_events if e.event_type is EventType.MANAGED_SERVICE_REJECTED]
        assert rejected[0].data["note"] == "capacity"

    @pytest.mark.asyncio
    async def test_reject_active_is_refused(self, make_agency, make_clients, workflow) -> None:
        await make_agency()
        await make_clients(1)
        ms = await workflow.request("agency-1", "client-0", "foundation")
        await workflow.approve(ms.id)

        with pytest.raises(PreconditionError) as exc_info:
            await workflow.reject(ms.id)
        assert exc_info.value.status_code == 400


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------


class TestCancel:
    @pytest.mark.asyncio
    async def test_full_lifecycle_allows_new_request(
        self, db_session, make_agency, make_clients, workflow, gateway
    ) -> None:
        await make_agency()
        await make_clients(1)
        ms = await workflow.request("agency-1", "client-0", "foundation")
        await workflow.approve(ms.id)
        item_id = (await _ms(db_session, ms.id)).stripe_subscription_item_id

        await workflow.cancel(ms.id, agency_id="agency-1")

        row = await _ms(db_session, ms.id)
        assert row.status == "CANCELED"
        assert row.end_date == date(2026, 2, 28)
        assert gateway.called("delete_subscription_item") == [{"item_id": item_id}]
        client = await _client(db_session)
        assert client.status == "CANCELED"
        assert client.managed_service_status == "canceled"
        assert client.canceled_end_date == date(2026, 2, 28)

        again = await workflow.request("agency-1", "client-0", "growth")
        assert again.status == "PENDING"
        assert again.id != ms.id

    @pytest.mark.asyncio
    async def test_cancel_with_explicit_end_date(self, db_session, make_agency, make_clients, workflow) -> None:
        await make_agency()
        await make_clients(1)
        ms = await workflow.request("agency-1", "client-0", "foundation")
        await workflow.approve(ms.id)

        await workflow.cancel(ms.id, end_date=date(2026, 3, 15))

        assert (await _ms(db_session, ms.id)).end_date == date(2026, 3, 15)

    @pytest.mark.asyncio
    async def test_cancel_with_past_end_date(self, db_session, make_agency, make_clients, workflow) -> None:
        await make_agency()
        await make_clients(1)
        ms = await workflow.request("agency-1", "client-0", "foundation")
        await workflow.approve(ms.id)

        with pytest.raises(ValidationError) as exc_info:
            await workflow.cancel(ms.id, end_date=date(2026, 2, 9))

        assert exc_info.value.reason == "end_date_in_past"
        assert (await _ms(db_session, ms.id)).status == "ACTIVE"

    @pytest.mark.asyncio
    async def test_cancel_pending_clears_client(self, db_session, make_agency, make_clients, workflow, gateway) -> None:
        await make_agency()
        await make_clients(1)
        ms = await workflow.request("agency-1", "client-0", "foundation")

        await workflow.cancel(ms.id, agency_id="agency-1")

        row = await _ms(db_session, ms.id)
        assert row.status == "CANCELED"
        assert row.end_date is None
        client = await _client(db_session)
        assert client.status == "DASHBOARD_ONLY"
        assert client.managed_service_requested_date is None
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_cancel_twice(self, make_agency, make_clients, workflow) -> None:
        await make_agency()
        await make_clients(1)
        ms = await workflow.request("agency-1", "client-0", "foundation")
        await workflow.cancel(ms.id)

        with pytest.raises(PreconditionError) as exc_info:
            await workflow.cancel(ms.id)
        assert exc_info.value.reason == "already_canceled"

    @pytest.mark.asyncio
    async def test_cancel_scoped_to_agency(self, make_agency, make_clients, workflow) -> None:
        await make_agency()
        await make_agency("agency-2", member="user-2")
        await make_clients(1)
        ms = await workflow.request("agency-1", "client-0", "foundation")

        with pytest.raises(NotFoundError):
            await workflow.cancel(ms.id, agency_id="agency-2")

    @pytest.mark.asyncio
    async def test_remote_delete_failure_still_cancels(
        self, db_session, make_agency, make_clients, workflow, gateway, event_bus, received_events
    ) -> None:
        await make_agency()
        await make_clients(1)
        ms = await workflow.request("agency-1", "client-0", "foundation")
        await workflow.approve(ms.id)
        gateway.fail("delete_subscription_item")

        await workflow.cancel(ms.id)
        await event_bus.drain()

        assert (await _ms(db_session, ms.id)).status == "CANCELED"
        degraded = [e for e in received_events if e.event_type is EventType.REMOTE_DEGRADED]
        assert degraded[0].data["operation"] == "cancel_managed_service"


# ---------------------------------------------------------------------------
# CANCELED is terminal
# ---------------------------------------------------------------------------


async def _snapshot(db_session, ms_id: str) -> tuple:
    row = await _ms(db_session, ms_id)
    client = await _client(db_session)
    return (
        row.status,
        row.stripe_subscription_item_id,
        row.reviewed_by,
        row.end_date,
        client.status,
        client.managed_service_status,
        client.canceled_end_date,
    )


class TestCanceledIsTerminal:
    @pytest_asyncio.fixture()
    async def canceled_active(self, make_agency, make_clients, workflow) -> str:
        await make_agency()
        await make_clients(1)
        ms = await workflow.request("agency-1", "client-0", "foundation")
        await workflow.approve(ms.id)
        await workflow.cancel(ms.id, agency_id="agency-1")
        return ms.id

    @pytest.mark.asyncio
    async def test_approve_after_cancel(self, db_session, canceled_active, workflow, gateway) -> None:
        before = await _snapshot(db_session, canceled_active)
        calls_before = len(gateway.calls)

        with pytest.raises(PreconditionError) as exc_info:
            await workflow.approve(canceled_active, reviewed_by="operator-1")

        assert exc_info.value.status_code == 400
        assert exc_info.value.reason == "not_pending"
        assert len(gateway.calls) == calls_before
        assert await _snapshot(db_session, canceled_active) == before

    @pytest.mark.asyncio
    async def test_reject_after_cancel(self, db_session, canceled_active, workflow, gateway) -> None:
        before = await _snapshot(db_session, canceled_active)
        calls_before = len(gateway.calls)

        with pytest.raises(PreconditionError) as exc_info:
            await workflow.reject(canceled_active, reviewed_by="operator-1")

        assert exc_info.value.status_code == 400
        assert exc_info.value.reason == "not_pending"
        assert len(gateway.calls) == calls_before
        assert await _snapshot(db_session, canceled_active) == before

    @pytest.mark.asyncio
    async def test_approve_after_reject(self, db_session, make_agency, make_clients, workflow, gateway) -> None:
        await make_agency()
        await make_clients(1)
        ms = await workflow.request("agency-1", "client-0", "foundation")
        await workflow.reject(ms.id, reviewed_by="operator-1")
        before = await _snapshot(db_session, ms.id)

        with pytest.raises(PreconditionError) as exc_info:
            await workflow.approve(ms.id, reviewed_by="operator-2")

        assert exc_info.value.status_code == 400
        assert exc_info.value.reason == "not_pending"
        assert gateway.calls == []
        assert await _snapshot(db_session, ms.id) == before

    @pytest.mark.asyncio
    async def test_compare_and_set_refuses_canceled_row(self, db_session, canceled_active) -> None:
        """A stale PENDING read cannot move the row once it is CANCELED."""
        repo = ManagedServiceRepository(db_session)

        assert not await repo.transition(canceled_active, expected="PENDING", status="ACTIVE")
        assert (await _ms(db_session, canceled_active)).status == "CANCELED"


class TestLists:
    @pytest.mark.asyncio
    async def test_list_for_agency_and_pending(self, make_agency, make_clients, workflow) -> None:
        await make_agency()
        await make_clients(2)
        first = await workflow.request("agency-1", "client-0", "foundation")
        await workflow.request("agency-1", "client-1", "growth")
        await workflow.approve(first.id)

        assert len(await workflow.list_for_agency("agency-1")) == 2
        assert len(await workflow.list_for_agency("agency-1", status="ACTIVE")) == 1
        pending = await workflow.list_pending()
        assert [p.client_id for p in pending] == ["client-1"]
