"""Shared fixtures for the billing API tests.

Provides an in-memory SQLite session, a scriptable fake billing gateway,
seed-data factories, an event bus that records what it receives, and a
FastAPI app wired to all of them.
"""

from __future__ import annotations

import dataclasses
import itertools
import os
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set JWT_SECRET env var BEFORE importing application modules so the
# AuthenticationMiddleware picks up a deterministic secret in dev mode
# instead of generating a random one.
_TEST_JWT_SECRET = "test-secret-key-for-agency-billing-tests"
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from agency_core.catalog.add_ons import ADD_ON_OPTIONS
from agency_core.catalog.packages import ManagedPackage
from agency_core.catalog.pricing import PriceCatalog
from agency_core.catalog.tiers import TierId
from agency_core.errors import RemoteGatewayError
from agency_core.state.repository import AgencyRepository, ClientRepository
from agency_core.state.tables import AgencyTable, Base, ClientTable

from api.config import APISettings
from api.dependencies import (
    get_billing_gateway,
    get_db_session,
    get_event_bus,
    get_price_catalog,
    get_settings,
)
from api.main import create_app
from api.security import TokenConfig, TokenManager
from api.services.billing_gateway import SetupIntent, Subscription, SubscriptionItem
from api.services.event_bus import EventBus, EventPayload

# ---------------------------------------------------------------------------
# Auth tokens
# ---------------------------------------------------------------------------

_TOKENS = TokenManager(TokenConfig(secret=SecretStr(os.environ["JWT_SECRET"])))


def make_auth_headers(tenant_id: str = "agency-1", role: str = "agency", sub: str = "user-1") -> dict[str, str]:
    """Return an ``Authorization`` header carrying a valid token."""
    token = _TOKENS.issue_token(sub=sub, tenant_id=tenant_id, role=role)
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Fake billing gateway
# ---------------------------------------------------------------------------


class FakeBillingGateway:
    """In-memory :class:`~api.services.billing_gateway.BillingGateway`.

    Every call is appended to ``calls``.  ``fail(operation)`` makes the named
    operation raise :class:`RemoteGatewayError` until ``recover()``.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.subscriptions: dict[str, Subscription] = {}
        self.setup_intents: dict[str, SetupIntent] = {}
        self._failures: dict[str, RemoteGatewayError] = {}
        self._seq = itertools.count(1)

    # -- scripting -----------------------------------------------------------

    def fail(self, operation: str, *, reason: str | None = None) -> None:
        self._failures[operation] = RemoteGatewayError(f"{operation} failed", operation=operation, reason=reason)

    def recover(self, operation: str | None = None) -> None:
        if operation is None:
            self._failures.clear()
        else:
            self._failures.pop(operation, None)

    def called(self, operation: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    def add_subscription(
        self,
        subscription_id: str,
        *,
        customer_id: str,
        price_ids: list[str],
        status: str = "active",
    ) -> Subscription:
        items = [SubscriptionItem(id=f"si_{subscription_id}_{i}", price_id=p) for i, p in enumerate(price_ids)]
        sub = Subscription(id=subscription_id, status=status, customer_id=customer_id, items=items)
        self.subscriptions[subscription_id] = sub
        return sub

    def _record(self, operation: str, **kwargs: Any) -> None:
        self.calls.append((operation, kwargs))
        if operation in self._failures:
            raise self._failures[operation]

    def _next(self, prefix: str) -> str:
        return f"{prefix}_fake_{next(self._seq)}"

    # -- BillingGateway ------------------------------------------------------

    async def create_customer(self, *, email: str | None, name: str, metadata: dict[str, str]) -> str:
        self._record("create_customer", email=email, name=name, metadata=metadata)
        return self._next("cus")

    async def attach_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        self._record("attach_payment_method", customer_id=customer_id, payment_method_id=payment_method_id)

    async def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        self._record("set_default_payment_method", customer_id=customer_id, payment_method_id=payment_method_id)

    async def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        payment_method_id: str | None,
        trial_days: int | None = None,
        metadata: dict[str, str] | None = None,
    ) -> Subscription:
        self._record(
            "create_subscription",
            customer_id=customer_id,
            price_id=price_id,
            payment_method_id=payment_method_id,
            trial_days=trial_days,
        )
        return self.add_subscription(
            self._next("sub"),
            customer_id=customer_id,
            price_ids=[price_id],
            status="trialing" if trial_days else "active",
        )

    async def retrieve_subscription(self, subscription_id: str) -> Subscription:
        self._record("retrieve_subscription", subscription_id=subscription_id)
        if subscription_id not in self.subscriptions:
            raise RemoteGatewayError("No such subscription", operation="retrieve_subscription")
        return self.subscriptions[subscription_id]

    async def create_subscription_item(
        self,
        subscription_id: str,
        price_id: str,
        *,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> SubscriptionItem:
        self._record(
            "create_subscription_item",
            subscription_id=subscription_id,
            price_id=price_id,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        item = SubscriptionItem(id=self._next("si"), price_id=price_id)
        sub = self.subscriptions.get(subscription_id)
        if sub is not None:
            self.subscriptions[subscription_id] = dataclasses.replace(sub, items=[*sub.items, item])
        return item

    async def update_subscription_item_price(self, item_id: str, price_id: str) -> SubscriptionItem:
        self._record("update_subscription_item_price", item_id=item_id, price_id=price_id)
        updated = SubscriptionItem(id=item_id, price_id=price_id)
        for sub_id, sub in self.subscriptions.items():
            if any(item.id == item_id for item in sub.items):
                items = [updated if item.id == item_id else item for item in sub.items]
                self.subscriptions[sub_id] = dataclasses.replace(sub, items=items)
        return updated

    async def delete_subscription_item(self, item_id: str) -> None:
        self._record("delete_subscription_item", item_id=item_id)
        for sub_id, sub in self.subscriptions.items():
            items = [item for item in sub.items if item.id != item_id]
            self.subscriptions[sub_id] = dataclasses.replace(sub, items=items)

    async def create_setup_intent(self, *, metadata: dict[str, str] | None = None) -> SetupIntent:
        self._record("create_setup_intent", metadata=metadata)
        intent_id = self._next("seti")
        intent = SetupIntent(id=intent_id, status="requires_payment_method", client_secret=f"{intent_id}_secret")
        self.setup_intents[intent_id] = intent
        return intent

    async def retrieve_setup_intent(self, setup_intent_id: str) -> SetupIntent:
        self._record("retrieve_setup_intent", setup_intent_id=setup_intent_id)
        if setup_intent_id not in self.setup_intents:
            raise RemoteGatewayError("No such setup intent", operation="retrieve_setup_intent")
        return self.setup_intents[setup_intent_id]


# ---------------------------------------------------------------------------
# Settings, catalog, gateway, event bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        host="0.0.0.0",
        port=8000,
        debug=True,
        database_url="sqlite+aiosqlite:///:memory:",
        platform_env="dev",
        cors_origins=["http://localhost:3000"],
        billing_enabled=True,
        stripe_secret_key="sk_test_xxx",
        stripe_webhook_secret="whsec_test_xxx",
    )


@pytest.fixture()
def price_catalog() -> PriceCatalog:
    """Every tier except free/enterprise, every add-on and package mapped."""
    add_on_prices = {
        opt.key: f"price_{opt.add_on_type.value}_{opt.option}"
        for options in ADD_ON_OPTIONS.values()
        for opt in options.values()
    }
    return PriceCatalog(
        plan_prices={
            TierId.SOLO: "price_solo",
            TierId.STARTER: "price_starter",
            TierId.GROWTH: "price_growth",
            TierId.PRO: "price_pro",
            TierId.BUSINESS_LITE: "price_business_lite",
            TierId.BUSINESS_PRO: "price_business_pro",
        },
        add_on_prices=add_on_prices,
        package_prices={package: f"price_pkg_{package.value}" for package in ManagedPackage},
    )


@pytest.fixture()
def gateway() -> FakeBillingGateway:
    return FakeBillingGateway()


@pytest.fixture()
def received_events() -> list[EventPayload]:
    return []


@pytest.fixture()
def event_bus(received_events: list[EventPayload]) -> EventBus:
    """An :class:`EventBus` whose only handler records payloads."""
    bus = EventBus()

    async def _record(payload: EventPayload) -> None:
        received_events.append(payload)

    bus.register_handler(_record)
    return bus


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def db_session():
    """Provide an async session backed by an in-memory SQLite database."""
    engine = create_async_engine("sqlite+aiosqlite://", echo=False, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session

    await engine.dispose()


@pytest.fixture()
def make_agency(db_session) -> Callable[..., Awaitable[AgencyTable]]:
    """Factory for a committed agency with one ``agency`` member ``user-1``.

    Defaults describe an activated, paid agency on ``growth`` whose base
    subscription is ``sub_1``.
    """

    async def _make(
        agency_id: str = "agency-1",
        *,
        tier: str | None = "growth",
        customer_id: str | None = "cus_1",
        subscription_id: str | None = "sub_1",
        billing_type: str = "paid",
        trial_ends_at: datetime | None = None,
        member: str = "user-1",
    ) -> AgencyTable:
        repo = AgencyRepository(db_session)
        agency = await repo.create(
            agency_id=agency_id,
            name=f"Agency {agency_id}",
            contact_email=f"owner@{agency_id}.example",
            subscription_tier=tier,
            billing_type=billing_type,
            trial_ends_at=trial_ends_at,
        )
        agency.stripe_customer_id = customer_id
        agency.stripe_subscription_id = subscription_id
        await repo.add_member(agency_id, member)
        await db_session.commit()
        return agency

    return _make


@pytest.fixture()
def make_clients(db_session) -> Callable[..., Awaitable[list[ClientTable]]]:
    """Factory for *count* committed clients owned by *user_id*."""

    async def _make(count: int = 1, *, user_id: str = "user-1", prefix: str = "client") -> list[ClientTable]:
        repo = ClientRepository(db_session)
        rows = [
            await repo.create(name=f"{prefix} {i}", user_id=user_id, client_id=f"{prefix}-{i}")
            for i in range(count)
        ]
        await db_session.commit()
        return rows

    return _make


# ---------------------------------------------------------------------------
# FastAPI app (async httpx)
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(test_settings, db_session, gateway, price_catalog, event_bus):
    """Create a FastAPI app with dependency overrides for testing."""
    application = create_app()

    async def _override_session():
        yield db_session

    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_billing_gateway] = lambda: gateway
    application.dependency_overrides[get_price_catalog] = lambda: price_catalog
    application.dependency_overrides[get_event_bus] = lambda: event_bus
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncClient:
    """Yield an async httpx client authenticated as the ``agency`` owner of ``agency-1``."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers=make_auth_headers()) as ac:
        yield ac


@pytest_asyncio.fixture()
async def operator_client(app) -> AsyncClient:
    """Yield an async httpx client authenticated as a platform admin."""
    transport = ASGITransport(app=app)
    headers = make_auth_headers(tenant_id="platform", role="admin", sub="operator-1")
    async with AsyncClient(transport=transport, base_url="http://test", headers=headers) as ac:
        yield ac


@pytest.fixture()
def auth_headers() -> Callable[..., dict[str, str]]:
    """Return :func:`make_auth_headers` for per-request identities."""
    return make_auth_headers
