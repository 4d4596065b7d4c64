"""FastAPI dependency injection for settings, sessions and billing collaborators."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from agency_core.catalog.pricing import PriceCatalog
from agency_core.errors import NotFoundError, PreconditionError
from agency_core.state.database import get_engine
from agency_core.state.repository import AgencyRepository
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.config import APISettings, load_api_settings
from api.middleware.rbac import Role, get_user_role
from api.services.activation_service import is_trial_expired
from api.services.billing_gateway import BillingGateway, StripeBillingGateway
from api.services.event_bus import EventBus, get_event_bus

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        statement_timeout_ms=settings.db_statement_timeout_ms,
        lock_timeout_ms=settings.db_lock_timeout_ms,
    )
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession``.

    Workflow services commit their own unit of work; anything left pending
    on clean exit is committed, and the session is rolled back on exception.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Caller identity
# ---------------------------------------------------------------------------


def get_tenant_id(request: Request) -> str:
    """Return the agency id set by the authentication middleware."""
    tenant_id = getattr(request.state, "tenant_id", None)
    if not tenant_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return tenant_id


def get_user_id(request: Request) -> str | None:
    return getattr(request.state, "sub", None)


TenantDep = Annotated[str, Depends(get_tenant_id)]
UserDep = Annotated[str | None, Depends(get_user_id)]
RoleDep = Annotated[Role, Depends(get_user_role)]

# ---------------------------------------------------------------------------
# Billing collaborators
# ---------------------------------------------------------------------------

_gateway_cache: dict[int, StripeBillingGateway] = {}
_catalog_cache: dict[int, PriceCatalog] = {}


def get_billing_gateway(settings: SettingsDep) -> BillingGateway | None:
    """Return the Stripe gateway, or ``None`` when billing is disabled."""
    if not settings.billing_enabled:
        return None
    key = id(settings)
    gateway = _gateway_cache.get(key)
    if gateway is None:
        secret = settings.stripe_secret_key.get_secret_value()
        if not secret:
            logger.warning("Billing is enabled but API_STRIPE_SECRET_KEY is empty; treating billing as disabled")
            return None
        gateway = StripeBillingGateway(
            secret,
            timeout_seconds=settings.stripe_timeout_seconds,
            max_network_retries=settings.stripe_max_network_retries,
        )
        _gateway_cache[key] = gateway
    return gateway


def get_price_catalog(settings: SettingsDep) -> PriceCatalog:
    """Return the :class:`PriceCatalog` built from *settings* (cached)."""
    key = id(settings)
    catalog = _catalog_cache.get(key)
    if catalog is None:
        catalog = settings.price_catalog()
        _catalog_cache[key] = catalog
    return catalog


GatewayDep = Annotated[BillingGateway | None, Depends(get_billing_gateway)]
CatalogDep = Annotated[PriceCatalog, Depends(get_price_catalog)]
EventBusDep = Annotated[EventBus, Depends(get_event_bus)]

# ---------------------------------------------------------------------------
# Trial guard
# ---------------------------------------------------------------------------


async def require_trial_not_expired(session: SessionDep, tenant_id: TenantDep, role: RoleDep) -> None:
    """Refuse paid-feature routes once an unactivated trial has ended.

    Operators are exempt.  Billing and activation routes do not use this
    guard so an expired agency can still pay.
    """
    if role.is_operator:
        return
    agency = await AgencyRepository(session).get(tenant_id)
    if agency is None:
        raise NotFoundError("Agency not found", reason="agency_not_found")
    if is_trial_expired(agency):
        raise PreconditionError(
            "Your free trial has ended. Add a payment method to keep using paid features.",
            reason="TRIAL_EXPIRED",
            status_code=403,
        )
