"""Shared fixtures for the agency_core test suite."""

from __future__ import annotations

import pytest
import pytest_asyncio
from agency_core.catalog.pricing import PriceCatalog
from agency_core.catalog.tiers import TierId
from agency_core.state.tables import Base
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool


@pytest_asyncio.fixture
async def async_session():
    """Provide an async session backed by an in-memory SQLite database."""
    engine = create_async_engine("sqlite+aiosqlite://", echo=False, poolclass=StaticPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session

    await engine.dispose()


@pytest.fixture
def price_catalog() -> PriceCatalog:
    return PriceCatalog(
        plan_prices={
            TierId.SOLO: "price_solo",
            TierId.STARTER: "price_starter",
            TierId.GROWTH: "price_growth",
            TierId.PRO: "price_pro",
        },
        add_on_prices={"extra_keywords_tracked:100": "price_kw_100"},
    )
