"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from agency_core.state.database import get_engine
from agency_core.state.repository import (
    AddOnRepository,
    AgencyRepository,
    ClientRepository,
    ManagedServiceRepository,
)

__all__ = [
    "AddOnRepository",
    "AgencyRepository",
    "ClientRepository",
    "ManagedServiceRepository",
    "get_engine",
]
