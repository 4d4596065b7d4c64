"""API router modules for the agency billing API."""

from __future__ import annotations

from api.routers import add_ons, admin, billing, health, managed_services, metrics

__all__ = [
    "add_ons",
    "admin",
    "billing",
    "health",
    "managed_services",
    "metrics",
]
