"""Managed-service package catalog."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from agency_core.errors import ValidationError


class ManagedPackage(str, Enum):
    """Managed-service packages an agency can request for a client."""

    FOUNDATION = "foundation"
    GROWTH = "growth"
    DOMINATION = "domination"
    MARKET_DOMINATION = "market_domination"
    CUSTOM = "custom"


@dataclass(frozen=True)
class PackageConfig:
    package_id: ManagedPackage
    name: str
    monthly_price_cents: int
    requestable: bool = True


PACKAGES: dict[ManagedPackage, PackageConfig] = {
    ManagedPackage.FOUNDATION: PackageConfig(ManagedPackage.FOUNDATION, "SEO Essentials + Automation", 75000),
    ManagedPackage.GROWTH: PackageConfig(ManagedPackage.GROWTH, "Growth & Automation", 150000),
    ManagedPackage.DOMINATION: PackageConfig(ManagedPackage.DOMINATION, "Authority Builder", 300000),
    ManagedPackage.MARKET_DOMINATION: PackageConfig(ManagedPackage.MARKET_DOMINATION, "Market Domination", 500000),
    # Quoted by sales; never self-served.
    ManagedPackage.CUSTOM: PackageConfig(ManagedPackage.CUSTOM, "Custom", 500000, requestable=False),
}


def parse_package(raw: str | ManagedPackage) -> PackageConfig:
    """Return the requestable package for *raw*.

    Raises
    ------
    ValidationError
        For unknown packages and for contact-only packages.
    """
    try:
        package = ManagedPackage(raw)
    except ValueError:
        raise ValidationError(f"Unknown managed-service package: {raw!r}", reason="unknown_package") from None
    config = PACKAGES[package]
    if not config.requestable:
        raise ValidationError(
            f"The {config.name} package is arranged directly with our team and cannot be requested here",
            reason="package_not_requestable",
        )
    return config


def compute_commission(monthly_price_cents: int, commission_percent: int) -> int:
    """Monthly commission in cents, rounded down."""
    return monthly_price_cents * commission_percent // 100
