"""Static catalogs: tiers, add-ons, managed-service packages and prices."""

from agency_core.catalog.add_ons import AddOnOption, AddOnType, allowed_add_ons, parse_add_on
from agency_core.catalog.packages import ManagedPackage, PackageConfig, parse_package
from agency_core.catalog.pricing import PriceCatalog
from agency_core.catalog.tiers import BillingType, TierConfig, TierId, lookup, normalize_tier_id

__all__ = [
    "AddOnOption",
    "AddOnType",
    "BillingType",
    "ManagedPackage",
    "PackageConfig",
    "PriceCatalog",
    "TierConfig",
    "TierId",
    "allowed_add_ons",
    "lookup",
    "normalize_tier_id",
    "parse_add_on",
    "parse_package",
]
