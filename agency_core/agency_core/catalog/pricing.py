"""External price references for tiers, add-ons and managed-service packages.

A :class:`PriceCatalog` is built once per process from configuration and
passed to the services that talk to the billing processor.  Tests construct
their own catalogs directly.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from types import MappingProxyType

from agency_core.catalog.add_ons import ADD_ON_OPTIONS, AddOnOption, AddOnType
from agency_core.catalog.packages import ManagedPackage
from agency_core.catalog.tiers import TierId
from agency_core.errors import ConfigurationError

logger = logging.getLogger(__name__)


class PriceCatalog:
    """Read-only mapping from catalog entries to processor price ids.

    Parameters
    ----------
    plan_prices:
        Base-plan price id per tier.  Tiers without an entry cannot be
        subscribed to through the processor.
    add_on_prices:
        Price id per add-on option.  Keys are :class:`AddOnOption` entries or
        ``"type:option"`` strings.
    package_prices:
        Price id per managed-service package.
    """

    def __init__(
        self,
        plan_prices: Mapping[TierId, str] | None = None,
        add_on_prices: Mapping[AddOnOption | str, str] | None = None,
        package_prices: Mapping[ManagedPackage, str] | None = None,
    ) -> None:
        self._plan_prices = MappingProxyType({TierId(k): v for k, v in (plan_prices or {}).items() if v})
        self._add_on_prices = MappingProxyType(
            {(k.key if isinstance(k, AddOnOption) else k): v for k, v in (add_on_prices or {}).items() if v}
        )
        self._package_prices = MappingProxyType({ManagedPackage(k): v for k, v in (package_prices or {}).items() if v})
        self._price_to_tier = MappingProxyType({v: k for k, v in self._plan_prices.items()})

        known_keys = {opt.key for options in ADD_ON_OPTIONS.values() for opt in options.values()}
        for key in self._add_on_prices:
            if key not in known_keys:
                logger.warning("Ignoring price mapping for unknown add-on option %s", key)

    # ------------------------------------------------------------------
    # Base plans
    # ------------------------------------------------------------------

    def tier_price(self, tier: TierId) -> str:
        price = self._plan_prices.get(tier)
        if price is None:
            raise ConfigurationError(f"no billing price mapped for tier {tier.value}", reason="tier_price_missing")
        return price

    def tier_for_price(self, price_id: str | None) -> TierId | None:
        """Reverse-map a base-plan price id to its tier, or ``None``."""
        if not price_id:
            return None
        return self._price_to_tier.get(price_id)

    def is_base_plan_price(self, price_id: str | None) -> bool:
        return self.tier_for_price(price_id) is not None

    @property
    def plan_prices(self) -> Mapping[TierId, str]:
        return self._plan_prices

    # ------------------------------------------------------------------
    # Add-ons and managed services
    # ------------------------------------------------------------------

    def add_on_price(self, add_on_type: AddOnType, option: str) -> str:
        key = f"{add_on_type.value}:{option}"
        price = self._add_on_prices.get(key)
        if price is None:
            raise ConfigurationError(f"no billing price mapped for add-on {key}", reason="add_on_price_missing")
        return price

    def package_price(self, package: ManagedPackage) -> str:
        price = self._package_prices.get(package)
        if price is None:
            raise ConfigurationError(
                f"no billing price mapped for managed-service package {package.value}",
                reason="package_price_missing",
            )
        return price
