"""Subscription tier catalog.

Eight tiers are sold, split across two product lines:

* **Agency** tiers (``free`` through ``enterprise``) scale the number of
  client dashboards an agency may manage.
* **Business** tiers (``business_lite``, ``business_pro``) are flat-capacity
  plans for a single in-house dashboard.

The catalog is pure data.  Price references for the external billing
processor live in :mod:`agency_core.catalog.pricing` so that they can be
injected per environment.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from agency_core.errors import ValidationError


class TierId(str, Enum):
    """Subscription tier identifiers."""

    FREE = "free"
    SOLO = "solo"
    STARTER = "starter"
    GROWTH = "growth"
    PRO = "pro"
    ENTERPRISE = "enterprise"
    BUSINESS_LITE = "business_lite"
    BUSINESS_PRO = "business_pro"


class TierKind(str, Enum):
    """Product line a tier belongs to."""

    AGENCY = "agency"
    BUSINESS = "business"


class BillingType(str, Enum):
    """How an agency is billed.

    Only ``paid`` agencies have their plan changed through the billing
    processor; the others are handled manually by an operator.
    """

    PAID = "paid"
    FREE = "free"
    CUSTOM = "custom"
    TRIAL = "trial"


@dataclass(frozen=True)
class TierConfig:
    """Limits and display metadata for one tier.

    ``None`` on any limit means unlimited.  ``monthly_price_usd`` is ``None``
    for tiers sold on a custom contract.
    """

    tier_id: TierId
    name: str
    kind: TierKind
    max_dashboards: int | None
    monthly_price_usd: int | None
    keywords_per_dashboard: int | None
    keywords_total: int | None
    research_credits_per_month: int | None
    max_team_users: int | None

    @property
    def is_unlimited(self) -> bool:
        return self.max_dashboards is None

    @property
    def is_flat_capacity(self) -> bool:
        """Tiers whose dashboard capacity cannot be extended with add-ons."""
        return self.kind is TierKind.BUSINESS or self.max_dashboards is None


TIERS: dict[TierId, TierConfig] = {
    TierId.FREE: TierConfig(TierId.FREE, "Free", TierKind.AGENCY, 0, 0, 0, 0, 0, 1),
    TierId.SOLO: TierConfig(TierId.SOLO, "Solo", TierKind.AGENCY, 3, 147, 50, 150, 50, 1),
    TierId.STARTER: TierConfig(TierId.STARTER, "Starter", TierKind.AGENCY, 10, 297, 75, 750, 150, 3),
    TierId.GROWTH: TierConfig(TierId.GROWTH, "Growth", TierKind.AGENCY, 25, 597, 100, 2500, 300, 5),
    TierId.PRO: TierConfig(TierId.PRO, "Pro", TierKind.AGENCY, 50, 997, 150, 7500, 600, 10),
    TierId.ENTERPRISE: TierConfig(TierId.ENTERPRISE, "Enterprise", TierKind.AGENCY, None, None, None, None, None, None),
    TierId.BUSINESS_LITE: TierConfig(
        TierId.BUSINESS_LITE, "Business Lite", TierKind.BUSINESS, 1, 79, 50, 50, 25, 1
    ),
    TierId.BUSINESS_PRO: TierConfig(
        TierId.BUSINESS_PRO, "Business Pro", TierKind.BUSINESS, 1, 197, 100, 100, 100, 3
    ),
}

DEFAULT_TIER = TierId.SOLO

_ALIASES: dict[str, TierId] = {
    "biz_lite": TierId.BUSINESS_LITE,
    "biz_pro": TierId.BUSINESS_PRO,
}


def normalize_tier_id(raw: str | None) -> TierId | None:
    """Map free-form tier input to a :class:`TierId`.

    Lower-cases, trims, and folds spaces and hyphens to underscores so that
    ``"Business Lite"`` and ``"business-lite"`` both resolve.  Returns
    ``None`` for empty or unknown input.
    """
    if not raw:
        return None
    key = raw.strip().lower().replace(" ", "_").replace("-", "_")
    if key in _ALIASES:
        return _ALIASES[key]
    try:
        return TierId(key)
    except ValueError:
        return None


def parse_tier(raw: str | TierId) -> TierId:
    """Like :func:`normalize_tier_id` but raises on unknown input."""
    if isinstance(raw, TierId):
        return raw
    tier = normalize_tier_id(raw)
    if tier is None:
        raise ValidationError(f"Unknown subscription tier: {raw!r}", reason="unknown_tier")
    return tier


def lookup(tier: str | TierId) -> TierConfig:
    """Return the :class:`TierConfig` for *tier*.

    Parameters
    ----------
    tier:
        A :class:`TierId` or any string accepted by :func:`normalize_tier_id`.

    Returns
    -------
    TierConfig
        The static limits for the tier.

    Raises
    ------
    ValidationError
        If the identifier does not name a known tier.
    """
    return TIERS[parse_tier(tier)]


def all_tiers() -> list[TierConfig]:
    return list(TIERS.values())
