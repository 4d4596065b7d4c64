"""Add-on catalog and per-tier allow-list.

An add-on is a quantity-less capacity increment priced independently of the
base plan.  Each attached add-on maps 1:1 to a recurring line-item on the
agency's external subscription, so the same ``(type, option)`` pair can be
attached at most once.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from agency_core.catalog.tiers import TIERS, TierId
from agency_core.errors import ValidationError


class AddOnType(str, Enum):
    """Add-on categories."""

    EXTRA_DASHBOARDS = "extra_dashboards"
    EXTRA_KEYWORDS_TRACKED = "extra_keywords_tracked"
    EXTRA_KEYWORD_LOOKUPS = "extra_keyword_lookups"


@dataclass(frozen=True)
class AddOnOption:
    add_on_type: AddOnType
    option: str
    display_name: str
    details: str
    price_cents: int
    billing_interval: str = "month"

    @property
    def key(self) -> str:
        """Stable ``type:option`` key used in price maps."""
        return f"{self.add_on_type.value}:{self.option}"


ADD_ON_OPTIONS: dict[AddOnType, dict[str, AddOnOption]] = {
    AddOnType.EXTRA_DASHBOARDS: {
        "5_slots": AddOnOption(AddOnType.EXTRA_DASHBOARDS, "5_slots", "+5 Dashboards", "5 additional client dashboards", 9900),
        "10_slots": AddOnOption(
            AddOnType.EXTRA_DASHBOARDS, "10_slots", "+10 Dashboards", "10 additional client dashboards", 17900
        ),
        "25_slots": AddOnOption(
            AddOnType.EXTRA_DASHBOARDS, "25_slots", "+25 Dashboards", "25 additional client dashboards", 39900
        ),
    },
    AddOnType.EXTRA_KEYWORDS_TRACKED: {
        "100": AddOnOption(AddOnType.EXTRA_KEYWORDS_TRACKED, "100", "+100 Tracked Keywords", "100 more rank-tracked keywords", 2900),
        "250": AddOnOption(AddOnType.EXTRA_KEYWORDS_TRACKED, "250", "+250 Tracked Keywords", "250 more rank-tracked keywords", 5900),
        "500": AddOnOption(AddOnType.EXTRA_KEYWORDS_TRACKED, "500", "+500 Tracked Keywords", "500 more rank-tracked keywords", 9900),
    },
    AddOnType.EXTRA_KEYWORD_LOOKUPS: {
        "150": AddOnOption(
            AddOnType.EXTRA_KEYWORD_LOOKUPS, "150", "+150 Research Credits", "150 keyword research lookups per month", 4900
        ),
        "500": AddOnOption(
            AddOnType.EXTRA_KEYWORD_LOOKUPS, "500", "+500 Research Credits", "500 keyword research lookups per month", 12900
        ),
    },
}


def _all_options() -> frozenset[AddOnOption]:
    return frozenset(opt for options in ADD_ON_OPTIONS.values() for opt in options.values())


def _without_dashboards() -> frozenset[AddOnOption]:
    return frozenset(opt for opt in _all_options() if opt.add_on_type is not AddOnType.EXTRA_DASHBOARDS)


def _build_allow_list() -> dict[TierId, frozenset[AddOnOption]]:
    allowed: dict[TierId, frozenset[AddOnOption]] = {}
    for tier_id, config in TIERS.items():
        if tier_id is TierId.FREE:
            allowed[tier_id] = frozenset()
        elif config.is_flat_capacity:
            allowed[tier_id] = _without_dashboards()
        else:
            allowed[tier_id] = _all_options()
    return allowed


TIER_ADD_ONS: dict[TierId, frozenset[AddOnOption]] = _build_allow_list()


def parse_add_on(add_on_type: str | AddOnType, option: str) -> AddOnOption:
    """Resolve a ``(type, option)`` pair to its catalog entry.

    Raises
    ------
    ValidationError
        If either the type or the option is unknown.
    """
    try:
        kind = AddOnType(add_on_type)
    except ValueError:
        raise ValidationError(f"Unknown add-on type: {add_on_type!r}", reason="unknown_add_on") from None
    entry = ADD_ON_OPTIONS[kind].get(option)
    if entry is None:
        raise ValidationError(f"Unknown option {option!r} for add-on {kind.value}", reason="unknown_add_on_option")
    return entry


def allowed_add_ons(tier: TierId | None) -> frozenset[AddOnOption]:
    """Return the add-on options purchasable on *tier* (none without a tier)."""
    if tier is None:
        return frozenset()
    return TIER_ADD_ONS[tier]


def is_add_on_allowed(tier: TierId | None, option: AddOnOption) -> bool:
    return option in allowed_add_ons(tier)
