"""Decide whether an agency's current usage fits inside a target tier.

The decision is a pure function of the target tier and two usage counts.
Client count is checked before managed-service count, so an agency that is
over on both is told to remove clients first.
"""

from __future__ import annotations

from dataclasses import dataclass

from agency_core.catalog.tiers import TierConfig, TierId

TOO_MANY_CLIENTS = "too_many_clients"
MANAGED_SERVICES_OVER_LIMIT = "managed_services_over_limit"


@dataclass(frozen=True)
class PlanChangeDecision:
    """Outcome of a plan-change check."""

    target_tier: TierId
    allowed: bool
    reason: str | None = None
    message: str | None = None
    limit: int | None = None
    total_clients: int | None = None
    active_managed_clients: int | None = None

    @classmethod
    def unlimited(cls, target: TierConfig) -> PlanChangeDecision:
        return cls(target_tier=target.tier_id, allowed=True)


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}" if count == 1 else f"{count} {noun}s"


def evaluate_plan_change(
    target: TierConfig,
    total_clients: int,
    active_managed_clients: int,
) -> PlanChangeDecision:
    """Check usage counts against the target tier's dashboard limit.

    Parameters
    ----------
    target:
        Catalog entry for the tier the agency wants to move to.
    total_clients:
        Number of clients owned by the agency's users.
    active_managed_clients:
        Number of distinct clients with an ``ACTIVE`` managed service.

    Returns
    -------
    PlanChangeDecision
        ``allowed=False`` carries ``reason`` (``too_many_clients`` or
        ``managed_services_over_limit``) and a message telling the agency
        how much to remove.
    """
    limit = target.max_dashboards
    if limit is None:
        return PlanChangeDecision.unlimited(target)

    counts = {
        "limit": limit,
        "total_clients": total_clients,
        "active_managed_clients": active_managed_clients,
    }

    if total_clients > limit:
        excess = total_clients - limit
        return PlanChangeDecision(
            target_tier=target.tier_id,
            allowed=False,
            reason=TOO_MANY_CLIENTS,
            message=(
                f"The {target.name} plan allows {_plural(limit, 'client')} but you have {total_clients}. "
                f"Remove {_plural(excess, 'client')} before switching."
            ),
            **counts,
        )

    if active_managed_clients > limit:
        excess = active_managed_clients - limit
        return PlanChangeDecision(
            target_tier=target.tier_id,
            allowed=False,
            reason=MANAGED_SERVICES_OVER_LIMIT,
            message=(
                f"The {target.name} plan allows {_plural(limit, 'managed service')} but you have "
                f"{active_managed_clients} active. Cancel {_plural(excess, 'managed service')} before switching."
            ),
            **counts,
        )

    return PlanChangeDecision(target_tier=target.tier_id, allowed=True, **counts)
