"""Plan change: preview and execution.

Plan changes are remote-first.  The single mutating processor call swaps
the price on the existing base-plan line-item; only once that succeeds is
the local tier written, and then from a fresh read of the subscription
rather than from the request.  Any processor error aborts before the local
write, so the agency keeps its previous tier.

Client and managed-service counts are re-read on every validation, both
for the preview endpoint and inside :meth:`PlanChangeService.change_plan`.
"""

from __future__ import annotations

import logging
from typing import Any

from agency_core.catalog.pricing import PriceCatalog
from agency_core.catalog.tiers import BillingType, TierId, lookup, normalize_tier_id, parse_tier
from agency_core.errors import ConfigurationError, NotFoundError, PreconditionError, RemoteGatewayError, ValidationError
from agency_core.limits.plan_limits import PlanChangeDecision, evaluate_plan_change
from agency_core.state.repository import AgencyRepository, ClientRepository, ManagedServiceRepository
from agency_core.state.tables import AgencyTable
from sqlalchemy.ext.asyncio import AsyncSession

from api.middleware.prometheus import record_remote_failure
from api.services.billing_gateway import BillingGateway, SubscriptionItem
from api.services.billing_service import find_base_plan_items, tier_from_subscription
from api.services.event_bus import EventBus, EventType

logger = logging.getLogger(__name__)


class PlanChangeValidator:
    """Read-only check of an agency's usage against a target tier."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def validate(self, agency_id: str, target: str | TierId) -> PlanChangeDecision:
        """Return whether *agency_id* fits inside *target*.

        Unknown tiers raise :class:`ValidationError`.  Unlimited tiers are
        allowed without touching the database.
        """
        config = lookup(target)
        if config.is_unlimited:
            return PlanChangeDecision.unlimited(config)

        total_clients = await ClientRepository(self._session, agency_id).count_owned()
        active_managed = await ManagedServiceRepository(self._session, agency_id).count_active_clients()
        decision = evaluate_plan_change(config, total_clients, active_managed)
        if not decision.allowed:
            logger.info(
                "Plan change to %s denied for agency %s: %s (clients=%d, managed=%d, limit=%s)",
                config.tier_id.value,
                agency_id,
                decision.reason,
                total_clients,
                active_managed,
                decision.limit,
            )
        return decision


class PlanChangeService:
    """Execute a plan change against the billing processor.

    Parameters
    ----------
    session:
        Active database session.
    gateway:
        Billing processor, or ``None`` when billing is disabled.
    catalog:
        Base-plan price references.
    bus:
        Notification sink; receives ``plan.changed`` after commit.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        gateway: BillingGateway | None,
        catalog: PriceCatalog,
        bus: EventBus | None = None,
    ) -> None:
        self._session = session
        self._gateway = gateway
        self._catalog = catalog
        self._bus = bus
        self._validator = PlanChangeValidator(session)

    async def preview(self, agency_id: str, target: str) -> PlanChangeDecision:
        return await self._validator.validate(agency_id, target)

    async def _load_agency(self, agency_id: str) -> AgencyTable:
        agency = await AgencyRepository(self._session).get(agency_id)
        if agency is None:
            raise NotFoundError("Agency not found", reason="agency_not_found")
        return agency

    def _single_base_item(self, items: list[SubscriptionItem], subscription_id: str) -> SubscriptionItem:
        if not items:
            raise PreconditionError(
                f"Subscription {subscription_id} has no recognised base-plan line-item",
                reason="base_plan_not_found",
            )
        if len(items) > 1:
            raise PreconditionError(
                f"Subscription {subscription_id} has {len(items)} base-plan line-items",
                reason="ambiguous_base_plan",
            )
        return items[0]

    async def change_plan(self, agency_id: str, target: str) -> dict[str, Any]:
        """Move *agency_id* to *target*.

        Raises
        ------
        ValidationError
            Unknown tier, same tier, or usage over the target limit.
        PreconditionError
            Non-paid billing, no subscription, or no unique base-plan item.
        ConfigurationError
            Target tier without a price, or billing disabled.
        RemoteGatewayError
            Any processor failure.  No local state has changed.
        """
        tier = parse_tier(target)
        agency = await self._load_agency(agency_id)

        if agency.billing_type != BillingType.PAID.value:
            raise PreconditionError(
                "Plan changes for this account are handled by our team. Please contact support.",
                reason="manual_billing",
            )
        if not agency.stripe_subscription_id:
            raise PreconditionError("No active subscription to change", reason="no_subscription")
        current = normalize_tier_id(agency.subscription_tier)
        if current is tier:
            raise ValidationError(f"You are already on the {lookup(tier).name} plan", reason="same_plan")

        decision = await self._validator.validate(agency.id, tier)
        if not decision.allowed:
            raise ValidationError(decision.message or "Plan change not allowed", reason=decision.reason)

        price_id = self._catalog.tier_price(tier)
        if self._gateway is None:
            raise ConfigurationError("billing is disabled for this deployment", reason="billing_disabled")

        subscription_id = agency.stripe_subscription_id
        try:
            subscription = await self._gateway.retrieve_subscription(subscription_id)
            base_item = self._single_base_item(find_base_plan_items(subscription, self._catalog), subscription_id)
            if base_item.price_id == price_id:
                raise ValidationError(f"You are already on the {lookup(tier).name} plan", reason="same_plan")
            updated_item = await self._gateway.update_subscription_item_price(base_item.id, price_id)
        except RemoteGatewayError:
            record_remote_failure("change_plan", degraded=False)
            raise

        logger.info(
            "Swapped base plan item %s on %s from %s to %s for agency %s",
            base_item.id,
            subscription_id,
            base_item.price_id,
            price_id,
            agency.id,
        )
        return await self._reconcile(agency, subscription_id, previous=agency.subscription_tier, item=updated_item)

    async def _reconcile(
        self,
        agency: AgencyTable,
        subscription_id: str,
        *,
        previous: str | None,
        item: SubscriptionItem,
    ) -> dict[str, Any]:
        """Write the tier the processor now reports back onto the agency.

        The price swap has already committed remotely, so a failed re-read
        falls back to the updated item's price instead of failing the call.
        """
        resolved: TierId | None
        try:
            subscription = await self._gateway.retrieve_subscription(subscription_id)  # type: ignore[union-attr]
            resolved = tier_from_subscription(subscription, self._catalog)
        except RemoteGatewayError as exc:
            logger.warning(
                "Re-read of subscription %s failed after plan change for agency %s: %s",
                subscription_id,
                agency.id,
                exc.message,
            )
            resolved = self._catalog.tier_for_price(item.price_id)

        if resolved is None:
            logger.error(
                "Could not resolve tier for subscription %s after plan change; agency %s keeps %s",
                subscription_id,
                agency.id,
                previous,
            )
            new_tier = previous
        else:
            new_tier = resolved.value

        await AgencyRepository(self._session).set_subscription_state(
            agency.id,
            subscription_tier=new_tier,
            stripe_subscription_id=subscription_id,
        )
        await self._session.commit()

        if self._bus is not None and new_tier != previous:
            self._bus.publish_nowait(
                EventType.PLAN_CHANGED,
                tenant_id=agency.id,
                data={"previous_tier": previous, "tier": new_tier, "source": "plan_change"},
            )
        return {"agency_id": agency.id, "previous_tier": previous, "tier": new_tier}
