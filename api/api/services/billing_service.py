"""Subscription state service.

Keeps the agency's local tier in step with the billing processor:

* :meth:`BillingService.sync_tier_from_remote` re-reads the subscription and
  writes back whatever tier its base-plan line-item resolves to.
* :meth:`BillingService.handle_webhook_event` applies processor webhooks.

Also produces the billing summary shown to agencies and the unbilled
engagement report used by operators for manual reconciliation.
"""

from __future__ import annotations

import logging
from typing import Any

from agency_core.catalog.pricing import PriceCatalog
from agency_core.catalog.tiers import TierId, lookup, normalize_tier_id
from agency_core.errors import ConfigurationError, NotFoundError
from agency_core.state.repository import (
    AddOnRepository,
    AgencyRepository,
    ClientRepository,
    ManagedServiceRepository,
)
from agency_core.state.tables import AgencyTable
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.activation_service import is_activated, is_in_free_trial, is_trial_expired
from api.services.billing_gateway import BillingGateway, Subscription, SubscriptionItem, subscription_from_stripe
from api.services.event_bus import EventBus, EventType

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Base-plan resolution
# ---------------------------------------------------------------------------


def find_base_plan_items(subscription: Subscription, catalog: PriceCatalog) -> list[SubscriptionItem]:
    """Line-items whose price is one of the known base-plan prices.

    Add-on and managed-service line-items never carry a base-plan price, so
    a healthy subscription yields exactly one item.
    """
    return [item for item in subscription.items if catalog.is_base_plan_price(item.price_id)]


def tier_from_subscription(subscription: Subscription, catalog: PriceCatalog) -> TierId | None:
    """Resolve the tier of the first base-plan line-item, if any."""
    for item in find_base_plan_items(subscription, catalog):
        return catalog.tier_for_price(item.price_id)
    return None


class BillingService:
    """Subscription reads, tier sync and webhook handling.

    Parameters
    ----------
    session:
        Active database session.
    gateway:
        Billing processor, or ``None`` when billing is disabled.
    catalog:
        Price references used to resolve tiers from line-items.
    bus:
        Notification sink for tier changes and payment failures.
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
        self._agencies = AgencyRepository(session)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_billing_summary(self, agency_id: str) -> dict[str, Any]:
        """Return tier, limits, usage and activation state for an agency."""
        agency = await self._agencies.get(agency_id)
        if agency is None:
            raise NotFoundError("Agency not found", reason="agency_not_found")

        tier = normalize_tier_id(agency.subscription_tier)
        config = lookup(tier) if tier is not None else None
        total_clients = await ClientRepository(self._session, agency_id).count_owned()
        active_managed = await ManagedServiceRepository(self._session, agency_id).count_active_clients()
        add_ons = await AddOnRepository(self._session, agency_id).list_all()

        return {
            "agency_id": agency.id,
            "tier": tier.value if tier else None,
            "tier_name": config.name if config else None,
            "billing_type": agency.billing_type,
            "max_dashboards": config.max_dashboards if config else 0,
            "total_clients": total_clients,
            "active_managed_services": active_managed,
            "add_ons": len(add_ons),
            "is_activated": is_activated(agency),
            "is_in_free_trial": is_in_free_trial(agency),
            "is_trial_expired": is_trial_expired(agency),
            "trial_ends_at": agency.trial_ends_at.isoformat() if agency.trial_ends_at else None,
            "has_subscription": agency.stripe_subscription_id is not None,
        }

    async def list_unbilled(self) -> dict[str, list[dict[str, Any]]]:
        """ACTIVE engagements and add-ons with no processor line-item.

        These are the residue of degraded approve/attach calls, or of
        activated agencies whose subscription is missing, and need an
        operator to create the line-item by hand.  ``has_subscription`` is
        ``False`` when the agency needs a subscription first.
        """
        services = await ManagedServiceRepository(self._session).list_unbilled()
        add_ons = await AddOnRepository(self._session).list_unbilled()
        agencies = AgencyRepository(self._session)
        subscribed: dict[str, bool] = {}
        for agency_id in {row.agency_id for row in [*services, *add_ons]}:
            agency = await agencies.get(agency_id)
            subscribed[agency_id] = agency is not None and agency.stripe_subscription_id is not None
        return {
            "managed_services": [
                {
                    "id": ms.id,
                    "agency_id": ms.agency_id,
                    "client_id": ms.client_id,
                    "package_id": ms.package_id,
                    "monthly_price_cents": ms.monthly_price_cents,
                    "activated_at": ms.activated_at.isoformat() if ms.activated_at else None,
                    "has_subscription": subscribed[ms.agency_id],
                }
                for ms in services
            ],
            "add_ons": [
                {
                    "id": row.id,
                    "agency_id": row.agency_id,
                    "add_on_type": row.add_on_type,
                    "add_on_option": row.add_on_option,
                    "price_cents": row.price_cents,
                    "has_subscription": subscribed[row.agency_id],
                }
                for row in add_ons
            ],
        }

    # ------------------------------------------------------------------
    # Tier sync
    # ------------------------------------------------------------------

    async def _apply_subscription(self, agency: AgencyTable, subscription: Subscription, *, source: str) -> None:
        """Write the subscription's entitlement onto the agency row.

        Entitled subscriptions set the resolved tier (keeping the current one
        when no base-plan item is recognised); anything else clears both the
        tier and the subscription reference.
        """
        previous = agency.subscription_tier
        if subscription.is_entitled:
            tier = tier_from_subscription(subscription, self._catalog)
            if tier is None:
                logger.warning(
                    "Subscription %s for agency %s has no recognised base plan; keeping tier %s",
                    subscription.id,
                    agency.id,
                    previous,
                )
            new_tier = tier.value if tier is not None else previous
            new_subscription_id: str | None = subscription.id
        else:
            new_tier = None
            new_subscription_id = None

        await self._agencies.set_subscription_state(
            agency.id,
            subscription_tier=new_tier,
            stripe_subscription_id=new_subscription_id,
        )

        if new_tier != previous:
            logger.info(
                "Agency %s tier %s -> %s (source=%s, subscription=%s status=%s)",
                agency.id,
                previous,
                new_tier,
                source,
                subscription.id,
                subscription.status,
            )
            if self._bus is not None:
                self._bus.publish_nowait(
                    EventType.PLAN_CHANGED,
                    tenant_id=agency.id,
                    data={"previous_tier": previous, "tier": new_tier, "source": source},
                )

    async def sync_tier_from_remote(self, agency_id: str) -> str | None:
        """Re-read the agency's subscription and reconcile the local tier.

        Returns the tier after sync.  Agencies without a subscription are
        left untouched.
        """
        if self._gateway is None:
            raise ConfigurationError("billing is disabled for this deployment", reason="billing_disabled")
        agency = await self._agencies.get(agency_id)
        if agency is None:
            raise NotFoundError("Agency not found", reason="agency_not_found")
        if not agency.stripe_subscription_id:
            return agency.subscription_tier

        subscription = await self._gateway.retrieve_subscription(agency.stripe_subscription_id)
        await self._apply_subscription(agency, subscription, source="sync")
        await self._session.commit()
        return agency.subscription_tier

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def handle_webhook_event(self, event: Any) -> dict[str, str]:
        """Process a processor webhook event.

        Supported events:
        - ``customer.subscription.created``
        - ``customer.subscription.updated``
        - ``customer.subscription.deleted``
        - ``invoice.payment_failed``

        Returns
        -------
        dict
            ``{"status": "processed" | "ignored"}``.
        """
        event_type = event.get("type", "")
        data_object = (event.get("data") or {}).get("object") or {}

        if event_type in ("customer.subscription.created", "customer.subscription.updated"):
            await self._handle_subscription_change(subscription_from_stripe(data_object))
            return {"status": "processed"}

        if event_type == "customer.subscription.deleted":
            subscription = subscription_from_stripe(data_object)
            await self._handle_subscription_change(
                Subscription(id=subscription.id, status="canceled", customer_id=subscription.customer_id)
            )
            return {"status": "processed"}

        if event_type == "invoice.payment_failed":
            await self._handle_payment_failed(data_object)
            return {"status": "processed"}

        logger.debug("Unhandled billing event type: %s", event_type)
        return {"status": "ignored"}

    async def _handle_subscription_change(self, subscription: Subscription) -> None:
        if not subscription.customer_id:
            logger.warning("Subscription event %s without customer; ignoring", subscription.id)
            return
        agency = await self._agencies.get_by_customer(subscription.customer_id)
        if agency is None:
            logger.warning("Received subscription event for unknown customer: %s", subscription.id)
            return

        # Events for a superseded subscription must not touch the current one.
        current = agency.stripe_subscription_id
        if current is not None and current != subscription.id:
            if not subscription.is_entitled:
                logger.info(
                    "Ignoring %s for old subscription %s (agency %s is on %s)",
                    subscription.status,
                    subscription.id,
                    agency.id,
                    current,
                )
                return

        await self._apply_subscription(agency, subscription, source="webhook")

    async def _handle_payment_failed(self, invoice: Any) -> None:
        customer = invoice.get("customer")
        customer_id = customer if isinstance(customer, str) else (customer or {}).get("id")
        agency = await self._agencies.get_by_customer(customer_id) if customer_id else None
        logger.warning(
            "Payment failed for customer %s (invoice %s, agency %s)",
            customer_id,
            invoice.get("id"),
            agency.id if agency else None,
        )
        if agency is not None and self._bus is not None:
            self._bus.publish_nowait(
                EventType.PAYMENT_FAILED,
                tenant_id=agency.id,
                data={"invoice_id": invoice.get("id"), "amount_due": invoice.get("amount_due")},
            )
