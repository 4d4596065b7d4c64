"""Account activation gate and the activation handshake.

An agency is *activated* once it has a payer account at the billing
processor.  Until then, and for as long as its no-charge trial runs, paid
features (managed services, add-ons) are refused.  Trials are strictly
reporting-only: no paid commitment is ever started against a trialing
payment method.

Activation itself is a two-step handshake.  The browser first collects a
card against a setup intent (:meth:`ActivationService.create_setup_intent`);
the server then finishes the job (:meth:`ActivationService.activate`):
payer account, default payment method, and base subscription.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from agency_core.catalog.pricing import PriceCatalog
from agency_core.catalog.tiers import DEFAULT_TIER, BillingType, parse_tier
from agency_core.errors import ConfigurationError, NotFoundError, PreconditionError, RemoteGatewayError
from agency_core.state.repository import AgencyRepository
from agency_core.state.tables import AgencyTable
from sqlalchemy.ext.asyncio import AsyncSession

from api.middleware.prometheus import record_remote_failure
from api.services.billing_gateway import BillingGateway

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(UTC)


def is_activated(agency: AgencyTable) -> bool:
    """``True`` once the agency has a payer account."""
    return agency.stripe_customer_id is not None


def is_in_free_trial(agency: AgencyTable, now: datetime | None = None) -> bool:
    """``True`` while the trial expiry is set and still in the future."""
    if agency.trial_ends_at is None:
        return False
    return agency.trial_ends_at > (now or _utcnow())


def is_trial_expired(agency: AgencyTable, now: datetime | None = None) -> bool:
    """A trial ended without the agency ever activating."""
    if agency.trial_ends_at is None or is_activated(agency):
        return False
    return agency.trial_ends_at <= (now or _utcnow())


def require_paid_features(agency: AgencyTable, *, action: str, now: datetime | None = None) -> None:
    """Refuse *action* unless the agency is activated and out of trial.

    Raises
    ------
    PreconditionError
        ``not_activated`` without a payer account, ``in_trial`` during the
        trial window.
    """
    if not is_activated(agency):
        raise PreconditionError(
            f"Add a payment method to activate your account before you {action}",
            reason="not_activated",
        )
    if is_in_free_trial(agency, now):
        raise PreconditionError(
            f"Your trial is reporting-only. You can {action} once the trial ends",
            reason="in_trial",
        )


# ---------------------------------------------------------------------------
# Activation handshake
# ---------------------------------------------------------------------------


class ActivationService:
    """Activate one agency against the billing processor.

    Parameters
    ----------
    session:
        Active database session.
    gateway:
        Billing processor, or ``None`` when billing is disabled.
    catalog:
        Price references for base plans.
    agency_id:
        The agency being activated.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        gateway: BillingGateway | None,
        catalog: PriceCatalog,
        agency_id: str,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session = session
        self._gateway = gateway
        self._catalog = catalog
        self._agency_id = agency_id
        self._now = now

    def _require_gateway(self) -> BillingGateway:
        if self._gateway is None:
            raise ConfigurationError("billing is disabled for this deployment", reason="billing_disabled")
        return self._gateway

    async def _load_agency(self) -> AgencyTable:
        agency = await AgencyRepository(self._session).get(self._agency_id)
        if agency is None:
            raise NotFoundError("Agency not found", reason="agency_not_found")
        return agency

    async def create_setup_intent(self) -> dict[str, Any]:
        """Start the card-collection handshake and return its client secret."""
        gateway = self._require_gateway()
        agency = await self._load_agency()
        if agency.stripe_subscription_id:
            raise PreconditionError("This account is already active", reason="already_active")

        intent = await gateway.create_setup_intent(metadata={"agency_id": agency.id})
        return {"setup_intent_id": intent.id, "client_secret": intent.client_secret}

    def _remaining_trial_days(self, agency: AgencyTable) -> int | None:
        if agency.trial_ends_at is None:
            return None
        seconds = (agency.trial_ends_at - self._now()).total_seconds()
        if seconds <= 0:
            return None
        return math.ceil(seconds / 86400)

    async def activate(self, setup_intent_id: str, tier: str | None = None) -> dict[str, Any]:
        """Finish activation from a confirmed setup intent.

        The payer account is created lazily and committed before the
        subscription call, so retrying after a processor failure reuses it
        instead of creating a second customer.

        Raises
        ------
        PreconditionError
            If the agency already has a subscription or the setup intent has
            not succeeded.
        ConfigurationError
            If billing is disabled or the tier has no price.
        RemoteGatewayError
            On any processor failure.
        """
        gateway = self._require_gateway()
        target = parse_tier(tier) if tier else DEFAULT_TIER
        price_id = self._catalog.tier_price(target)

        agency = await self._load_agency()
        if agency.stripe_subscription_id:
            raise PreconditionError("This account is already active", reason="already_active")

        intent = await gateway.retrieve_setup_intent(setup_intent_id)
        if intent.status != "succeeded" or not intent.payment_method_id:
            raise PreconditionError(
                "The payment method has not been confirmed yet",
                reason="setup_incomplete",
            )

        try:
            if agency.stripe_customer_id is None:
                customer_id = await gateway.create_customer(
                    email=agency.contact_email,
                    name=agency.name,
                    metadata={"agency_id": agency.id},
                )
                agency.stripe_customer_id = customer_id
                await self._session.commit()
                logger.info("Created payer account %s for agency %s", customer_id, agency.id)

            await gateway.attach_payment_method(agency.stripe_customer_id, intent.payment_method_id)
            await gateway.set_default_payment_method(agency.stripe_customer_id, intent.payment_method_id)

            trial_days = self._remaining_trial_days(agency)
            subscription = await gateway.create_subscription(
                customer_id=agency.stripe_customer_id,
                price_id=price_id,
                payment_method_id=intent.payment_method_id,
                trial_days=trial_days,
                metadata={"agency_id": agency.id},
            )
        except RemoteGatewayError:
            record_remote_failure("activate", degraded=False)
            raise

        agency.stripe_subscription_id = subscription.id
        agency.subscription_tier = target.value
        agency.billing_type = BillingType.PAID.value
        await self._session.commit()

        logger.info(
            "Activated agency %s on tier %s (subscription=%s, trial_days=%s)",
            agency.id,
            target.value,
            subscription.id,
            trial_days,
        )
        return {
            "agency_id": agency.id,
            "tier": target.value,
            "subscription_id": subscription.id,
            "subscription_status": subscription.status,
            "trial_days": trial_days,
        }
