"""Add-on ledger: attach and detach paid capacity increments.

Attach is local-first.  For a billable agency one line-item is created
best-effort; the ``agency_add_ons`` row is written whether or not that
succeeded, and a line-item created for a row that then fails to commit is
deleted again.  Detach deletes the line-item best-effort and the row
unconditionally.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from agency_core.catalog.add_ons import AddOnOption, allowed_add_ons, is_add_on_allowed, parse_add_on
from agency_core.catalog.pricing import PriceCatalog
from agency_core.catalog.tiers import lookup, normalize_tier_id
from agency_core.errors import NotFoundError, PreconditionError, ValidationError
from agency_core.state.repository import AddOnRepository, AgencyRepository
from agency_core.state.tables import AgencyAddOnTable, AgencyTable
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.activation_service import require_paid_features
from api.services.billing_gateway import BillingGateway
from api.services.degraded import best_effort, report_degraded
from api.services.event_bus import EventBus, EventType
from api.services.managed_service_workflow import is_billable

logger = logging.getLogger(__name__)


def _option_dict(option: AddOnOption) -> dict[str, Any]:
    return {
        "add_on_type": option.add_on_type.value,
        "option": option.option,
        "display_name": option.display_name,
        "details": option.details,
        "price_cents": option.price_cents,
        "billing_interval": option.billing_interval,
    }


class AddOnLedger:
    """Attach, detach and list one agency's add-ons.

    Parameters
    ----------
    session:
        Active database session.  Attach and detach commit it.
    gateway:
        Billing processor, or ``None`` when billing is disabled.
    catalog:
        Add-on price references.
    agency_id:
        The agency whose add-ons are managed.
    bus:
        Notification sink.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        gateway: BillingGateway | None,
        catalog: PriceCatalog,
        agency_id: str,
        bus: EventBus | None = None,
    ) -> None:
        self._session = session
        self._gateway = gateway
        self._catalog = catalog
        self._agency_id = agency_id
        self._bus = bus
        self._repo = AddOnRepository(session, agency_id)

    async def _load_agency(self) -> AgencyTable:
        agency = await AgencyRepository(self._session).get(self._agency_id)
        if agency is None:
            raise NotFoundError("Agency not found", reason="agency_not_found")
        return agency

    def _degraded(self, operation: str, entity_id: str, error: str) -> None:
        report_degraded(operation, entity_id=entity_id, agency_id=self._agency_id, error=error, bus=self._bus)

    async def _delete_item(self, item_id: str, *, entity_id: str, operation: str) -> None:
        if self._gateway is None:
            self._degraded(operation, entity_id, "billing gateway disabled")
            return
        await best_effort(
            self._gateway.delete_subscription_item(item_id),
            operation=operation,
            entity_id=entity_id,
            agency_id=self._agency_id,
            bus=self._bus,
        )

    async def list_all(self) -> list[AgencyAddOnTable]:
        return await self._repo.list_all()

    async def options(self) -> list[dict[str, Any]]:
        """Add-on options purchasable on the agency's current tier."""
        agency = await self._load_agency()
        attached = {(row.add_on_type, row.add_on_option) for row in await self._repo.list_all()}
        tier = normalize_tier_id(agency.subscription_tier)
        return [
            {**_option_dict(opt), "attached": (opt.add_on_type.value, opt.option) in attached}
            for opt in sorted(allowed_add_ons(tier), key=lambda o: (o.add_on_type.value, o.price_cents))
        ]

    async def attach(self, add_on_type: str, option: str) -> AgencyAddOnTable:
        """Attach one add-on option.

        Raises
        ------
        ValidationError
            Unknown option, or the option is not sold on the agency's tier.
        PreconditionError
            Agency not activated or in trial, or the option is already
            attached.
        ConfigurationError
            The option has no price while the agency is billable.  Nothing
            has changed.
        """
        entry = parse_add_on(add_on_type, option)
        agency = await self._load_agency()
        require_paid_features(agency, action="purchase add-ons")

        tier = normalize_tier_id(agency.subscription_tier)
        if not is_add_on_allowed(tier, entry):
            tier_name = lookup(tier).name if tier is not None else "current"
            raise ValidationError(
                f"{entry.display_name} is not available on the {tier_name} plan",
                reason="add_on_not_allowed",
            )
        if await self._repo.find(entry.add_on_type.value, entry.option) is not None:
            raise PreconditionError(f"{entry.display_name} is already attached", reason="already_attached")

        add_on_id = uuid.uuid4().hex
        item_id: str | None = None
        if is_billable(agency):
            price_id = self._catalog.add_on_price(entry.add_on_type, entry.option)
            if self._gateway is None:
                self._degraded("attach_add_on", add_on_id, "billing gateway disabled")
            else:
                item = await best_effort(
                    self._gateway.create_subscription_item(
                        agency.stripe_subscription_id,  # type: ignore[arg-type]
                        price_id,
                        metadata={"add_on_id": add_on_id, "agency_id": agency.id, "add_on": entry.key},
                        idempotency_key=f"add-on-{add_on_id}",
                    ),
                    operation="attach_add_on",
                    entity_id=add_on_id,
                    agency_id=agency.id,
                    bus=self._bus,
                )
                item_id = item.id if item is not None else None
        elif agency.stripe_customer_id is not None:
            logger.info(
                "Agency %s has no subscription; add-on %s attached without a line-item",
                agency.id,
                add_on_id,
                extra={"billing": {"operation": "attach_add_on", "entity_id": add_on_id, "agency_id": agency.id}},
            )

        try:
            row = await self._repo.create(
                add_on_type=entry.add_on_type.value,
                add_on_option=entry.option,
                display_name=entry.display_name,
                details=entry.details,
                price_cents=entry.price_cents,
                billing_interval=entry.billing_interval,
                stripe_subscription_item_id=item_id,
                add_on_id=add_on_id,
            )
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            if item_id is not None:
                logger.warning("Local attach of %s failed; removing line-item %s", add_on_id, item_id)
                await self._delete_item(item_id, entity_id=add_on_id, operation="compensate_attach")
            raise

        logger.info(
            "Attached add-on %s (%s) for agency %s (item=%s)",
            entry.key,
            add_on_id,
            self._agency_id,
            item_id,
        )
        if self._bus is not None:
            self._bus.publish_nowait(
                EventType.ADD_ON_ATTACHED,
                tenant_id=self._agency_id,
                data={"add_on_id": add_on_id, "add_on": entry.key, "billed": item_id is not None},
            )
        return row

    async def detach(self, add_on_id: str) -> None:
        """Remove an add-on.  The row goes even if the line-item delete fails."""
        row = await self._repo.get(add_on_id)
        if row is None:
            raise NotFoundError("Add-on not found", reason="add_on_not_found")
        key = f"{row.add_on_type}:{row.add_on_option}"

        if row.stripe_subscription_item_id:
            await self._delete_item(row.stripe_subscription_item_id, entity_id=add_on_id, operation="detach_add_on")

        await self._repo.delete(add_on_id)
        await self._session.commit()

        logger.info("Detached add-on %s (%s) for agency %s", key, add_on_id, self._agency_id)
        if self._bus is not None:
            self._bus.publish_nowait(
                EventType.ADD_ON_DETACHED,
                tenant_id=self._agency_id,
                data={"add_on_id": add_on_id, "add_on": key},
            )
