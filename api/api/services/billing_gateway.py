"""Billing processor gateway.

:class:`BillingGateway` is the narrow set of processor operations the
orchestration services rely on.  :class:`StripeBillingGateway` implements it
on top of the ``stripe`` SDK.

Every call runs the blocking SDK request in a worker thread bounded by
``asyncio.wait_for``.  A timeout and any ``stripe.StripeError`` surface as
:class:`~agency_core.errors.RemoteGatewayError`; callers decide whether that
aborts their operation or degrades to a logged warning.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from agency_core.errors import RemoteGatewayError

from api.middleware.prometheus import BILLING_REMOTE_CALLS_TOTAL

logger = logging.getLogger(__name__)

# Subscription statuses that grant a paid tier.
ENTITLED_STATUSES: frozenset[str] = frozenset({"active", "trialing"})


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SubscriptionItem:
    id: str
    price_id: str | None


@dataclass(frozen=True)
class Subscription:
    id: str
    status: str
    customer_id: str | None = None
    items: list[SubscriptionItem] = field(default_factory=list)

    @property
    def is_entitled(self) -> bool:
        return self.status in ENTITLED_STATUSES


@dataclass(frozen=True)
class SetupIntent:
    id: str
    status: str
    client_secret: str | None = None
    payment_method_id: str | None = None
    customer_id: str | None = None


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class BillingGateway(Protocol):
    """Processor operations consumed by the orchestration services."""

    async def create_customer(self, *, email: str | None, name: str, metadata: dict[str, str]) -> str: ...

    async def attach_payment_method(self, customer_id: str, payment_method_id: str) -> None: ...

    async def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None: ...

    async def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        payment_method_id: str | None,
        trial_days: int | None = None,
        metadata: dict[str, str] | None = None,
    ) -> Subscription: ...

    async def retrieve_subscription(self, subscription_id: str) -> Subscription: ...

    async def create_subscription_item(
        self,
        subscription_id: str,
        price_id: str,
        *,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> SubscriptionItem: ...

    async def update_subscription_item_price(self, item_id: str, price_id: str) -> SubscriptionItem: ...

    async def delete_subscription_item(self, item_id: str) -> None: ...

    async def create_setup_intent(self, *, metadata: dict[str, str] | None = None) -> SetupIntent: ...

    async def retrieve_setup_intent(self, setup_intent_id: str) -> SetupIntent: ...


# ---------------------------------------------------------------------------
# Stripe implementation
# ---------------------------------------------------------------------------


def _get(obj: Any, key: str) -> Any:
    """Read *key* from a Stripe object or a plain dict."""
    if obj is None:
        return None
    if isinstance(obj, str):
        return obj if key == "id" else None
    return obj.get(key)


def subscription_from_stripe(obj: Any) -> Subscription:
    """Convert a Stripe subscription (object or webhook dict) to :class:`Subscription`.

    Expanded and unexpanded ``price`` fields are both accepted.
    """
    items_data = (_get(obj, "items") or {}).get("data", []) or []
    items = [SubscriptionItem(id=item["id"], price_id=_get(item.get("price"), "id")) for item in items_data]
    return Subscription(
        id=obj["id"],
        status=obj.get("status") or "unknown",
        customer_id=_get(obj.get("customer"), "id"),
        items=items,
    )


def _item_from_stripe(obj: Any) -> SubscriptionItem:
    return SubscriptionItem(id=obj["id"], price_id=_get(obj.get("price"), "id"))


class StripeBillingGateway:
    """:class:`BillingGateway` backed by the Stripe API.

    Parameters
    ----------
    secret_key:
        Stripe secret API key.
    timeout_seconds:
        Upper bound on each call, including SDK-level retries.
    max_network_retries:
        Retries the SDK performs for idempotent-safe network failures.
    """

    def __init__(self, secret_key: str, *, timeout_seconds: float, max_network_retries: int = 1) -> None:
        self._secret_key = secret_key
        self._timeout = timeout_seconds
        self._max_network_retries = max_network_retries

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        stripe.api_key = self._secret_key
        stripe.max_network_retries = self._max_network_retries
        return stripe

    async def _call(self, operation: str, fn: Callable[[Any], Any]) -> Any:
        stripe = self._get_stripe()
        try:
            result = await asyncio.wait_for(asyncio.to_thread(fn, stripe), timeout=self._timeout)
        except TimeoutError:
            BILLING_REMOTE_CALLS_TOTAL.labels(operation=operation, outcome="timeout").inc()
            raise RemoteGatewayError(
                f"Billing processor did not answer within {self._timeout:g}s",
                operation=operation,
                reason="remote_timeout",
            ) from None
        except stripe.StripeError as exc:
            BILLING_REMOTE_CALLS_TOTAL.labels(operation=operation, outcome="error").inc()
            message = getattr(exc, "user_message", None) or str(exc) or type(exc).__name__
            raise RemoteGatewayError(
                f"Billing processor rejected {operation}: {message}",
                operation=operation,
            ) from exc
        BILLING_REMOTE_CALLS_TOTAL.labels(operation=operation, outcome="ok").inc()
        return result

    async def create_customer(self, *, email: str | None, name: str, metadata: dict[str, str]) -> str:
        customer = await self._call(
            "create_customer",
            lambda s: s.Customer.create(email=email, name=name, metadata=metadata),
        )
        return customer["id"]

    async def attach_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        await self._call(
            "attach_payment_method",
            lambda s: s.PaymentMethod.attach(payment_method_id, customer=customer_id),
        )

    async def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        await self._call(
            "set_default_payment_method",
            lambda s: s.Customer.modify(customer_id, invoice_settings={"default_payment_method": payment_method_id}),
        )

    async def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        payment_method_id: str | None,
        trial_days: int | None = None,
        metadata: dict[str, str] | None = None,
    ) -> Subscription:
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "metadata": metadata or {},
            "expand": ["items.data.price"],
        }
        if payment_method_id:
            params["default_payment_method"] = payment_method_id
        if trial_days:
            params["trial_period_days"] = trial_days
        sub = await self._call("create_subscription", lambda s: s.Subscription.create(**params))
        return subscription_from_stripe(sub)

    async def retrieve_subscription(self, subscription_id: str) -> Subscription:
        sub = await self._call(
            "retrieve_subscription",
            lambda s: s.Subscription.retrieve(subscription_id, expand=["items.data.price"]),
        )
        return subscription_from_stripe(sub)

    async def create_subscription_item(
        self,
        subscription_id: str,
        price_id: str,
        *,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> SubscriptionItem:
        params: dict[str, Any] = {
            "subscription": subscription_id,
            "price": price_id,
            "quantity": 1,
            "proration_behavior": "create_prorations",
            "metadata": metadata or {},
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        item = await self._call("create_subscription_item", lambda s: s.SubscriptionItem.create(**params))
        return _item_from_stripe(item)

    async def update_subscription_item_price(self, item_id: str, price_id: str) -> SubscriptionItem:
        item = await self._call(
            "update_subscription_item_price",
            lambda s: s.SubscriptionItem.modify(item_id, price=price_id, proration_behavior="create_prorations"),
        )
        return _item_from_stripe(item)

    async def delete_subscription_item(self, item_id: str) -> None:
        await self._call("delete_subscription_item", lambda s: s.SubscriptionItem.delete(item_id))

    async def create_setup_intent(self, *, metadata: dict[str, str] | None = None) -> SetupIntent:
        intent = await self._call(
            "create_setup_intent",
            lambda s: s.SetupIntent.create(payment_method_types=["card"], usage="off_session", metadata=metadata or {}),
        )
        return SetupIntent(id=intent["id"], status=intent["status"], client_secret=intent.get("client_secret"))

    async def retrieve_setup_intent(self, setup_intent_id: str) -> SetupIntent:
        intent = await self._call("retrieve_setup_intent", lambda s: s.SetupIntent.retrieve(setup_intent_id))
        return SetupIntent(
            id=intent["id"],
            status=intent["status"],
            client_secret=intent.get("client_secret"),
            payment_method_id=_get(intent.get("payment_method"), "id"),
            customer_id=_get(intent.get("customer"), "id"),
        )
