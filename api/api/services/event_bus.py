"""Notification sink for billing lifecycle events.

Workflow services publish events after their local transaction commits and
never wait for delivery: :meth:`EventBus.publish_nowait` schedules dispatch
on the running loop and returns immediately.  Handler errors are logged and
never reach the publisher.

Usage::

    bus = get_event_bus()
    bus.publish_nowait(EventType.MANAGED_SERVICE_REQUESTED, tenant_id=agency_id, data={...})

Handlers are registered at startup via ``bus.register_handler()``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------


class EventType(str, Enum):
    """Lifecycle events emitted by the billing orchestrator."""

    MANAGED_SERVICE_REQUESTED = "managed_service.requested"
    MANAGED_SERVICE_APPROVED = "managed_service.approved"
    MANAGED_SERVICE_REJECTED = "managed_service.rejected"
    MANAGED_SERVICE_CANCELED = "managed_service.canceled"
    ADD_ON_ATTACHED = "add_on.attached"
    ADD_ON_DETACHED = "add_on.detached"
    PLAN_CHANGED = "plan.changed"
    PAYMENT_FAILED = "billing.payment_failed"
    REMOTE_DEGRADED = "billing.remote_degraded"


# Events operators should hear about in chat.
OPERATOR_EVENTS: frozenset[EventType] = frozenset(
    {
        EventType.MANAGED_SERVICE_REQUESTED,
        EventType.MANAGED_SERVICE_CANCELED,
        EventType.PAYMENT_FAILED,
        EventType.REMOTE_DEGRADED,
    }
)


class EventPayload(BaseModel):
    """Structured event payload dispatched to handlers."""

    event_type: EventType
    tenant_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    correlation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    data: dict[str, Any] = Field(default_factory=dict)


EventHandler = Callable[[EventPayload], Awaitable[None]]


# ---------------------------------------------------------------------------
# Event bus
# ---------------------------------------------------------------------------


class EventBus:
    """In-process event bus with async handler dispatch.

    Handlers are called concurrently via ``asyncio.gather``, each inside its
    own ``try / except`` so one failing handler cannot affect the others.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType | None, list[EventHandler]] = {}
        self._pending: set[asyncio.Task[None]] = set()

    def register_handler(
        self,
        handler: EventHandler,
        *,
        event_type: EventType | None = None,
    ) -> None:
        """Register a handler for one event type, or for all events when ``None``."""
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug("Registered event handler %s for %s", handler.__name__, event_type or "ALL")

    async def emit(
        self,
        event_type: EventType,
        *,
        tenant_id: str,
        data: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> None:
        """Deliver an event to all matching handlers and wait for them.

        Handler exceptions are logged, not raised.
        """
        payload = EventPayload(
            event_type=event_type,
            tenant_id=tenant_id,
            data=data or {},
            correlation_id=correlation_id or uuid.uuid4().hex,
        )

        handlers = list(self._handlers.get(event_type, []))
        handlers.extend(self._handlers.get(None, []))
        if not handlers:
            logger.debug("No handlers for event %s", event_type.value)
            return

        async def _safe_call(handler: EventHandler) -> None:
            try:
                await handler(payload)
            except Exception:
                logger.exception(
                    "Handler %s failed for event %s (agency=%s)",
                    handler.__name__,
                    event_type.value,
                    tenant_id,
                )

        await asyncio.gather(*[_safe_call(h) for h in handlers])

    def publish_nowait(
        self,
        event_type: EventType,
        *,
        tenant_id: str,
        data: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> None:
        """Schedule :meth:`emit` without awaiting it.

        Outside a running event loop the event is logged and dropped.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running loop; dropping event %s for agency=%s", event_type.value, tenant_id)
            return
        task = loop.create_task(
            self.emit(event_type, tenant_id=tenant_id, data=data, correlation_id=correlation_id)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for all scheduled deliveries.  Used at shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def handler_count(self) -> int:
        return sum(len(v) for v in self._handlers.values())


# ---------------------------------------------------------------------------
# Built-in handlers
# ---------------------------------------------------------------------------


async def audit_log_handler(payload: EventPayload) -> None:
    """Write every event to the audit logger."""
    logging.getLogger("api.audit").info(
        "AUDIT: %s agency=%s corr=%s",
        payload.event_type.value,
        payload.tenant_id,
        payload.correlation_id[:8],
        extra={"event": {"type": payload.event_type.value, "agency_id": payload.tenant_id, **payload.data}},
    )


def _slack_text(payload: EventPayload) -> str:
    details = ", ".join(f"{k}={v}" for k, v in sorted(payload.data.items()))
    return f"[{payload.event_type.value}] agency {payload.tenant_id}: {details}"


def make_slack_handler(webhook_url: str, *, timeout_seconds: float = 5.0) -> EventHandler:
    """Create a handler that posts operator events to a Slack incoming webhook.

    Parameters
    ----------
    webhook_url:
        Slack incoming-webhook URL.
    timeout_seconds:
        Per-request timeout.

    Returns
    -------
    EventHandler
        Async handler suitable for ``EventBus.register_handler()``.
    """

    async def _post_to_slack(payload: EventPayload) -> None:
        if payload.event_type not in OPERATOR_EVENTS:
            return
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            response = await client.post(webhook_url, json={"text": _slack_text(payload)})
            response.raise_for_status()

    _post_to_slack.__name__ = "slack_handler"
    return _post_to_slack


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_event_bus: EventBus | None = None


def init_event_bus(slack_webhook_url: str = "", *, timeout_seconds: float = 5.0) -> EventBus:
    """Create and configure the global event bus with built-in handlers."""
    global _event_bus  # noqa: PLW0603
    _event_bus = EventBus()
    _event_bus.register_handler(audit_log_handler)
    if slack_webhook_url:
        _event_bus.register_handler(make_slack_handler(slack_webhook_url, timeout_seconds=timeout_seconds))

    logger.info("Event bus initialised with %d handler(s)", _event_bus.handler_count)
    return _event_bus


def get_event_bus() -> EventBus:
    """Return the module-level event bus instance."""
    if _event_bus is None:
        return init_event_bus()
    return _event_bus
