"""Best-effort processor calls for the local-first workflows.

Approve, cancel, attach and detach commit their local change even when the
processor call fails.  :func:`best_effort` turns a
:class:`~agency_core.errors.RemoteGatewayError` into ``None`` and leaves a
trail for manual reconciliation: a structured warning carrying the
operation and entity id, a Prometheus counter, and a
``billing.remote_degraded`` event.

Plan changes are remote-first and never go through this module.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from typing import TypeVar

from agency_core.errors import RemoteGatewayError

from api.middleware.prometheus import record_remote_failure
from api.services.event_bus import EventBus, EventType

logger = logging.getLogger(__name__)

T = TypeVar("T")


def report_degraded(
    operation: str,
    *,
    entity_id: str,
    agency_id: str,
    error: str,
    bus: EventBus | None = None,
) -> None:
    """Record that a processor call was skipped or failed on a local-first path."""
    record_remote_failure(operation, degraded=True)
    logger.warning(
        "Billing processor %s failed for %s (agency=%s); local change kept: %s",
        operation,
        entity_id,
        agency_id,
        error,
        extra={"billing": {"operation": operation, "entity_id": entity_id, "agency_id": agency_id, "error": error}},
    )
    if bus is not None:
        bus.publish_nowait(
            EventType.REMOTE_DEGRADED,
            tenant_id=agency_id,
            data={"operation": operation, "entity_id": entity_id, "error": error},
        )


async def best_effort(
    call: Awaitable[T],
    *,
    operation: str,
    entity_id: str,
    agency_id: str,
    bus: EventBus | None = None,
) -> T | None:
    """Await *call*; on a processor failure report it and return ``None``."""
    try:
        return await call
    except RemoteGatewayError as exc:
        report_degraded(operation, entity_id=entity_id, agency_id=agency_id, error=exc.message, bus=bus)
        return None
