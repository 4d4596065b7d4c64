"""Tests for the billing lifecycle event bus.

Validates handler registration, fire-and-forget publishing, error
isolation, and the built-in audit and Slack handlers.
"""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from api.services.event_bus import (
    OPERATOR_EVENTS,
    EventBus,
    EventPayload,
    EventType,
    audit_log_handler,
    get_event_bus,
    init_event_bus,
    make_slack_handler,
)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def bus() -> EventBus:
    """Return a fresh EventBus instance (no built-in handlers)."""
    return EventBus()


@pytest.fixture
def payload() -> EventPayload:
    """Return a sample event payload."""
    return EventPayload(
        event_type=EventType.MANAGED_SERVICE_REQUESTED,
        tenant_id="agency-test",
        data={"managed_service_id": "ms_abc123", "package_id": "growth"},
    )


# ---------------------------------------------------------------------------
# Handler registration
# ---------------------------------------------------------------------------


class TestHandlerRegistration:
    def test_register_handler_for_specific_event(self, bus: EventBus) -> None:
        async def handler(p: EventPayload) -> None:
            pass

        bus.register_handler(handler, event_type=EventType.PLAN_CHANGED)
        assert bus.handler_count == 1

    def test_register_multiple_handlers(self, bus: EventBus) -> None:
        async def h1(p: EventPayload) -> None:
            pass

        async def h2(p: EventPayload) -> None:
            pass

        bus.register_handler(h1, event_type=EventType.ADD_ON_ATTACHED)
        bus.register_handler(h2)  # wildcard
        assert bus.handler_count == 2

    def test_handler_count_empty(self, bus: EventBus) -> None:
        assert bus.handler_count == 0


# ---------------------------------------------------------------------------
# Emission
# ---------------------------------------------------------------------------


class TestEventEmission:
    @pytest.mark.asyncio
    async def test_emit_dispatches_to_matching_and_wildcard(self, bus: EventBus) -> None:
        specific: list[EventPayload] = []
        wildcard: list[EventPayload] = []

        async def on_plan(p: EventPayload) -> None:
            specific.append(p)

        async def on_any(p: EventPayload) -> None:
            wildcard.append(p)

        bus.register_handler(on_plan, event_type=EventType.PLAN_CHANGED)
        bus.register_handler(on_any)
        await bus.emit(EventType.PLAN_CHANGED, tenant_id="a1", data={"tier": "pro"})
        await bus.emit(EventType.ADD_ON_DETACHED, tenant_id="a1")

        assert [p.data for p in specific] == [{"tier": "pro"}]
        assert [p.event_type for p in wildcard] == [EventType.PLAN_CHANGED, EventType.ADD_ON_DETACHED]

    @pytest.mark.asyncio
    async def test_emit_uses_provided_correlation_id(self, bus: EventBus) -> None:
        received: list[EventPayload] = []

        async def handler(p: EventPayload) -> None:
            received.append(p)

        bus.register_handler(handler)
        await bus.emit(EventType.PAYMENT_FAILED, tenant_id="a1", correlation_id="corr-1")

        assert received[0].correlation_id == "corr-1"

    @pytest.mark.asyncio
    async def test_emit_with_no_handlers_succeeds_silently(self, bus: EventBus) -> None:
        await bus.emit(EventType.PLAN_CHANGED, tenant_id="a1")


class TestPublishNowait:
    @pytest.mark.asyncio
    async def test_publish_returns_before_delivery(self, bus: EventBus) -> None:
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow(p: EventPayload) -> None:
            started.set()
            await release.wait()

        bus.register_handler(slow)
        bus.publish_nowait(EventType.MANAGED_SERVICE_APPROVED, tenant_id="a1")

        await started.wait()
        release.set()
        await bus.drain()

    @pytest.mark.asyncio
    async def test_drain_waits_for_all_deliveries(self, bus: EventBus) -> None:
        received: list[str] = []

        async def handler(p: EventPayload) -> None:
            await asyncio.sleep(0)
            received.append(p.tenant_id)

        bus.register_handler(handler)
        for agency in ("a1", "a2", "a3"):
            bus.publish_nowait(EventType.ADD_ON_ATTACHED, tenant_id=agency)
        await bus.drain()

        assert sorted(received) == ["a1", "a2", "a3"]

    def test_publish_without_loop_drops_event(self, bus: EventBus, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING):
            bus.publish_nowait(EventType.PLAN_CHANGED, tenant_id="a1")
        assert any("dropping event plan.changed" in r.message for r in caplog.records)


# ---------------------------------------------------------------------------
# Error isolation
# ---------------------------------------------------------------------------


class TestErrorIsolation:
    @pytest.mark.asyncio
    async def test_failing_handler_does_not_block_others(self, bus: EventBus) -> None:
        received: list[str] = []

        async def bad_handler(p: EventPayload) -> None:
            raise RuntimeError("I fail!")

        async def good_handler(p: EventPayload) -> None:
            received.append("ok")

        bus.register_handler(bad_handler)
        bus.register_handler(good_handler)

        bus.publish_nowait(EventType.REMOTE_DEGRADED, tenant_id="a1")
        await bus.drain()
        assert received == ["ok"]

    @pytest.mark.asyncio
    async def test_failing_handler_logged(self, bus: EventBus, caplog: pytest.LogCaptureFixture) -> None:
        async def bad_handler(p: EventPayload) -> None:
            raise ValueError("Test error")

        bus.register_handler(bad_handler)

        with caplog.at_level(logging.ERROR):
            await bus.emit(EventType.PLAN_CHANGED, tenant_id="a1")

        assert any("bad_handler" in r.message for r in caplog.records)


# ---------------------------------------------------------------------------
# Built-in handlers
# ---------------------------------------------------------------------------


class TestBuiltInHandlers:
    @pytest.mark.asyncio
    async def test_audit_log_handler_runs(self, payload: EventPayload, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO):
            await audit_log_handler(payload)

        record = next(r for r in caplog.records if "AUDIT" in r.message)
        assert record.event["type"] == "managed_service.requested"  # type: ignore[attr-defined]
        assert record.event["package_id"] == "growth"  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_slack_handler_posts_operator_events(self, payload: EventPayload) -> None:
        client = MagicMock()
        client.post = AsyncMock(return_value=MagicMock())
        client.__aenter__ = AsyncMock(return_value=client)
        client.__aexit__ = AsyncMock(return_value=None)

        with patch("api.services.event_bus.httpx.AsyncClient", return_value=client):
            await make_slack_handler("https://hooks.slack.test/x")(payload)

        url = client.post.call_args.args[0]
        body = client.post.call_args.kwargs["json"]
        assert url == "https://hooks.slack.test/x"
        assert body["text"].startswith("[managed_service.requested] agency agency-test")
        assert "package_id=growth" in body["text"]

    @pytest.mark.asyncio
    async def test_slack_handler_skips_other_events(self) -> None:
        with patch("api.services.event_bus.httpx.AsyncClient") as client_cls:
            await make_slack_handler("https://hooks.slack.test/x")(
                EventPayload(event_type=EventType.ADD_ON_ATTACHED, tenant_id="a1")
            )
        client_cls.assert_not_called()

    def test_operator_events(self) -> None:
        assert EventType.MANAGED_SERVICE_REQUESTED in OPERATOR_EVENTS
        assert EventType.REMOTE_DEGRADED in OPERATOR_EVENTS
        assert EventType.ADD_ON_ATTACHED not in OPERATOR_EVENTS


# ---------------------------------------------------------------------------
# Module singleton
# ---------------------------------------------------------------------------


class TestModuleSingleton:
    def test_init_event_bus_registers_audit_handler(self) -> None:
        assert init_event_bus().handler_count == 1

    def test_init_event_bus_with_slack(self) -> None:
        assert init_event_bus("https://hooks.slack.test/x").handler_count == 2

    def test_get_event_bus_returns_same_instance(self) -> None:
        bus1 = init_event_bus()
        assert get_event_bus() is bus1

    def test_get_event_bus_auto_initialises(self) -> None:
        import api.services.event_bus as mod

        original = mod._event_bus
        try:
            mod._event_bus = None
            assert isinstance(get_event_bus(), EventBus)
        finally:
            mod._event_bus = original


class TestEventType:
    def test_event_type_values(self) -> None:
        assert {e.value for e in EventType} == {
            "managed_service.requested",
            "managed_service.approved",
            "managed_service.rejected",
            "managed_service.canceled",
            "add_on.attached",
            "add_on.detached",
            "plan.changed",
            "billing.payment_failed",
            "billing.remote_degraded",
        }
