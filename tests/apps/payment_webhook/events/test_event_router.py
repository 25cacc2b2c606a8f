"""Tests for event dispatch and the per-event webhook log."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from apps.payment_webhook.events import router as event_router
from apps.payment_webhook.events.base import HandlerStatus
from apps.payment_webhook.events.router import dispatch, process_event, webhook_log_id
from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.schemas import EVENT_CATEGORIES, EventCategory, GatewayEvent
from apps.payment_webhook.store.memory import InMemoryDocumentStore
from libs.common.exceptions import DocumentStoreError

EventFactory = Callable[..., GatewayEvent]


class _LogRejectingStore(InMemoryDocumentStore):
    """Accepts business writes but refuses the webhook log."""

    def create_or_replace(self, document: dict[str, Any]) -> str:
        raise DocumentStoreError("log dataset read-only", status_code=403)


class TestDispatch:
    def test_every_category_has_a_handler(self) -> None:
        categories = set(EVENT_CATEGORIES.values())
        assert categories <= set(event_router.HANDLERS)
        assert EventCategory.UNHANDLED not in event_router.HANDLERS

    def test_unhandled_type_is_ignored(
        self, ctx: ReconciliationContext, event_factory: EventFactory
    ) -> None:
        result = dispatch(event_factory("balance.available", {"object": "balance"}), ctx)
        assert result.status is HandlerStatus.IGNORED
        assert "balance.available" in result.summary


class TestProcessEvent:
    def test_outcome_recorded_on_webhook_log(
        self,
        ctx: ReconciliationContext,
        store: InMemoryDocumentStore,
        event_factory: EventFactory,
        session_factory: Callable[..., dict[str, Any]],
    ) -> None:
        event = event_factory("checkout.session.completed", session_factory())
        result = process_event(event, ctx)

        log = store.get(webhook_log_id(event.id))
        assert log is not None
        assert log["_type"] == "stripeWebhook"
        assert log["status"] == "processed"
        assert log["eventType"] == "checkout.session.completed"
        assert log["occurredAt"] == "2024-05-01T10:00:00.000Z"
        assert log["processedAt"] == "2024-05-01T12:00:00.000Z"
        assert log["requestId"] == "req_test_1"
        assert log["resourceType"] == "checkout.session"
        assert log["orderRef"] == {"_type": "reference", "_ref": result.order_id}
        assert log["attempts"] == 1
        assert '"cs_test_a1b2c3123456"' in log["rawPayload"]
        assert "error" not in log

    def test_handler_exception_becomes_error_result(
        self,
        ctx: ReconciliationContext,
        store: InMemoryDocumentStore,
        event_factory: EventFactory,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def broken(event: GatewayEvent, ctx: ReconciliationContext) -> Any:
            raise ValueError("bad product payload")

        monkeypatch.setitem(event_router.HANDLERS, EventCategory.PRODUCT, broken)
        event = event_factory("product.updated", {"id": "prod_1", "object": "product"})

        result = process_event(event, ctx)

        assert result.status is HandlerStatus.ERROR
        assert result.resource_type == "product"
        assert result.resource_id == "prod_1"
        log = store.get(webhook_log_id(event.id))
        assert log is not None
        assert log["status"] == "error"
        assert log["error"] == "ValueError: bad product payload"

    def test_redelivery_increments_attempts(
        self, ctx: ReconciliationContext, store: InMemoryDocumentStore, event_factory: EventFactory
    ) -> None:
        event = event_factory("balance.available", {"object": "balance"})
        for _ in range(3):
            process_event(event, ctx)

        log = store.get(webhook_log_id(event.id))
        assert log is not None
        assert log["attempts"] == 3
        assert log["status"] == "ignored"

    def test_log_store_failure_is_not_raised(
        self, event_factory: EventFactory, session_factory: Callable[..., dict[str, Any]]
    ) -> None:
        store = _LogRejectingStore()
        ctx = ReconciliationContext(store=store)

        result = process_event(event_factory("checkout.session.completed", session_factory()), ctx)

        assert result.status is HandlerStatus.PROCESSED
        assert len(store.all_of_type("order")) == 1
        assert store.all_of_type("stripeWebhook") == []
