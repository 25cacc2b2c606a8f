"""Tests for dispute, checkout expiry and cart recovery handling."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from apps.payment_webhook.events.base import HandlerStatus
from apps.payment_webhook.events.disputes import dispute_payment_status
from apps.payment_webhook.events.router import process_event
from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.reconciliation.upsert import deterministic_id
from apps.payment_webhook.schemas import GatewayEvent
from apps.payment_webhook.store.memory import InMemoryDocumentStore

EventFactory = Callable[..., GatewayEvent]
SessionFactory = Callable[..., dict[str, Any]]

T0 = 1714557600
MINUTE = 60


def _paid_with_charge(session_factory: SessionFactory) -> dict[str, Any]:
    return session_factory(
        payment_intent={
            "id": "pi_1",
            "object": "payment_intent",
            "status": "succeeded",
            "latest_charge": {
                "id": "ch_1",
                "object": "charge",
                "payment_method_details": {"card": {"brand": "visa", "last4": "4242"}},
                "receipt_url": "https://pay.example/receipts/ch_1",
            },
        }
    )


def _dispute(status: str) -> dict[str, Any]:
    return {
        "id": "dp_1",
        "object": "dispute",
        "charge": "ch_1",
        "status": status,
        "reason": "fraudulent",
        "amount": 5900,
        "currency": "usd",
    }


class TestDisputePaymentStatus:
    @pytest.mark.parametrize(
        ("event_type", "status", "expected"),
        [
            ("charge.dispute.created", "needs_response", ("disputed", True)),
            ("charge.dispute.updated", "won", ("paid", True)),
            ("charge.dispute.closed", "lost", ("cancelled", True)),
            ("charge.dispute.closed", "warning_closed", ("paid", True)),
            ("charge.dispute.closed", "under_review", (None, True)),
            ("charge.dispute.funds_reinstated", "won", ("paid", False)),
        ],
    )
    def test_mapping(self, event_type: str, status: str, expected: tuple[str | None, bool]) -> None:
        assert dispute_payment_status(event_type, status) == expected


class TestDisputeLifecycle:
    def test_created_then_lost(
        self,
        ctx: ReconciliationContext,
        store: InMemoryDocumentStore,
        event_factory: EventFactory,
        session_factory: SessionFactory,
    ) -> None:
        process_event(
            event_factory("checkout.session.completed", _paid_with_charge(session_factory)), ctx
        )
        order = store.all_of_type("order")[0]
        assert order["chargeId"] == "ch_1"
        assert order["cardBrand"] == "visa"
        assert order["cardLast4"] == "4242"

        process_event(
            event_factory(
                "charge.dispute.created",
                _dispute("needs_response"),
                event_id="evt_dp_1",
                created=T0 + 30 * MINUTE,
            ),
            ctx,
        )
        order = store.get(order["_id"])
        assert order is not None
        assert order["paymentStatus"] == "disputed"
        assert order["status"] == "disputed"
        assert order["disputeReason"] == "fraudulent"
        assert order["disputeAmount"] == 59.0
        assert store.all_of_type("invoice")[0]["status"] == "paid"

        process_event(
            event_factory(
                "charge.dispute.closed",
                _dispute("lost"),
                event_id="evt_dp_2",
                created=T0 + 60 * MINUTE,
            ),
            ctx,
        )
        order = store.get(order["_id"])
        assert order is not None
        assert order["paymentStatus"] == "cancelled"
        assert order["fulfillmentStatus"] == "cancelled"
        assert store.all_of_type("invoice")[0]["status"] == "cancelled"

    def test_reinstated_funds_reopen_a_lost_dispute(
        self,
        ctx: ReconciliationContext,
        store: InMemoryDocumentStore,
        event_factory: EventFactory,
        session_factory: SessionFactory,
    ) -> None:
        process_event(
            event_factory("checkout.session.completed", _paid_with_charge(session_factory)), ctx
        )
        process_event(
            event_factory(
                "charge.dispute.closed", _dispute("lost"), event_id="evt_dp_2", created=T0 + 60
            ),
            ctx,
        )
        process_event(
            event_factory(
                "charge.dispute.funds_reinstated",
                _dispute("won"),
                event_id="evt_dp_3",
                created=T0 + 120,
            ),
            ctx,
        )

        order = store.all_of_type("order")[0]
        assert order["paymentStatus"] == "paid"
        assert order["status"] == "paid"
        assert store.all_of_type("invoice")[0]["status"] == "paid"

    def test_replayed_loss_does_not_undo_reinstatement(
        self,
        ctx: ReconciliationContext,
        store: InMemoryDocumentStore,
        event_factory: EventFactory,
        session_factory: SessionFactory,
    ) -> None:
        lost = event_factory(
            "charge.dispute.closed", _dispute("lost"), event_id="evt_dp_2", created=T0 + 120
        )
        process_event(
            event_factory("checkout.session.completed", _paid_with_charge(session_factory)), ctx
        )
        process_event(
            event_factory(
                "charge.dispute.created",
                _dispute("needs_response"),
                event_id="evt_dp_1",
                created=T0 + 60,
            ),
            ctx,
        )
        process_event(lost, ctx)
        process_event(
            event_factory(
                "charge.dispute.funds_reinstated",
                _dispute("won"),
                event_id="evt_dp_3",
                created=T0 + 180,
            ),
            ctx,
        )
        order = store.all_of_type("order")[0]
        assert order["paymentStatus"] == "paid"
        assert order["paymentStatusForcedAt"]

        process_event(lost, ctx)

        order = store.all_of_type("order")[0]
        assert order["paymentStatus"] == "paid"
        assert order["status"] == "paid"
        assert store.all_of_type("invoice")[0]["status"] == "paid"

    def test_loss_after_reinstatement_still_applies(
        self,
        ctx: ReconciliationContext,
        store: InMemoryDocumentStore,
        event_factory: EventFactory,
        session_factory: SessionFactory,
    ) -> None:
        process_event(
            event_factory("checkout.session.completed", _paid_with_charge(session_factory)), ctx
        )
        for event_id, event_type, status, created in [
            ("evt_dp_2", "charge.dispute.closed", "lost", T0 + 60),
            ("evt_dp_3", "charge.dispute.funds_reinstated", "won", T0 + 120),
            ("evt_dp_4", "charge.dispute.closed", "lost", T0 + 300),
        ]:
            process_event(
                event_factory(event_type, _dispute(status), event_id=event_id, created=created),
                ctx,
            )

        assert store.all_of_type("order")[0]["paymentStatus"] == "cancelled"

    def test_dispute_for_unknown_charge_is_ignored(
        self, ctx: ReconciliationContext, store: InMemoryDocumentStore, event_factory: EventFactory
    ) -> None:
        result = process_event(event_factory("charge.dispute.created", _dispute("open")), ctx)
        assert result.status is HandlerStatus.IGNORED
        assert store.all_of_type("order") == []


class TestCheckoutExpired:
    @staticmethod
    def _expired(session_factory: SessionFactory) -> dict[str, Any]:
        return session_factory(
            status="expired",
            payment_status="unpaid",
            expires_at=T0 + 24 * 60 * MINUTE,
            customer_email="buyer@example.com",
        )

    def test_without_order_records_expired_cart(
        self,
        ctx: ReconciliationContext,
        store: InMemoryDocumentStore,
        event_factory: EventFactory,
        session_factory: SessionFactory,
    ) -> None:
        result = process_event(
            event_factory("checkout.session.expired", self._expired(session_factory)), ctx
        )

        assert result.status is HandlerStatus.PROCESSED
        assert store.all_of_type("order") == []
        carts = store.all_of_type("expiredCart")
        assert len(carts) == 1
        cart = carts[0]
        assert cart["_id"] == deterministic_id("expiredCart", "cs_test_a1b2c3123456")
        assert result.document_ids == [cart["_id"]]
        assert cart["status"] == "expired"
        assert cart["paymentFailureCode"] == "checkout.session.expired"
        assert "buyer@example.com" in cart["paymentFailureMessage"]
        assert cart["expiredAt"] == "2024-05-02T10:00:00.000Z"
        assert cart["totalAmount"] == 59.0
        assert cart["cart"][0]["name"] == "Intercooler Kit"

    def test_later_completion_marks_cart_recovered(
        self,
        ctx: ReconciliationContext,
        store: InMemoryDocumentStore,
        event_factory: EventFactory,
        session_factory: SessionFactory,
    ) -> None:
        process_event(
            event_factory(
                "checkout.session.expired", self._expired(session_factory), event_id="evt_exp"
            ),
            ctx,
        )
        process_event(
            event_factory(
                "checkout.session.completed",
                session_factory(),
                event_id="evt_done",
                created=T0 + 5 * MINUTE,
            ),
            ctx,
        )

        cart = store.all_of_type("expiredCart")[0]
        order = store.all_of_type("order")[0]
        assert cart["status"] == "recovered"
        assert cart["orderRef"]["_ref"] == order["_id"]
        assert cart["recoveredAt"] == "2024-05-01T12:00:00.000Z"

    def test_existing_pending_order_is_expired(
        self,
        ctx: ReconciliationContext,
        store: InMemoryDocumentStore,
        event_factory: EventFactory,
        session_factory: SessionFactory,
    ) -> None:
        process_event(
            event_factory(
                "checkout.session.completed",
                session_factory(payment_status="unpaid"),
                event_id="evt_open",
            ),
            ctx,
        )
        process_event(
            event_factory(
                "checkout.session.expired",
                self._expired(session_factory),
                event_id="evt_exp",
                created=T0 + 30 * MINUTE,
            ),
            ctx,
        )

        order = store.all_of_type("order")[0]
        assert order["paymentStatus"] == "expired"
        assert order["status"] == "expired"
        assert order["paymentFailureCode"] == "checkout.session.expired"
        assert store.all_of_type("expiredCart") == []

    def test_terminal_expiry_wins_even_when_older(
        self,
        ctx: ReconciliationContext,
        store: InMemoryDocumentStore,
        event_factory: EventFactory,
        session_factory: SessionFactory,
    ) -> None:
        process_event(event_factory("checkout.session.completed", session_factory()), ctx)
        process_event(
            event_factory(
                "checkout.session.expired",
                self._expired(session_factory),
                event_id="evt_exp",
                created=T0 - 30 * MINUTE,
            ),
            ctx,
        )

        order = store.all_of_type("order")[0]
        assert order["paymentStatus"] == "expired"
