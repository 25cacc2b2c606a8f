"""Tests for entity resolution precedence."""

from __future__ import annotations

from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.reconciliation.resolver import (
    InvoiceKeys,
    OrderKeys,
    order_number_taken,
    resolve_customer,
    resolve_invoice,
    resolve_order,
    resolve_product,
)
from apps.payment_webhook.store.memory import InMemoryDocumentStore


def _seed(store: InMemoryDocumentStore) -> None:
    for document in (
        {"_id": "order-a", "_type": "order", "orderNumber": "FAS-111111"},
        {
            "_id": "order-b",
            "_type": "order",
            "orderNumber": "FAS-222222",
            "stripeSessionId": "cs_test_b",
            "paymentIntentId": "pi_b",
            "chargeId": "ch_b",
        },
        {"_id": "drafts.order-c", "_type": "order", "orderNumber": "FAS-333333"},
    ):
        store.create(document)


class TestResolveOrder:
    def test_metadata_id_beats_order_number(
        self, ctx: ReconciliationContext, store: InMemoryDocumentStore
    ) -> None:
        _seed(store)
        keys = OrderKeys(metadata={"sanity_order_id": "order-a"}, order_number="FAS-222222")
        assert resolve_order(ctx, keys)["_id"] == "order-a"  # type: ignore[index]

    def test_metadata_id_matches_draft_variant(
        self, ctx: ReconciliationContext, store: InMemoryDocumentStore
    ) -> None:
        _seed(store)
        keys = OrderKeys(metadata={"orderId": "order-c"})
        assert resolve_order(ctx, keys)["_id"] == "drafts.order-c"  # type: ignore[index]

    def test_primary_gateway_id_beats_order_number(
        self, ctx: ReconciliationContext, store: InMemoryDocumentStore
    ) -> None:
        _seed(store)
        keys = OrderKeys(
            session_id="cs_test_b",
            order_number="FAS-111111",
            primary_field="stripeSessionId",
            primary_id="cs_test_b",
        )
        assert resolve_order(ctx, keys)["_id"] == "order-b"  # type: ignore[index]

    def test_order_number_is_sanitized(
        self, ctx: ReconciliationContext, store: InMemoryDocumentStore
    ) -> None:
        _seed(store)
        keys = OrderKeys(metadata={"order_number": " fas-111111 "})
        assert resolve_order(ctx, keys)["_id"] == "order-a"  # type: ignore[index]

    def test_falls_back_to_any_gateway_id(
        self, ctx: ReconciliationContext, store: InMemoryDocumentStore
    ) -> None:
        _seed(store)
        keys = OrderKeys(charge_id="ch_b", primary_field="chargeId", primary_id="ch_unknown")
        assert resolve_order(ctx, keys)["_id"] == "order-b"  # type: ignore[index]

    def test_miss_returns_none(self, ctx: ReconciliationContext, store: InMemoryDocumentStore) -> None:
        _seed(store)
        assert resolve_order(ctx, OrderKeys(payment_intent_id="pi_nope")) is None
        assert resolve_order(ctx, OrderKeys()) is None

    def test_order_number_taken_checks_invoices_too(
        self, ctx: ReconciliationContext, store: InMemoryDocumentStore
    ) -> None:
        store.create({"_id": "inv-1", "_type": "invoice", "invoiceNumber": "FAS-444444"})
        assert order_number_taken(ctx, "FAS-444444") is True
        assert order_number_taken(ctx, "FAS-555555") is False


class TestResolveInvoice:
    def test_explicit_ref_beats_gateway_id(
        self, ctx: ReconciliationContext, store: InMemoryDocumentStore
    ) -> None:
        store.create({"_id": "inv-1", "_type": "invoice", "stripeInvoiceId": "in_2"})
        store.create({"_id": "inv-2", "_type": "invoice", "stripeInvoiceId": "in_1"})
        keys = InvoiceKeys(invoice_ref="inv-1", gateway_invoice_id="in_1")
        assert resolve_invoice(ctx, keys)["_id"] == "inv-1"  # type: ignore[index]

    def test_order_link_is_the_last_resort(
        self, ctx: ReconciliationContext, store: InMemoryDocumentStore
    ) -> None:
        store.create({"_id": "inv-1", "_type": "invoice", "orderRef": {"_ref": "order-1"}})
        keys = InvoiceKeys(gateway_invoice_id="in_unknown", order_id="order-1")
        assert resolve_invoice(ctx, keys)["_id"] == "inv-1"  # type: ignore[index]


class TestResolveCustomer:
    def test_email_lookup_is_case_insensitive(
        self, ctx: ReconciliationContext, store: InMemoryDocumentStore
    ) -> None:
        store.create({"_id": "cust-1", "_type": "customer", "email": "buyer@example.com"})
        found = resolve_customer(ctx, "BUYER@Example.com")
        assert found is not None
        assert found["_id"] == "cust-1"

    def test_gateway_customer_id_beats_email(
        self, ctx: ReconciliationContext, store: InMemoryDocumentStore
    ) -> None:
        store.create({"_id": "cust-1", "_type": "customer", "email": "buyer@example.com"})
        store.create(
            {"_id": "cust-2", "_type": "customer", "email": "x@y.co", "stripeCustomerId": "cus_1"}
        )
        found = resolve_customer(ctx, "buyer@example.com", gateway_customer_id="cus_1")
        assert found is not None
        assert found["_id"] == "cust-2"


class TestResolveProduct:
    def test_sku_and_slug_strategies(
        self, ctx: ReconciliationContext, store: InMemoryDocumentStore
    ) -> None:
        store.create({"_id": "p-1", "_type": "product", "sku": "SKU-1"})
        store.create({"_id": "p-2", "_type": "product", "slug": {"current": "turbo-kit"}})
        assert resolve_product(ctx, {"product_sku": "SKU-1"}, None)["_id"] == "p-1"  # type: ignore[index]
        assert resolve_product(ctx, {"handle": "turbo-kit"}, None)["_id"] == "p-2"  # type: ignore[index]
        assert resolve_product(ctx, {}, "prod_unknown") is None
