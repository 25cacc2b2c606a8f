"""Tests for the in-memory document store and structured queries."""

from __future__ import annotations

from decimal import Decimal

import pytest

from apps.payment_webhook.store.memory import InMemoryDocumentStore
from apps.payment_webhook.store.query import DocumentQuery, FieldMatch, read_path
from libs.common.exceptions import DocumentStoreError


class TestFieldMatch:
    def test_blank_values_are_dropped(self) -> None:
        match = FieldMatch("orderNumber", ("", None, "  ", "FAS-000001", "FAS-000001"))
        assert match.values == ("FAS-000001",)

    def test_case_insensitive_values_are_lowered(self) -> None:
        match = FieldMatch("email", ("Buyer@Example.com",), case_insensitive=True)
        assert match.values == ("buyer@example.com",)

    def test_query_with_only_empty_matches_is_empty(self) -> None:
        query = DocumentQuery(("order",), (FieldMatch("stripeSessionId", (None,)),))
        assert query.is_empty is True


class TestGroqRendering:
    def test_renders_or_of_active_matches(self) -> None:
        query = DocumentQuery(
            ("order",),
            (
                FieldMatch("stripeSessionId", ("cs_1",)),
                FieldMatch("chargeId", ()),
                FieldMatch("paymentIntentId", ("pi_1",)),
            ),
        )
        groq, params = query.to_groq()
        assert groq == (
            "*[_type in $types && (stripeSessionId in $v0 || paymentIntentId in $v1)]"
            " | order(_createdAt asc) [0...1]"
        )
        assert params == {"types": ["order"], "v0": ["cs_1"], "v1": ["pi_1"]}

    def test_renders_array_and_case_insensitive_paths(self) -> None:
        query = DocumentQuery(
            ("product", "customer"),
            (
                FieldMatch("stripePrices[].priceId", ("price_1",)),
                FieldMatch("email", ("a@b.co",), case_insensitive=True),
            ),
            limit=5,
        )
        groq, _ = query.to_groq()
        assert "count(stripePrices[priceId in $v0]) > 0" in groq
        assert "lower(email) in $v1" in groq
        assert groq.endswith("[0...5]")


class TestReadPath:
    def test_nested_and_array_paths(self) -> None:
        document = {
            "slug": {"current": "turbo-kit"},
            "stripePrices": [{"priceId": "price_1"}, {"priceId": "price_2"}, "junk"],
        }
        assert read_path(document, "slug.current") == ["turbo-kit"]
        assert read_path(document, "stripePrices[].priceId") == ["price_1", "price_2"]
        assert read_path(document, "missing.path") == []


class TestInMemoryDocumentStore:
    def test_create_assigns_id_and_system_fields(self) -> None:
        store = InMemoryDocumentStore()
        document_id = store.create({"_type": "order", "totalAmount": Decimal("59.00")})
        document = store.get(document_id)
        assert document is not None
        assert document["_id"] == document_id
        assert document["totalAmount"] == 59.0
        assert {"_createdAt", "_updatedAt", "_rev"} <= set(document)

    def test_create_refuses_existing_id(self) -> None:
        store = InMemoryDocumentStore([{"_id": "order-1", "_type": "order"}])
        with pytest.raises(DocumentStoreError) as exc_info:
            store.create({"_id": "order-1", "_type": "order"})
        assert exc_info.value.status_code == 409

    def test_create_requires_type(self) -> None:
        with pytest.raises(DocumentStoreError):
            InMemoryDocumentStore().create({"_id": "x"})

    def test_create_or_replace_keeps_created_at(self) -> None:
        store = InMemoryDocumentStore([{"_id": "log-1", "_type": "stripeWebhook", "attempts": 1}])
        created_at = store.get("log-1")["_createdAt"]  # type: ignore[index]
        store.create_or_replace({"_id": "log-1", "_type": "stripeWebhook", "attempts": 2})
        document = store.get("log-1")
        assert document is not None
        assert document["attempts"] == 2
        assert document["_createdAt"] == created_at

    def test_patch_operations(self) -> None:
        store = InMemoryDocumentStore(
            [{"_id": "order-1", "_type": "order", "orderNumber": "FAS-000001", "notes": "x"}]
        )
        updated = (
            store.patch("order-1")
            .set({"paymentStatus": "paid", "ignored": None})
            .set_if_missing({"orderNumber": "FAS-999999", "currency": "USD"})
            .unset(["notes"])
            .inc({"attempts": 1})
            .append("orderEvents", [{"_key": "a"}])
            .append("orderEvents", [{"_key": "b"}])
            .commit()
        )
        assert updated is not None
        assert updated["paymentStatus"] == "paid"
        assert "ignored" not in updated
        assert updated["orderNumber"] == "FAS-000001"
        assert updated["currency"] == "USD"
        assert "notes" not in updated
        assert updated["attempts"] == 1
        assert [entry["_key"] for entry in updated["orderEvents"]] == ["a", "b"]

    def test_nested_set_creates_intermediate_objects(self) -> None:
        store = InMemoryDocumentStore([{"_id": "invoice-1", "_type": "invoice"}])
        updated = store.patch("invoice-1").set({"orderRef._ref": "order-1"}).commit()
        assert updated is not None
        assert updated["orderRef"] == {"_ref": "order-1"}

    def test_empty_patch_is_not_sent(self) -> None:
        store = InMemoryDocumentStore()
        assert store.patch("missing").commit() is None

    def test_patch_on_missing_document_fails(self) -> None:
        store = InMemoryDocumentStore()
        with pytest.raises(DocumentStoreError) as exc_info:
            store.patch("missing").set({"a": 1}).commit()
        assert exc_info.value.status_code == 404

    def test_fetch_returns_oldest_first_up_to_limit(self) -> None:
        store = InMemoryDocumentStore(
            [
                {"_id": "c-1", "_type": "customer", "email": "Buyer@Example.com"},
                {"_id": "c-2", "_type": "customer", "email": "buyer@example.com"},
                {"_id": "o-1", "_type": "order", "email": "buyer@example.com"},
            ]
        )
        match = FieldMatch("email", ("BUYER@example.com",), case_insensitive=True)
        assert [d["_id"] for d in store.fetch(DocumentQuery(("customer",), (match,)))] == ["c-1"]
        hits = store.fetch(DocumentQuery(("customer",), (match,), limit=10))
        assert [d["_id"] for d in hits] == ["c-1", "c-2"]

    def test_returned_documents_are_copies(self) -> None:
        store = InMemoryDocumentStore([{"_id": "order-1", "_type": "order", "cart": []}])
        document = store.get("order-1")
        assert document is not None
        document["cart"].append("mutated")
        assert store.get("order-1")["cart"] == []  # type: ignore[index]

    def test_all_of_type(self) -> None:
        store = InMemoryDocumentStore(
            [{"_id": "a", "_type": "order"}, {"_id": "b", "_type": "invoice"}]
        )
        assert [d["_id"] for d in store.all_of_type("order")] == ["a"]
