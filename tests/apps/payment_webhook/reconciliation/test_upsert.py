"""Tests for idempotent upsert and the event journal."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.reconciliation.upsert import (
    JournalEntry,
    append_journal,
    deterministic_id,
    journal_contains,
    upsert,
)
from apps.payment_webhook.store.memory import InMemoryDocumentStore
from libs.common.exceptions import DocumentStoreError

OCCURRED = datetime(2024, 5, 1, 10, 0, tzinfo=UTC)


def _entry(event_id: str = "evt_1", scope: str = "") -> JournalEntry:
    return JournalEntry(
        event_id=event_id,
        event_type="checkout.session.completed",
        occurred_at=OCCURRED,
        status="paid",
        amount=Decimal("59.00"),
        currency="usd",
        scope=scope,
    )


class TestDeterministicId:
    def test_stable_per_type_and_key(self) -> None:
        assert deterministic_id("order", "cs_1") == deterministic_id("order", "cs_1")
        assert deterministic_id("order", "cs_1") != deterministic_id("invoice", "cs_1")
        assert deterministic_id("order", "cs_1").startswith("order-")
        assert len(deterministic_id("order", "cs_1")) == len("order-") + 24


class TestJournalEntry:
    def test_key_depends_on_event_and_scope(self) -> None:
        assert _entry().key == _entry().key
        assert _entry().key != _entry(scope="cs_1:invoice").key
        assert _entry().key != _entry(event_id="evt_2").key

    def test_document_shape(self) -> None:
        document = _entry().to_document()
        assert document["_type"] == "orderEvent"
        assert document["type"] == "checkout.session.completed"
        assert document["createdAt"] == "2024-05-01T10:00:00.000Z"
        assert document["currency"] == "USD"
        assert document["stripeEventId"] == "evt_1"
        assert "label" not in document

    def test_journal_contains(self) -> None:
        entry = _entry()
        document = {"orderEvents": [{"_key": entry.key}]}
        assert journal_contains(document, "orderEvents", entry) is True
        assert journal_contains(document, "events", entry) is False
        assert journal_contains(None, "orderEvents", entry) is False


class TestUpsert:
    def test_creates_with_deterministic_id_when_missing(
        self, ctx: ReconciliationContext, store: InMemoryDocumentStore
    ) -> None:
        result = upsert(
            ctx,
            "order",
            None,
            {"paymentStatus": "paid", "notes": None},
            natural_key="cs_1",
            create_only={"stripeSessionId": "cs_1"},
            set_if_missing={"currency": "USD"},
            journal=_entry(),
            journal_field="orderEvents",
        )
        assert result.created is True
        assert result.journal_appended is True
        assert result.document_id == deterministic_id("order", "cs_1")
        stored = store.get(result.document_id)
        assert stored is not None
        assert stored["stripeSessionId"] == "cs_1"
        assert stored["currency"] == "USD"
        assert "notes" not in stored
        assert len(stored["orderEvents"]) == 1

    def test_patches_existing_without_touching_create_only_fields(
        self, ctx: ReconciliationContext, store: InMemoryDocumentStore
    ) -> None:
        store.create(
            {"_id": "order-1", "_type": "order", "stripeSessionId": "cs_orig", "currency": "EUR"}
        )
        existing = store.get("order-1")
        result = upsert(
            ctx,
            "order",
            existing,
            {"paymentStatus": "paid"},
            create_only={"stripeSessionId": "cs_other"},
            set_if_missing={"currency": "USD"},
            unset=["paymentFailureCode"],
        )
        assert result.created is False
        stored = store.get("order-1")
        assert stored is not None
        assert stored["stripeSessionId"] == "cs_orig"
        assert stored["currency"] == "EUR"
        assert stored["paymentStatus"] == "paid"

    def test_redelivery_does_not_duplicate_journal(
        self, ctx: ReconciliationContext, store: InMemoryDocumentStore
    ) -> None:
        first = upsert(
            ctx, "order", None, {"paymentStatus": "paid"}, natural_key="cs_1",
            journal=_entry(), journal_field="orderEvents",
        )
        second = upsert(
            ctx, "order", store.get(first.document_id), {"paymentStatus": "paid"},
            journal=_entry(), journal_field="orderEvents",
        )
        assert second.journal_appended is False
        stored = store.get(first.document_id)
        assert stored is not None
        assert len(stored["orderEvents"]) == 1

    def test_create_conflict_falls_back_to_patch(
        self, ctx: ReconciliationContext, store: InMemoryDocumentStore
    ) -> None:
        store.create({"_id": deterministic_id("order", "cs_1"), "_type": "order"})
        result = upsert(ctx, "order", None, {"paymentStatus": "paid"}, natural_key="cs_1")
        assert result.created is False
        assert len(store.all_of_type("order")) == 1
        assert store.get(result.document_id)["paymentStatus"] == "paid"  # type: ignore[index]

    def test_other_store_errors_propagate(self) -> None:
        failing = MagicMock()
        failing.create.side_effect = DocumentStoreError("unavailable", status_code=503)
        ctx = ReconciliationContext(store=failing)
        with pytest.raises(DocumentStoreError):
            upsert(ctx, "order", None, {"paymentStatus": "paid"}, natural_key="cs_1")


class TestAppendJournal:
    def test_appends_once(self, ctx: ReconciliationContext, store: InMemoryDocumentStore) -> None:
        store.create({"_id": "order-1", "_type": "order"})
        assert append_journal(ctx, store.get("order-1"), _entry()) is True  # type: ignore[arg-type]
        assert append_journal(ctx, store.get("order-1"), _entry()) is False  # type: ignore[arg-type]
        assert len(store.get("order-1")["orderEvents"]) == 1  # type: ignore[index]

    def test_document_without_id_is_skipped(self, ctx: ReconciliationContext) -> None:
        assert append_journal(ctx, {"_type": "order"}, _entry()) is False
