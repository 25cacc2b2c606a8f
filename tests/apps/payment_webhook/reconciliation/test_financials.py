"""Tests for financial reconciliation and shipping selection."""

from __future__ import annotations

from collections.abc import Callable
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock

from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.reconciliation.enrichment import CartTotals
from apps.payment_webhook.reconciliation.financials import (
    FinancialInputs,
    gateway_totals_from_session,
    overrides_from_metadata,
    reconcile_totals,
    resolve_shipping_selection,
)
from apps.payment_webhook.store.memory import InMemoryDocumentStore
from libs.common.exceptions import GatewayError


def _cart_totals(subtotal: str | None) -> CartTotals:
    return CartTotals(
        subtotal=Decimal(subtotal) if subtotal is not None else None,
        sale_discount=Decimal("0"),
        upgrades_total=Decimal("0"),
        item_count=1,
        shipping=None,
    )


class TestReconcileTotals:
    def test_checkout_totals_add_up(self, session_factory: Callable[..., dict[str, Any]]) -> None:
        totals = reconcile_totals(gateway_totals_from_session(session_factory()))

        assert totals.subtotal == Decimal("50.00")
        assert totals.shipping == Decimal("5.00")
        assert totals.tax == Decimal("4.00")
        assert totals.discount == Decimal("0.00")
        assert totals.total == Decimal("59.00")
        assert totals.discrepancy is None
        assert totals.sources["total"] == "gateway"
        assert totals.to_document() == {
            "amountSubtotal": Decimal("50.00"),
            "amountTax": Decimal("4.00"),
            "amountShipping": Decimal("5.00"),
            "amountDiscount": Decimal("0.00"),
            "totalAmount": Decimal("59.00"),
        }

    def test_gateway_total_kept_and_discrepancy_recorded(self) -> None:
        gateway = FinancialInputs(
            subtotal=Decimal("50"), tax=Decimal("4"), shipping=Decimal("5"), total=Decimal("60")
        )
        totals = reconcile_totals(gateway)
        assert totals.total == Decimal("60.00")
        assert totals.computed_total == Decimal("59.00")
        assert totals.discrepancy == Decimal("1.00")
        assert totals.to_document()["totalDiscrepancy"] == Decimal("1.00")

    def test_one_cent_difference_is_tolerated(self) -> None:
        gateway = FinancialInputs(subtotal=Decimal("10.00"), total=Decimal("10.01"))
        assert reconcile_totals(gateway).discrepancy is None

    def test_metadata_override_beats_rate_lookup_and_gateway(self) -> None:
        gateway = FinancialInputs(subtotal=Decimal("50"), shipping=Decimal("5"), total=Decimal("55"))
        overrides = overrides_from_metadata({"shipping_amount": "7.5"})
        totals = reconcile_totals(gateway, overrides=overrides, live_shipping=Decimal("6"))
        assert totals.shipping == Decimal("7.50")
        assert totals.sources["shipping"] == "metadata"
        assert totals.discrepancy == Decimal("-2.50")

    def test_rate_lookup_beats_gateway_shipping(self) -> None:
        gateway = FinancialInputs(subtotal=Decimal("50"), shipping=Decimal("5"))
        totals = reconcile_totals(gateway, live_shipping=Decimal("6.25"))
        assert totals.shipping == Decimal("6.25")
        assert totals.total == Decimal("56.25")
        assert totals.sources["total"] == "computed"

    def test_cart_subtotal_is_the_last_resort(self) -> None:
        totals = reconcile_totals(FinancialInputs(), cart=_cart_totals("20"))
        assert totals.subtotal == Decimal("20.00")
        assert totals.sources["subtotal"] == "cart"
        assert totals.shipping == Decimal("0")
        assert totals.sources["shipping"] == "default"
        assert totals.total == Decimal("20.00")

    def test_negative_overrides_are_ignored(self) -> None:
        overrides = overrides_from_metadata({"tax_amount": "-3", "discountAmount": "2"})
        assert overrides.tax is None
        assert overrides.discount == Decimal("2.00")


class TestShippingSelection:
    def test_expanded_rate_supplies_amount_and_service(
        self, ctx: ReconciliationContext, session_factory: Callable[..., dict[str, Any]]
    ) -> None:
        session = session_factory(
            shipping_cost={
                "amount_total": 500,
                "shipping_rate": {
                    "id": "shr_1",
                    "display_name": "UPS - Ground",
                    "fixed_amount": {"amount": 650, "currency": "usd"},
                    "delivery_estimate": {"maximum": {"unit": "business_day", "value": 5}},
                },
            }
        )
        selection = resolve_shipping_selection(ctx, session, {})
        assert selection.amount == Decimal("6.50")
        assert selection.amount_source == "rate_lookup"
        assert selection.carrier == "UPS"
        assert selection.service == "Ground"
        assert selection.rate_id == "shr_1"
        assert selection.delivery_days == 5
        assert selection.currency == "USD"
        assert selection.to_document()["_type"] == "selectedService"

    def test_metadata_wins(
        self, ctx: ReconciliationContext, session_factory: Callable[..., dict[str, Any]]
    ) -> None:
        metadata = {"shipping_amount": "9", "shipping_carrier": "FedEx"}
        selection = resolve_shipping_selection(ctx, session_factory(), metadata)
        assert selection.amount == Decimal("9.00")
        assert selection.amount_source == "metadata"
        assert selection.carrier == "FedEx"

    def test_session_amount_without_rate(
        self, ctx: ReconciliationContext, session_factory: Callable[..., dict[str, Any]]
    ) -> None:
        selection = resolve_shipping_selection(ctx, session_factory(), {})
        assert selection.amount == Decimal("5.00")
        assert selection.amount_source == "gateway"
        assert selection.rate_id is None

    def test_rate_id_is_looked_up_through_gateway(
        self, session_factory: Callable[..., dict[str, Any]]
    ) -> None:
        gateway = MagicMock()
        gateway.retrieve_shipping_rate.return_value = {
            "id": "shr_2",
            "display_name": "Express",
            "fixed_amount": {"amount": 1500, "currency": "usd"},
        }
        ctx = ReconciliationContext(store=InMemoryDocumentStore(), gateway=gateway)
        session = session_factory(shipping_cost={"amount_total": 500, "shipping_rate": "shr_2"})

        selection = resolve_shipping_selection(ctx, session, {})

        gateway.retrieve_shipping_rate.assert_called_once_with("shr_2")
        assert selection.amount == Decimal("15.00")
        assert selection.carrier is None
        assert selection.service == "Express"

    def test_failed_lookup_degrades_to_session_amount(
        self, session_factory: Callable[..., dict[str, Any]]
    ) -> None:
        gateway = MagicMock()
        gateway.retrieve_shipping_rate.side_effect = GatewayError("rate limited")
        ctx = ReconciliationContext(store=InMemoryDocumentStore(), gateway=gateway)
        session = session_factory(shipping_cost={"amount_total": 500, "shipping_rate": "shr_2"})

        selection = resolve_shipping_selection(ctx, session, {})

        assert selection.amount == Decimal("5.00")
        assert selection.amount_source == "gateway"
        assert selection.rate_id == "shr_2"
