"""Financial reconciliation: one authoritative set of order totals.

Sources disagree: the gateway reports its own totals, the cart can be
summed, operators can pin values in metadata and the shipping provider
quotes live rates. Each field takes the first available source in this
order:

    metadata override > live shipping rate (shipping only) > gateway > cart

``total`` is cross-checked against ``subtotal - discount + tax + shipping``.
When the gateway reports a total it is used verbatim; a difference beyond
one cent is recorded as a discrepancy but is not an error, since gateways
apply adjustments that line items never show.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.reconciliation.enrichment import CartTotals
from apps.payment_webhook.reconciliation.helpers import (
    as_dict,
    clean_str,
    compact,
    first_match,
    money,
    ref_id,
    to_decimal,
    to_int,
    to_major_units,
)

logger = logging.getLogger(__name__)

TOTAL_EPSILON = Decimal("0.01")
ZERO = Decimal("0")

_DISPLAY_NAME_SPLIT_RE = re.compile(r"\s+[-–—]\s+")


@dataclass(frozen=True)
class FinancialInputs:
    """One source's view of the order totals (major units, None = unknown)."""

    subtotal: Decimal | None = None
    tax: Decimal | None = None
    shipping: Decimal | None = None
    discount: Decimal | None = None
    total: Decimal | None = None


@dataclass(frozen=True)
class ReconciledTotals:
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal
    sources: dict[str, str] = field(default_factory=dict)
    discrepancy: Decimal | None = None

    @property
    def computed_total(self) -> Decimal:
        return money(self.subtotal - self.discount + self.tax + self.shipping)

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "amountSubtotal": self.subtotal,
            "amountTax": self.tax,
            "amountShipping": self.shipping,
            "amountDiscount": self.discount,
            "totalAmount": self.total,
        }
        if self.discrepancy is not None:
            doc["totalDiscrepancy"] = self.discrepancy
        return doc


def gateway_totals_from_session(session: Mapping[str, Any]) -> FinancialInputs:
    """Totals a checkout session reports, in major units."""
    details = as_dict(session.get("total_details"))
    shipping = to_major_units(as_dict(session.get("shipping_cost")).get("amount_total"))
    if shipping is None:
        shipping = to_major_units(details.get("amount_shipping"))
    return FinancialInputs(
        subtotal=to_major_units(session.get("amount_subtotal")),
        tax=to_major_units(details.get("amount_tax")),
        shipping=shipping,
        discount=to_major_units(details.get("amount_discount")),
        total=to_major_units(session.get("amount_total")),
    )


def overrides_from_metadata(metadata: Mapping[str, Any] | None) -> FinancialInputs:
    """Operator-pinned values (major units) from metadata."""
    def pick(field_name: str) -> Decimal | None:
        value = to_decimal(first_match(metadata, field_name))
        return money(value) if value is not None and value >= 0 else None

    return FinancialInputs(
        subtotal=pick("subtotal_amount"),
        tax=pick("tax_amount"),
        shipping=pick("shipping_amount"),
        discount=pick("discount_amount"),
    )


def reconcile_totals(
    gateway: FinancialInputs,
    cart: CartTotals | None = None,
    overrides: FinancialInputs | None = None,
    live_shipping: Decimal | None = None,
) -> ReconciledTotals:
    """Merge all sources into one set of totals.

    Example:
        >>> totals = reconcile_totals(
        ...     FinancialInputs(subtotal=Decimal("50"), tax=Decimal("4"),
        ...                     shipping=Decimal("5"), total=Decimal("59"))
        ... )
        >>> totals.total
        Decimal('59.00')
    """
    overrides = overrides or FinancialInputs()
    sources: dict[str, str] = {}

    def choose(name: str, candidates: list[tuple[str, Decimal | None]]) -> Decimal:
        for source, value in candidates:
            if value is not None:
                sources[name] = source
                return money(value)
        sources[name] = "default"
        return ZERO

    subtotal = choose(
        "subtotal",
        [
            ("metadata", overrides.subtotal),
            ("gateway", gateway.subtotal),
            ("cart", cart.subtotal if cart else None),
        ],
    )
    tax = choose("tax", [("metadata", overrides.tax), ("gateway", gateway.tax)])
    shipping = choose(
        "shipping",
        [
            ("metadata", overrides.shipping),
            ("rate_lookup", live_shipping),
            ("gateway", gateway.shipping),
        ],
    )
    discount = choose("discount", [("metadata", overrides.discount), ("gateway", gateway.discount)])

    computed = money(subtotal - discount + tax + shipping)
    discrepancy: Decimal | None = None
    if gateway.total is not None:
        total = money(gateway.total)
        sources["total"] = "gateway"
        if abs(total - computed) > TOTAL_EPSILON:
            discrepancy = money(total - computed)
            logger.info(
                "Gateway total differs from component sum; gateway total kept",
                extra={"gateway_total": str(total), "computed_total": str(computed)},
            )
    else:
        total = computed
        sources["total"] = "computed"

    return ReconciledTotals(
        subtotal=subtotal,
        tax=tax,
        shipping=shipping,
        discount=discount,
        total=total,
        sources=sources,
        discrepancy=discrepancy,
    )


# ============================================================================
# Shipping Selection
# ============================================================================


@dataclass(frozen=True)
class ShippingSelection:
    """The shipping service a buyer chose, with the source of its amount."""

    amount: Decimal | None = None
    amount_source: str | None = None
    currency: str | None = None
    carrier: str | None = None
    carrier_id: str | None = None
    service: str | None = None
    service_code: str | None = None
    rate_id: str | None = None
    delivery_days: int | None = None
    estimated_delivery_date: str | None = None

    def to_document(self) -> dict[str, Any]:
        return compact(
            {
                "_type": "selectedService",
                "amount": self.amount,
                "currency": self.currency,
                "carrier": self.carrier,
                "carrierId": self.carrier_id,
                "service": self.service,
                "serviceCode": self.service_code,
                "rateId": self.rate_id,
                "deliveryDays": self.delivery_days,
                "estimatedDeliveryDate": self.estimated_delivery_date,
            }
        )


def _split_display_name(display_name: str | None) -> tuple[str | None, str | None]:
    text = clean_str(display_name)
    if not text:
        return None, None
    parts = _DISPLAY_NAME_SPLIT_RE.split(text, maxsplit=1)
    if len(parts) == 2:
        return clean_str(parts[0]), clean_str(parts[1])
    return None, text


def resolve_shipping_selection(
    ctx: ReconciliationContext,
    session: Mapping[str, Any],
    metadata: Mapping[str, Any] | None,
) -> ShippingSelection:
    """Resolve the chosen shipping service and its amount.

    The amount comes from a metadata override, then the live shipping-rate
    lookup, then the session's own shipping cost. Descriptive fields (carrier,
    service) fill from the same sources in the same order.
    """
    shipping_cost = as_dict(session.get("shipping_cost"))
    rate_ref = shipping_cost.get("shipping_rate")
    rate_id = first_match(metadata, "shipping_rate_id") or ref_id(rate_ref)
    rate = as_dict(rate_ref) or None
    if rate is None and rate_id:
        rate = ctx.enrich("shipping_rate", lambda gw: gw.retrieve_shipping_rate(rate_id))
    rate = rate or {}
    rate_meta = as_dict(rate.get("metadata"))
    fixed = as_dict(rate.get("fixed_amount"))
    rate_carrier, rate_service = _split_display_name(rate.get("display_name"))
    estimate = as_dict(rate.get("delivery_estimate"))
    estimate_days = to_int(as_dict(estimate.get("maximum")).get("value")) or to_int(
        as_dict(estimate.get("minimum")).get("value")
    )

    override = to_decimal(first_match(metadata, "shipping_amount"))
    live = to_major_units(fixed.get("amount"))
    session_amount = to_major_units(shipping_cost.get("amount_total"))
    if session_amount is None:
        total_details = as_dict(session.get("total_details"))
        session_amount = to_major_units(total_details.get("amount_shipping"))

    amount: Decimal | None = None
    amount_source: str | None = None
    candidates = (("metadata", override), ("rate_lookup", live), ("gateway", session_amount))
    for source, value in candidates:
        if value is not None:
            amount, amount_source = money(value), source
            break

    currency = (
        first_match(metadata, "shipping_currency")
        or clean_str(fixed.get("currency"))
        or clean_str(session.get("currency"))
    )
    return ShippingSelection(
        amount=amount,
        amount_source=amount_source,
        currency=currency.upper() if currency else None,
        carrier=first_match(metadata, "shipping_carrier")
        or clean_str(rate_meta.get("carrier"))
        or rate_carrier,
        carrier_id=first_match(metadata, "shipping_carrier_id")
        or clean_str(rate_meta.get("carrier_id")),
        service=first_match(metadata, "shipping_service")
        or clean_str(rate_meta.get("service"))
        or rate_service,
        service_code=first_match(metadata, "shipping_service_code")
        or clean_str(rate_meta.get("service_code")),
        rate_id=rate_id,
        delivery_days=to_int(first_match(metadata, "shipping_delivery_days")) or estimate_days,
        estimated_delivery_date=first_match(metadata, "shipping_estimated_delivery"),
    )
