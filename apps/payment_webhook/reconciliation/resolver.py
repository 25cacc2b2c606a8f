"""Entity resolution: find the one document an event refers to.

Each resolver walks an ordered list of strategies, and the first hit wins:

1. an explicit document id embedded in event metadata
2. the gateway's own resource id for that entity type
3. a sanitized business number
4. (orders) an OR-lookup across every gateway id the order may carry
5. (customers) the normalized email, case-insensitively

Each strategy is a single store query. Resolution is read-only. A miss
returns None and the caller decides whether to create or to skip.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.reconciliation.helpers import (
    all_matches,
    clean_str,
    first_match,
    id_variants,
    normalize_email,
    sanitize_order_number,
)
from apps.payment_webhook.store.query import DocumentQuery, FieldMatch

logger = logging.getLogger(__name__)

Document = dict[str, Any]


def _run_strategies(
    ctx: ReconciliationContext, entity: str, strategies: list[tuple[str, DocumentQuery]]
) -> Document | None:
    for name, query in strategies:
        if query.is_empty:
            continue
        hits = ctx.store.fetch(query)
        if hits:
            logger.debug(
                "Resolved %s", entity, extra={"strategy": name, "document_id": hits[0].get("_id")}
            )
            return hits[0]
    return None


def _ids(*values: str | None) -> tuple[str, ...]:
    return tuple(value for value in values if value)


def _id_match(values: list[str]) -> FieldMatch:
    variants: list[str] = []
    for value in values:
        variants.extend(id_variants(value))
    return FieldMatch("_id", tuple(variants))


def _by_ids(types: tuple[str, ...], values: list[str]) -> DocumentQuery:
    return DocumentQuery(types, (_id_match(values),))


def _by_field(types: tuple[str, ...], field_name: str, values: tuple[str, ...]) -> DocumentQuery:
    return DocumentQuery(types, (FieldMatch(field_name, values),))


# ============================================================================
# Orders
# ============================================================================


@dataclass(frozen=True)
class OrderKeys:
    """Natural keys an event carries for its order.

    ``primary_field``/``primary_id`` name the gateway id of the resource the
    event is about (a checkout session, payment intent or charge).
    """

    metadata: Mapping[str, Any] = field(default_factory=dict)
    session_id: str | None = None
    payment_intent_id: str | None = None
    charge_id: str | None = None
    order_number: str | None = None
    primary_field: str | None = None
    primary_id: str | None = None

    @property
    def any_gateway_id(self) -> bool:
        return bool(self.session_id or self.payment_intent_id or self.charge_id)


ORDER_TYPES = ("order",)


def resolve_order(ctx: ReconciliationContext, keys: OrderKeys) -> Document | None:
    """Find the order an event refers to.

    Example:
        >>> resolve_order(ctx, OrderKeys(session_id="cs_test_1", payment_intent_id="pi_1"))
        {'_id': 'order-1', ...}
    """
    order_number = sanitize_order_number(
        keys.order_number or first_match(keys.metadata, "order_number")
    )
    strategies = [
        ("metadata_id", _by_ids(ORDER_TYPES, all_matches(keys.metadata, "order_id"))),
        (
            "gateway_id",
            _by_field(ORDER_TYPES, keys.primary_field, _ids(keys.primary_id))
            if keys.primary_field
            else DocumentQuery(ORDER_TYPES, ()),
        ),
        ("order_number", _by_field(ORDER_TYPES, "orderNumber", _ids(order_number))),
        (
            "any_gateway_id",
            DocumentQuery(
                ORDER_TYPES,
                (
                    FieldMatch("stripeSessionId", _ids(keys.session_id, keys.payment_intent_id)),
                    FieldMatch("paymentIntentId", _ids(keys.payment_intent_id)),
                    FieldMatch("stripePaymentIntentId", _ids(keys.payment_intent_id)),
                    FieldMatch("chargeId", _ids(keys.charge_id)),
                ),
            ),
        ),
    ]
    return _run_strategies(ctx, "order", strategies)


def order_number_taken(ctx: ReconciliationContext, candidate: str) -> bool:
    """True when an order or invoice already uses ``candidate`` as its number."""
    query = DocumentQuery(
        ("order", "invoice"),
        (
            FieldMatch("orderNumber", (candidate,)),
            FieldMatch("invoiceNumber", (candidate,)),
        ),
    )
    return bool(ctx.store.fetch(query))


# ============================================================================
# Invoices
# ============================================================================


@dataclass(frozen=True)
class InvoiceKeys:
    metadata: Mapping[str, Any] = field(default_factory=dict)
    invoice_ref: str | None = None
    gateway_invoice_id: str | None = None
    invoice_number: str | None = None
    payment_intent_id: str | None = None
    order_id: str | None = None
    order_number: str | None = None


INVOICE_TYPES = ("invoice",)


def resolve_invoice(ctx: ReconciliationContext, keys: InvoiceKeys) -> Document | None:
    """Find the invoice an event (or an already-resolved order) refers to."""
    explicit_ids = all_matches(keys.metadata, "invoice_id")
    if keys.invoice_ref:
        explicit_ids.append(keys.invoice_ref)
    raw_number = keys.invoice_number or first_match(keys.metadata, "invoice_number")
    numbers = _ids(raw_number, sanitize_order_number(raw_number))
    order_numbers = _ids(sanitize_order_number(keys.order_number))
    strategies = [
        ("metadata_id", _by_ids(INVOICE_TYPES, explicit_ids)),
        (
            "gateway_id",
            _by_field(INVOICE_TYPES, "stripeInvoiceId", _ids(keys.gateway_invoice_id)),
        ),
        ("invoice_number", _by_field(INVOICE_TYPES, "invoiceNumber", numbers)),
        (
            "payment_intent",
            _by_field(INVOICE_TYPES, "paymentIntentId", _ids(keys.payment_intent_id)),
        ),
        (
            "order_link",
            DocumentQuery(
                INVOICE_TYPES,
                (
                    FieldMatch("orderRef._ref", _ids(keys.order_id)),
                    FieldMatch("orderNumber", order_numbers),
                ),
            ),
        ),
    ]
    return _run_strategies(ctx, "invoice", strategies)


# ============================================================================
# Customers
# ============================================================================

CUSTOMER_TYPES = ("customer",)


def resolve_customer(
    ctx: ReconciliationContext,
    email: str | None,
    gateway_customer_id: str | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> Document | None:
    """Find a customer profile by explicit id, gateway customer id or email."""
    strategies = [
        ("metadata_id", _by_ids(CUSTOMER_TYPES, all_matches(metadata, "customer_id"))),
        (
            "gateway_id",
            _by_field(CUSTOMER_TYPES, "stripeCustomerId", _ids(clean_str(gateway_customer_id))),
        ),
        (
            "email",
            DocumentQuery(
                CUSTOMER_TYPES,
                (FieldMatch("email", _ids(normalize_email(email)), case_insensitive=True),),
            ),
        ),
    ]
    return _run_strategies(ctx, "customer", strategies)


# ============================================================================
# Quotes and Payment Links
# ============================================================================


def resolve_quote(
    ctx: ReconciliationContext,
    metadata: Mapping[str, Any] | None,
    gateway_quote_id: str | None,
    quote_number: str | None = None,
) -> Document | None:
    types = ("quote",)
    number = quote_number or first_match(metadata, "quote_number")
    strategies = [
        ("metadata_id", _by_ids(types, all_matches(metadata, "quote_id"))),
        ("gateway_id", _by_field(types, "stripeQuoteId", _ids(gateway_quote_id))),
        ("quote_number", _by_field(types, "quoteNumber", _ids(number))),
    ]
    return _run_strategies(ctx, "quote", strategies)


def resolve_payment_link(
    ctx: ReconciliationContext,
    metadata: Mapping[str, Any] | None,
    gateway_link_id: str | None,
) -> Document | None:
    types = ("paymentLink",)
    strategies = [
        ("metadata_id", _by_ids(types, all_matches(metadata, "payment_link_id"))),
        ("gateway_id", _by_field(types, "stripePaymentLinkId", _ids(gateway_link_id))),
    ]
    return _run_strategies(ctx, "payment link", strategies)


# ============================================================================
# Catalog
# ============================================================================

PRODUCT_TYPES = ("product",)


def resolve_product(
    ctx: ReconciliationContext,
    metadata: Mapping[str, Any] | None,
    gateway_product_id: str | None,
) -> Document | None:
    """Find the catalog product mirrored from a gateway product."""
    strategies = [
        ("metadata_id", _by_ids(PRODUCT_TYPES, all_matches(metadata, "product_id"))),
        ("gateway_id", _by_field(PRODUCT_TYPES, "stripeProductId", _ids(gateway_product_id))),
        ("sku", _by_field(PRODUCT_TYPES, "sku", tuple(all_matches(metadata, "sku")))),
        ("slug", _by_field(PRODUCT_TYPES, "slug.current", tuple(all_matches(metadata, "slug")))),
    ]
    return _run_strategies(ctx, "product", strategies)
