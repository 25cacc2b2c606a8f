"""Catalog mirror: gateway products and prices onto product documents."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from apps.payment_webhook.events.base import HandlerResult, HandlerStatus
from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.reconciliation.helpers import (
    as_dict,
    clean_str,
    compact,
    first_match,
    format_iso,
    merge_metadata,
    ref_id,
    slugify,
    to_major_units,
    unix_to_iso,
)
from apps.payment_webhook.reconciliation.resolver import resolve_product
from apps.payment_webhook.reconciliation.upsert import upsert
from apps.payment_webhook.schemas import GatewayEvent
from apps.payment_webhook.store.query import DocumentQuery, FieldMatch

logger = logging.getLogger(__name__)

MAX_SLUG_ATTEMPTS = 50
DEFAULT_PRODUCT_TITLE = "Stripe Product"


def unique_product_slug(ctx: ReconciliationContext, base: str) -> str:
    """``base``, or ``base-2``, ``base-3``... whichever no product uses yet."""
    candidate = base
    for attempt in range(2, MAX_SLUG_ATTEMPTS + 2):
        taken = ctx.store.fetch(
            DocumentQuery(("product",), (FieldMatch("slug.current", (candidate,)),))
        )
        if not taken:
            return candidate
        candidate = f"{base}-{attempt}"
    logger.warning("Slug candidates exhausted; using a timestamp suffix", extra={"slug": base})
    return f"{base}-{int(ctx.now().timestamp())}"


def price_snapshot(price: Mapping[str, Any]) -> dict[str, Any]:
    """Array entry kept in a product's ``stripePrices`` list, keyed by price id."""
    recurring = as_dict(price.get("recurring"))
    currency = clean_str(price.get("currency"))
    return compact(
        {
            "_type": "stripePriceSnapshot",
            "_key": price.get("id"),
            "priceId": price.get("id"),
            "nickname": clean_str(price.get("nickname")),
            "currency": currency.upper() if currency else None,
            "unitAmount": to_major_units(price.get("unit_amount")),
            "unitAmountRaw": price.get("unit_amount"),
            "type": clean_str(price.get("type")),
            "billingScheme": clean_str(price.get("billing_scheme")),
            "recurringInterval": clean_str(recurring.get("interval")),
            "recurringIntervalCount": recurring.get("interval_count"),
            "active": price.get("active"),
            "livemode": price.get("livemode"),
            "createdAt": unix_to_iso(price.get("created")),
        }
    )


def _without_price(prices: Any, price_id: str) -> list[dict[str, Any]]:
    if not isinstance(prices, list):
        return []
    return [
        entry
        for entry in prices
        if isinstance(entry, dict) and price_id not in (entry.get("priceId"), entry.get("_key"))
    ]


# ============================================================================
# Products
# ============================================================================


def sync_product(ctx: ReconciliationContext, product: Mapping[str, Any]) -> tuple[str, bool]:
    """Create or refresh the product document for a gateway product.

    Returns:
        Tuple of (document id, created)
    """
    product_id = str(product["id"])
    metadata = merge_metadata(as_dict(product.get("metadata")))
    existing = resolve_product(ctx, metadata, product_id)
    fields = compact(
        {
            "stripeProductId": product_id,
            "stripeActive": product.get("active"),
            "stripeUpdatedAt": unix_to_iso(product.get("updated")) or format_iso(ctx.now()),
            "stripeDefaultPriceId": ref_id(product.get("default_price")),
        }
    )
    sku = first_match(metadata, "sku")
    title = clean_str(product.get("name")) or clean_str(metadata.get("title"))

    if existing is not None:
        result = upsert(
            ctx,
            "product",
            existing,
            fields,
            set_if_missing=compact({"sku": sku, "title": title}),
        )
        return result.document_id, False

    title = title or DEFAULT_PRODUCT_TITLE
    base_slug = slugify(first_match(metadata, "slug") or title) or product_id.lower()
    slug = unique_product_slug(ctx, base_slug)
    result = upsert(
        ctx,
        "product",
        None,
        fields,
        natural_key=product_id,
        create_only=compact(
            {
                "title": title,
                "slug": {"_type": "slug", "current": slug},
                "availability": "in_stock",
                "sku": sku,
            }
        ),
    )
    return result.document_id, result.created


def handle_product(event: GatewayEvent, ctx: ReconciliationContext) -> HandlerResult:
    product = event.payload
    if not clean_str(product.get("id")):
        return HandlerResult.ignored("Product without id", event)
    document_id, created = sync_product(ctx, product)
    return HandlerResult(
        HandlerStatus.PROCESSED,
        f"Product {document_id} {'created' if created else 'updated'}",
        resource_type="product",
        resource_id=product["id"],
        document_ids=[document_id],
    )


def handle_product_deleted(event: GatewayEvent, ctx: ReconciliationContext) -> HandlerResult:
    """Mark the mirrored product inactive; documents are never deleted."""
    product = event.payload
    product_id = clean_str(product.get("id"))
    existing = resolve_product(ctx, as_dict(product.get("metadata")), product_id)
    if existing is None:
        return HandlerResult.ignored("Deleted product has no document", event)
    upsert(
        ctx,
        "product",
        existing,
        {"stripeActive": False, "stripeDeletedAt": format_iso(event.occurred_at)},
    )
    return HandlerResult(
        HandlerStatus.PROCESSED,
        f"Product {existing['_id']} marked inactive",
        resource_type="product",
        resource_id=product_id,
        document_ids=[existing["_id"]],
    )


# ============================================================================
# Prices
# ============================================================================


def _product_for_price(
    ctx: ReconciliationContext, price: Mapping[str, Any]
) -> dict[str, Any] | None:
    product_ref = price.get("product")
    product_id = ref_id(product_ref)
    if not product_id:
        return None
    metadata = merge_metadata(
        as_dict(price.get("metadata")), as_dict(as_dict(product_ref).get("metadata"))
    )
    existing = resolve_product(ctx, metadata, product_id)
    if existing is not None:
        return existing
    product = as_dict(product_ref) or ctx.enrich(
        "product", lambda gw: gw.retrieve_product(product_id)
    )
    if not product:
        return None
    document_id, _ = sync_product(ctx, product)
    return ctx.store.get(document_id)


def handle_price(event: GatewayEvent, ctx: ReconciliationContext) -> HandlerResult:
    """Upsert the price snapshot on its product; one-time prices set the product price."""
    price = event.payload
    price_id = clean_str(price.get("id"))
    product = _product_for_price(ctx, price) if price_id else None
    if product is None:
        return HandlerResult.ignored("Price has no product document", event)

    prices = _without_price(product.get("stripePrices"), price_id)
    prices.append(price_snapshot(price))
    fields: dict[str, Any] = {
        "stripePrices": prices,
        "stripeProductId": ref_id(price.get("product")),
        "stripeUpdatedAt": format_iso(ctx.now()),
    }
    unit_amount = to_major_units(price.get("unit_amount"))
    one_time = price.get("type") == "one_time" and price.get("active") is not False
    if one_time and unit_amount is not None:
        fields["price"] = unit_amount
    default_price = ref_id(as_dict(price.get("product")).get("default_price"))
    if default_price:
        fields["stripeDefaultPriceId"] = default_price

    upsert(ctx, "product", product, fields)
    return HandlerResult(
        HandlerStatus.PROCESSED,
        f"Price {price_id} synced to product {product['_id']}",
        resource_type="price",
        resource_id=price_id,
        document_ids=[product["_id"]],
    )


def handle_price_deleted(event: GatewayEvent, ctx: ReconciliationContext) -> HandlerResult:
    """Drop the price snapshot and repoint the default price if it was this one."""
    price = event.payload
    price_id = clean_str(price.get("id"))
    product_id = ref_id(price.get("product"))
    product = resolve_product(ctx, None, product_id) if product_id else None
    if product is None and price_id:
        hits = ctx.store.fetch(
            DocumentQuery(("product",), (FieldMatch("stripePrices[].priceId", (price_id,)),))
        )
        product = hits[0] if hits else None
    if product is None or not price_id:
        return HandlerResult.ignored("Deleted price has no product document", event)

    prices = _without_price(product.get("stripePrices"), price_id)
    fields: dict[str, Any] = {"stripePrices": prices, "stripeUpdatedAt": format_iso(ctx.now())}
    unset: list[str] = []
    if product.get("stripeDefaultPriceId") == price_id:
        replacement = prices[0].get("priceId") if prices else None
        if replacement:
            fields["stripeDefaultPriceId"] = replacement
        else:
            unset.append("stripeDefaultPriceId")
    upsert(ctx, "product", product, fields, unset=unset)
    return HandlerResult(
        HandlerStatus.PROCESSED,
        f"Price {price_id} removed from product {product['_id']}",
        resource_type="price",
        resource_id=price_id,
        document_ids=[product["_id"]],
    )
