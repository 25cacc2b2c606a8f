"""Catalog enrichment for normalized cart items.

Each item is matched against the product catalog mirror in precedence
order: sku, product id (document id, gateway product id or price id), slug,
then a case-insensitive title match. A hit adds the catalog reference and
fills blanks (sku, price); a miss leaves the item exactly as the gateway
described it. Lookups are read-only and cached for the duration of one
event.

Aggregates computed here: subtotal, sale discount, upgrades total and the
parcel weight/dimensions used for shipping labels.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from apps.payment_webhook.config import PackageDefaults
from apps.payment_webhook.reconciliation.cart import CartItem
from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.reconciliation.helpers import (
    all_matches,
    as_dict,
    clean_str,
    id_variants,
    money,
    slugify,
    to_decimal,
)
from apps.payment_webhook.store.query import DocumentQuery, FieldMatch

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

_DIMENSIONS_RE = re.compile(
    r"(\d+(?:\.\d+)?)\s*(?:x|×)\s*(\d+(?:\.\d+)?)\s*(?:x|×)\s*(\d+(?:\.\d+)?)", re.IGNORECASE
)
# Document ids issued by the store: short prefix followed by a long random tail
_DOCUMENT_ID_RE = re.compile(r"^(?:drafts\.)?(?:product-|[a-zA-Z0-9]{1,2}[-a-zA-Z0-9]{8,})")


class CatalogLookup:
    """Finds catalog products for cart items, caching per event."""

    def __init__(self, ctx: ReconciliationContext) -> None:
        self.ctx = ctx
        self._cache: dict[tuple[str, tuple[Any, ...]], dict[str, Any] | None] = {}

    def _one(self, strategy: str, match: FieldMatch) -> dict[str, Any] | None:
        if match.is_empty:
            return None
        cache_key = (f"{strategy}:{match.path}", match.values)
        if cache_key not in self._cache:
            hits = self.ctx.store.fetch(DocumentQuery(("product",), (match,)))
            self._cache[cache_key] = hits[0] if hits else None
        return self._cache[cache_key]

    def find(self, item: CartItem) -> dict[str, Any] | None:
        explicit_ids: list[str] = []
        for value in all_matches(item.metadata, "product_id"):
            if _DOCUMENT_ID_RE.match(value):
                explicit_ids.extend(id_variants(value))

        slug_candidates = tuple(
            slug
            for slug in (
                clean_str(item.product_slug),
                slugify(item.product_name),
                slugify(item.name),
            )
            if slug
        )
        price_ids = tuple(value for value in (item.gateway_price_id,) if value)
        steps: list[tuple[str, FieldMatch]] = [
            ("sku", FieldMatch("sku", tuple(v for v in (item.sku,) if v), case_insensitive=True)),
            ("document_id", FieldMatch("_id", tuple(explicit_ids))),
            (
                "gateway_product",
                FieldMatch("stripeProductId", tuple(v for v in (item.gateway_product_id,) if v)),
            ),
            ("gateway_price", FieldMatch("stripeDefaultPriceId", price_ids)),
            ("price_snapshot", FieldMatch("stripePrices[].priceId", price_ids)),
            ("slug", FieldMatch("slug.current", slug_candidates)),
            (
                "title",
                FieldMatch(
                    "title",
                    tuple(v for v in (item.product_name,) if v),
                    case_insensitive=True,
                ),
            ),
        ]
        for strategy, match in steps:
            product = self._one(strategy, match)
            if product is not None:
                logger.debug(
                    "Cart item matched catalog product",
                    extra={"strategy": strategy, "product_id": product.get("_id")},
                )
                return product
        return None


# ============================================================================
# Pricing
# ============================================================================


def catalog_unit_price(product: Mapping[str, Any]) -> tuple[Decimal | None, Decimal | None]:
    """(effective price, regular price) of a catalog product, applying any sale.

    Examples:
        >>> catalog_unit_price({"price": 100, "onSale": True, "salePrice": 80})
        (Decimal('80.00'), Decimal('100.00'))
        >>> catalog_unit_price({"price": 100, "discountPercent": 25})
        (Decimal('75.00'), Decimal('100.00'))
    """
    regular = to_decimal(product.get("price"))
    if regular is None:
        return None, None
    regular = money(regular)
    sale = to_decimal(product.get("salePrice"))
    if product.get("onSale") and sale is not None and ZERO <= sale < regular:
        return money(sale), regular
    percent = to_decimal(product.get("discountPercent"))
    if percent is not None and ZERO < percent < 100:
        return money(regular * (Decimal("100") - percent) / 100), regular
    value = to_decimal(product.get("discountValue"))
    if value is not None and ZERO < value < regular:
        return money(regular - value), regular
    return regular, regular


def apply_product(item: CartItem, product: Mapping[str, Any]) -> CartItem:
    """Attach a catalog match to ``item``, filling only what the gateway left blank."""
    item.product_ref = clean_str(product.get("_id"))
    slug = clean_str(as_dict(product.get("slug")).get("current"))
    if slug:
        item.product_slug = slug
    if not item.sku:
        item.sku = clean_str(product.get("sku"))
    if not item.product_name:
        item.product_name = clean_str(product.get("title"))

    effective, regular = catalog_unit_price(product)
    if item.price is None and effective is not None:
        item.price = effective
        if item.line_total is None:
            item.line_total = money(effective * item.quantity + (item.upgrades_total or ZERO))
            item.line_total_source = "catalog"
    if regular is not None and item.price is not None and regular > item.price:
        item.original_price = regular
        item.sale_discount = money((regular - item.price) * item.quantity)

    if not item.categories:
        categories = product.get("categories")
        if isinstance(categories, list):
            names = (clean_str(x) for x in categories if isinstance(x, str))
            item.categories = [name for name in names if name]
    return item


# ============================================================================
# Aggregates
# ============================================================================


@dataclass(frozen=True)
class ShippingMetrics:
    weight_lbs: Decimal
    length_in: Decimal
    width_in: Decimal
    height_in: Decimal
    shippable_items: int

    def to_document(self) -> dict[str, Any]:
        return {
            "weight": {"_type": "shipmentWeight", "value": self.weight_lbs, "unit": "pound"},
            "dimensions": {
                "_type": "packageDimensions",
                "length": self.length_in,
                "width": self.width_in,
                "height": self.height_in,
            },
        }


@dataclass(frozen=True)
class CartTotals:
    subtotal: Decimal | None
    sale_discount: Decimal
    upgrades_total: Decimal
    item_count: int
    shipping: ShippingMetrics | None


def requires_shipping(product: Mapping[str, Any] | None) -> bool:
    if not product:
        return True
    if product.get("requiresShipping") is False:
        return False
    if str(product.get("productType") or "").lower() == "service":
        return False
    shipping_class = str(product.get("shippingClass") or "").lower()
    return "install" not in shipping_class


def parse_dimensions(value: Any) -> tuple[Decimal, Decimal, Decimal] | None:
    """Parse ``"12 x 9 x 4"`` style strings."""
    text = clean_str(value)
    if not text:
        return None
    match = _DIMENSIONS_RE.search(text)
    if not match:
        return None
    return Decimal(match.group(1)), Decimal(match.group(2)), Decimal(match.group(3))


def _product_parcel(
    product: Mapping[str, Any] | None, defaults: PackageDefaults
) -> tuple[Decimal, tuple[Decimal, Decimal, Decimal]]:
    product = product or {}
    config = as_dict(product.get("shippingConfig"))
    weight = to_decimal(config.get("weight")) or to_decimal(product.get("shippingWeight"))
    if weight is None or weight <= 0:
        weight = defaults.weight_lbs

    dims_doc = as_dict(config.get("dimensions"))
    dims: tuple[Decimal, Decimal, Decimal] | None = None
    length, width, height = (
        to_decimal(dims_doc.get("length")),
        to_decimal(dims_doc.get("width")),
        to_decimal(dims_doc.get("height")),
    )
    if length and width and height:
        dims = (length, width, height)
    if dims is None:
        dims = parse_dimensions(product.get("boxDimensions"))
    if dims is None:
        dims = (defaults.length_in, defaults.width_in, defaults.height_in)
    return weight, dims


def compute_shipping_metrics(
    items: list[tuple[CartItem, Mapping[str, Any] | None]], defaults: PackageDefaults
) -> ShippingMetrics | None:
    """Total weight and a stacked parcel for every item that ships.

    Length and width are the maxima across items; heights stack per unit.
    """
    weight = ZERO
    length = width = height = ZERO
    shippable = 0
    for item, product in items:
        if not requires_shipping(product):
            continue
        unit_weight, (item_length, item_width, item_height) = _product_parcel(product, defaults)
        weight += unit_weight * item.quantity
        length = max(length, item_length)
        width = max(width, item_width)
        height += item_height * item.quantity
        shippable += item.quantity
    if shippable == 0:
        return None
    return ShippingMetrics(
        weight_lbs=money(weight),
        length_in=length,
        width_in=width,
        height_in=height,
        shippable_items=shippable,
    )


def enrich_cart(
    ctx: ReconciliationContext, items: list[CartItem]
) -> tuple[list[CartItem], CartTotals]:
    """Enrich every item against the catalog and compute cart aggregates."""
    lookup = CatalogLookup(ctx)
    matched: list[tuple[CartItem, Mapping[str, Any] | None]] = []
    for item in items:
        product = lookup.find(item)
        if product is not None:
            apply_product(item, product)
        else:
            logger.info(
                "Cart item has no catalog match",
                extra={"item_key": item.key, "sku": item.sku, "item_name": item.product_name},
            )
        matched.append((item, product))

    line_totals = [item.line_total for item in items if item.line_total is not None]
    subtotal = money(sum(line_totals, ZERO)) if line_totals else None
    totals = CartTotals(
        subtotal=subtotal,
        sale_discount=money(sum((item.sale_discount or ZERO for item in items), ZERO)),
        upgrades_total=money(sum((item.upgrades_total or ZERO for item in items), ZERO)),
        item_count=sum(item.quantity for item in items),
        shipping=compute_shipping_metrics(matched, ctx.package_defaults),
    )
    return items, totals
