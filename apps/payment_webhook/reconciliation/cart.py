"""Cart and line-item normalization.

Turns gateway line items (or, failing that, a legacy JSON cart embedded in
metadata) into canonical ``CartItem`` objects. Normalization is a pure
transform; catalog enrichment is applied afterwards by ``enrichment``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from apps.payment_webhook.reconciliation.helpers import (
    METADATA_SYNONYMS,
    as_dict,
    clean_str,
    first_match,
    first_of,
    humanize,
    merge_metadata,
    metadata_entries,
    money,
    ref_id,
    to_decimal,
    to_major_units,
)

logger = logging.getLogger(__name__)

LINE_TOTAL_TOLERANCE = Decimal("0.01")
NAME_SEPARATOR = " • "

_OPTION_PAIR_RE = re.compile(r"^option[_-]?([a-z0-9]+)?[_-]?(name|value)$", re.IGNORECASE)
_OPTION_KEYWORDS = ("option", "vehicle", "fitment", "model", "variant", "trim", "package")
_UPGRADE_KEYWORDS = ("upgrade", "addon", "add_on", "add-on")
_UPGRADE_TOTAL_KEYS = ("upgrades_total", "upgrade_total", "upgradesTotal", "upgradeTotal")
_CATEGORY_KEYS = ("category", "categories", "product_category")
_LIST_SPLIT_RE = re.compile(r"[,;|]")

# Metadata keys that identify the item rather than describe a selection
_IDENTITY_KEYS = frozenset(
    key.lower()
    for field_name in ("sku", "slug", "product_id")
    for key in METADATA_SYNONYMS[field_name]
)


@dataclass
class CartItem:
    """Canonical cart line.

    Money is in major units. ``line_total`` is authoritative when it came
    from the gateway; otherwise it is ``price * quantity + upgrades_total``.
    """

    key: str
    name: str
    quantity: int = 1
    price: Decimal | None = None
    line_total: Decimal | None = None
    line_total_source: str | None = None
    sku: str | None = None
    product_name: str | None = None
    gateway_product_id: str | None = None
    gateway_price_id: str | None = None
    product_ref: str | None = None
    product_slug: str | None = None
    options: list[str] = field(default_factory=list)
    upgrades: list[str] = field(default_factory=list)
    upgrades_total: Decimal | None = None
    categories: list[str] = field(default_factory=list)
    original_price: Decimal | None = None
    sale_discount: Decimal | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def option_summary(self) -> str | None:
        return ", ".join(self.options) if self.options else None

    def to_document(self) -> dict[str, Any]:
        """Shape stored in an order's ``cart`` array."""
        doc: dict[str, Any] = {
            "_type": "orderCartItem",
            "_key": self.key,
            "name": self.name,
            "productName": self.product_name,
            "sku": self.sku,
            "quantity": self.quantity,
            "price": self.price,
            "lineTotal": self.line_total,
            "total": self.line_total,
            "stripeProductId": self.gateway_product_id,
            "stripePriceId": self.gateway_price_id,
            "productSlug": self.product_slug,
            "optionSummary": self.option_summary,
            "optionDetails": list(self.options) or None,
            "upgrades": list(self.upgrades) or None,
            "upgradesTotal": self.upgrades_total,
            "categories": list(self.categories) or None,
            "originalPrice": self.original_price,
            "saleDiscount": self.sale_discount,
            "metadata": metadata_entries(self.metadata) or None,
        }
        if self.product_ref:
            doc["productRef"] = {"_type": "reference", "_ref": self.product_ref, "_weak": True}
        return {key: value for key, value in doc.items() if value is not None}


# ============================================================================
# Quantities and Totals
# ============================================================================


def resolve_quantity(value: Any) -> int:
    """Clamp a quantity to an integer >= 1.

    Examples:
        >>> resolve_quantity(0)
        1
        >>> resolve_quantity("2.6")
        3
    """
    amount = to_decimal(value)
    if amount is None or amount <= 0:
        if value is not None:
            logger.debug("Quantity clamped to 1", extra={"raw_quantity": str(value)})
        return 1
    rounded = int(money(amount).to_integral_value())
    return max(rounded, 1)


def reconcile_line_total(
    price: Decimal | None,
    quantity: int,
    explicit_total: Decimal | None,
    upgrades_total: Decimal | None = None,
) -> tuple[Decimal | None, str | None]:
    """Pick a line total, preferring an explicit gateway total.

    Returns:
        (line_total, source) with source ``gateway`` or ``computed``
    """
    computed = None
    if price is not None:
        computed = money(price * quantity + (upgrades_total or Decimal("0")))
    if explicit_total is not None:
        if computed is not None and abs(computed - explicit_total) > LINE_TOTAL_TOLERANCE:
            logger.debug(
                "Line total disagrees with price x quantity; using gateway total",
                extra={"computed": str(computed), "gateway": str(explicit_total)},
            )
        return money(explicit_total), "gateway"
    if computed is not None:
        return computed, "computed"
    return None, None


def item_key(source_id: str | None, scope: str | None, index: int) -> str:
    """Deterministic array key so re-processing rewrites the same entries."""
    if source_id:
        return re.sub(r"[^A-Za-z0-9_-]", "", source_id)[:64] or f"item-{index}"
    digest = hashlib.sha1(f"{scope or 'cart'}:{index}".encode()).hexdigest()
    return digest[:12]


# ============================================================================
# Options and Upgrades
# ============================================================================


def _dedupe(labels: list[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for label in labels:
        marker = label.strip().lower()
        if marker and marker not in seen:
            seen.add(marker)
            result.append(label.strip())
    return result


def extract_options(metadata: Mapping[str, str]) -> list[str]:
    """Selected-option labels from ``option_N_name/value`` pairs and option keywords."""
    pairs: dict[str, dict[str, str]] = {}
    labels: list[str] = []
    for key, value in metadata.items():
        lower = key.lower()
        if lower in _IDENTITY_KEYS or "shipping" in lower:
            continue
        pair = _OPTION_PAIR_RE.match(key)
        if pair:
            slot = (pair.group(1) or "1").lower()
            pairs.setdefault(slot, {})[pair.group(2).lower()] = value
            continue
        if any(keyword in lower for keyword in _OPTION_KEYWORDS):
            labels.append(f"{humanize(key)}: {value}")
    for slot in sorted(pairs):
        name = pairs[slot].get("name")
        value = pairs[slot].get("value")
        if name and value:
            labels.insert(0, f"{name}: {value}")
        elif value:
            labels.insert(0, value)
    return _dedupe(labels)


def extract_upgrades(metadata: Mapping[str, str]) -> tuple[list[str], Decimal | None]:
    """Upgrade labels and the optional upgrades total from metadata."""
    labels: list[str] = []
    total: Decimal | None = None
    for key, value in metadata.items():
        if key in _UPGRADE_TOTAL_KEYS:
            total = to_decimal(value)
            continue
        lower = key.lower()
        if any(keyword in lower for keyword in _UPGRADE_KEYWORDS):
            labels.extend(part.strip() for part in _LIST_SPLIT_RE.split(value) if part.strip())
    return _dedupe(labels), total


def extract_categories(metadata: Mapping[str, str]) -> list[str]:
    raw = first_of(metadata, _CATEGORY_KEYS)
    if not raw:
        return []
    return _dedupe([part for part in _LIST_SPLIT_RE.split(raw) if part.strip()])


def display_name(base: str, options: list[str], upgrades: list[str]) -> str:
    """``Base • Opt: A, Opt: B • Upgrades: X, Y``."""
    parts = [base]
    if options:
        parts.append(", ".join(options))
    if upgrades:
        parts.append(f"Upgrades: {', '.join(upgrades)}")
    return NAME_SEPARATOR.join(parts)


# ============================================================================
# Gateway Line Items
# ============================================================================


def map_line_item(
    line_item: Mapping[str, Any],
    index: int,
    session_metadata: Mapping[str, Any] | None = None,
    scope: str | None = None,
) -> CartItem:
    """Map one gateway line item (with ``price.product`` expanded) to a CartItem.

    Metadata is merged from line item, price, product and session; the
    first source to define a key wins.
    """
    price = as_dict(line_item.get("price"))
    product = as_dict(price.get("product"))
    metadata = merge_metadata(
        as_dict(line_item.get("metadata")),
        as_dict(price.get("metadata")),
        as_dict(product.get("metadata")),
        as_dict(session_metadata),
    )

    quantity = resolve_quantity(line_item.get("quantity"))
    unit_price = to_major_units(price.get("unit_amount"))
    if unit_price is None:
        unit_price = to_major_units(as_dict(line_item.get("unit_price")).get("amount_total"))
    explicit_total = to_major_units(line_item.get("amount_subtotal"))
    if explicit_total is None:
        explicit_total = to_major_units(line_item.get("amount_total"))

    options = extract_options(metadata)
    upgrades, upgrades_total = extract_upgrades(metadata)
    base_name = (
        clean_str(product.get("name"))
        or clean_str(line_item.get("description"))
        or first_match(metadata, "item_name")
        or "Item"
    )
    line_total, source = reconcile_line_total(unit_price, quantity, explicit_total, upgrades_total)

    return CartItem(
        key=item_key(clean_str(line_item.get("id")), scope, index),
        name=display_name(base_name, options, upgrades),
        product_name=base_name,
        quantity=quantity,
        price=unit_price,
        line_total=line_total,
        line_total_source=source,
        sku=first_match(metadata, "sku"),
        gateway_product_id=ref_id(price.get("product")),
        gateway_price_id=clean_str(price.get("id")),
        product_slug=first_match(metadata, "slug"),
        options=options,
        upgrades=upgrades,
        upgrades_total=upgrades_total,
        categories=extract_categories(metadata),
        metadata=metadata,
    )


# ============================================================================
# Legacy Metadata Carts
# ============================================================================


def _legacy_entries(raw: str) -> list[Any]:
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        logger.info("Legacy cart metadata is not valid JSON; ignoring")
        return []
    if isinstance(parsed, dict):
        parsed = parsed.get("items") or parsed.get("cart") or []
    return parsed if isinstance(parsed, list) else []


def parse_legacy_cart(
    metadata: Mapping[str, Any] | None, scope: str | None = None
) -> list[CartItem]:
    """Best-effort parse of a cart embedded in free-text metadata.

    Malformed entries are dropped. When no JSON cart yields an item, a
    single line is built from flat ``product_name``/``price``/``quantity``
    keys, if present.
    """
    metadata = metadata or {}
    items: list[CartItem] = []
    raw = first_match(metadata, "cart")
    for index, entry in enumerate(_legacy_entries(raw) if raw else []):
        if not isinstance(entry, dict):
            continue
        name = first_of(entry, ("name", "productName", "title", "product_name"))
        if not name:
            continue
        quantity = resolve_quantity(first_of(entry, ("quantity", "qty")))
        price = to_decimal(first_of(entry, ("price", "amount", "unitPrice", "unit_price")))
        explicit_total = to_decimal(first_of(entry, ("lineTotal", "line_total", "total")))
        entry_meta = merge_metadata(as_dict(entry.get("metadata")), entry)
        options = extract_options(as_dict(entry.get("metadata")))
        upgrades, upgrades_total = extract_upgrades(as_dict(entry.get("metadata")))
        line_total, source = reconcile_line_total(price, quantity, explicit_total, upgrades_total)
        items.append(
            CartItem(
                key=item_key(clean_str(entry.get("_key") or entry.get("id")), scope, index),
                name=display_name(name, options, upgrades),
                product_name=name,
                quantity=quantity,
                price=money(price) if price is not None else None,
                line_total=line_total,
                line_total_source=source,
                sku=first_match(entry_meta, "sku"),
                product_slug=first_of(entry, ("productSlug", "slug")),
                gateway_price_id=first_of(entry, ("stripePriceId", "priceId")),
                gateway_product_id=first_of(entry, ("stripeProductId",)),
                options=options,
                upgrades=upgrades,
                upgrades_total=upgrades_total,
            )
        )
    if items:
        return items

    name = first_match(metadata, "item_name")
    if not name:
        return []
    quantity = resolve_quantity(first_match(metadata, "item_quantity"))
    price = to_decimal(first_match(metadata, "item_price"))
    line_total, source = reconcile_line_total(price, quantity, None)
    return [
        CartItem(
            key=item_key(None, scope, 0),
            name=name,
            product_name=name,
            quantity=quantity,
            price=money(price) if price is not None else None,
            line_total=line_total,
            line_total_source=source,
            sku=first_match(metadata, "sku"),
        )
    ]


def build_cart(
    line_items: list[Mapping[str, Any]] | None,
    metadata: Mapping[str, Any] | None,
    scope: str | None = None,
) -> list[CartItem]:
    """Normalize gateway line items, falling back to the legacy metadata cart."""
    if line_items:
        return [
            map_line_item(line_item, index, metadata, scope)
            for index, line_item in enumerate(line_items)
            if isinstance(line_item, Mapping)
        ]
    return parse_legacy_cart(metadata, scope)
