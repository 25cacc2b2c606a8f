"""Pure derivation helpers for reconciliation.

These functions have no side effects and no store access, so they can be
tested in isolation with table-driven tests. They cover:

* money conversion (minor units to ``Decimal`` major units)
* timestamp normalization
* order number and slug sanitizers
* the declarative metadata synonym table and its ``first_match`` lookup
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

# ============================================================================
# Constants
# ============================================================================

CENT = Decimal("0.01")
ORDER_NUMBER_PREFIX = "FAS"
ORDER_NUMBER_DIGITS = 6
MAX_SLUG_LENGTH = 96
MAX_JSON_LENGTH = 15000
DRAFT_PREFIX = "drafts."

_ORDER_NUMBER_RE = re.compile(rf"^{ORDER_NUMBER_PREFIX}-\d{{{ORDER_NUMBER_DIGITS}}}$")
_SESSION_PREFIX_RE = re.compile(r"^cs_(?:test|live)_", re.IGNORECASE)
_NON_SLUG_RE = re.compile(r"[^a-z0-9]+")
_NUMERIC_RE = re.compile(r"^-?\d+(?:\.\d+)?$")

# Gateway timestamps are seconds; values above this are milliseconds
_MILLISECOND_THRESHOLD = 10_000_000_000


# ============================================================================
# Scalar Coercion
# ============================================================================


def clean_str(value: Any) -> str | None:
    """Strip a value to a non-empty string, or None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def as_dict(value: Any) -> dict[str, Any]:
    """Return ``value`` if it is a dict, else an empty dict.

    Expandable gateway fields arrive either as an id string or as the
    expanded object; this lets callers read nested members uniformly.
    """
    return value if isinstance(value, dict) else {}


def ref_id(value: Any) -> str | None:
    """Id of an expandable field, whether it is an id string or an object."""
    if isinstance(value, dict):
        return clean_str(value.get("id"))
    return clean_str(value)


def to_decimal(value: Any) -> Decimal | None:
    """Coerce numbers and numeric strings to Decimal. Rejects NaN/inf/bools."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, int | float):
        result = Decimal(str(value))
        return result if result.is_finite() else None
    if isinstance(value, str):
        text = value.strip().replace(",", "")
        if text.startswith("$"):
            text = text[1:]
        if not text:
            return None
        try:
            result = Decimal(text)
        except InvalidOperation:
            return None
        return result if result.is_finite() else None
    return None


def money(value: Decimal) -> Decimal:
    """Round to cents, half-up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_major_units(minor: Any) -> Decimal | None:
    """Convert a minor-unit integer amount (cents) to major units.

    Examples:
        >>> to_major_units(5000)
        Decimal('50.00')
        >>> to_major_units(None) is None
        True
    """
    amount = to_decimal(minor)
    if amount is None:
        return None
    return money(amount / 100)


def to_int(value: Any) -> int | None:
    amount = to_decimal(value)
    if amount is None:
        return None
    return int(amount.to_integral_value(rounding=ROUND_HALF_UP))


# ============================================================================
# Timestamps
# ============================================================================


def format_iso(moment: datetime) -> str:
    """ISO 8601 UTC with a ``Z`` suffix and millisecond precision."""
    moment = moment.astimezone(UTC)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def parse_timestamp(value: Any) -> datetime | None:
    """Parse unix seconds, unix milliseconds, numeric strings or ISO strings."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str) and not _NUMERIC_RE.match(value.strip()):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    number = to_decimal(value)
    if number is None or number <= 0:
        return None
    seconds = number / 1000 if number > _MILLISECOND_THRESHOLD else number
    try:
        return datetime.fromtimestamp(float(seconds), tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None


def to_iso_timestamp(value: Any, now: datetime | None = None) -> str:
    """Normalize any timestamp to ISO 8601, falling back to ``now``."""
    parsed = parse_timestamp(value)
    return format_iso(parsed or now or datetime.now(UTC))


def unix_to_iso(value: Any) -> str | None:
    """Unix timestamp to ISO 8601; non-positive or missing values yield None."""
    parsed = parse_timestamp(value)
    return format_iso(parsed) if parsed else None


def to_date_string(value: Any) -> str | None:
    """Unix timestamp or ISO string to ``YYYY-MM-DD``."""
    parsed = parse_timestamp(value)
    return parsed.date().isoformat() if parsed else None


# ============================================================================
# Identifiers, Numbers and Slugs
# ============================================================================


def id_variants(document_id: str | None) -> list[str]:
    """Published and draft forms of a document id.

    Examples:
        >>> id_variants("drafts.abc")
        ['drafts.abc', 'abc']
        >>> id_variants("abc")
        ['abc', 'drafts.abc']
    """
    value = clean_str(document_id)
    if not value:
        return []
    if value.startswith(DRAFT_PREFIX):
        return [value, value[len(DRAFT_PREFIX) :]]
    return [value, f"{DRAFT_PREFIX}{value}"]


def slugify(value: Any, max_length: int = MAX_SLUG_LENGTH) -> str | None:
    """Lower-case, collapse non-alphanumeric runs to ``-`` and trim."""
    text = clean_str(value)
    if not text:
        return None
    slug = _NON_SLUG_RE.sub("-", text.lower()).strip("-")[:max_length].strip("-")
    return slug or None


def sanitize_order_number(value: Any) -> str | None:
    """Canonicalize a business order number to ``FAS-NNNNNN``.

    Already-canonical values pass through; otherwise the last six digits of
    any value with at least six digits are used.

    Examples:
        >>> sanitize_order_number(" fas-123456 ")
        'FAS-123456'
        >>> sanitize_order_number("INV-2024-0098765")
        'FAS-098765'
        >>> sanitize_order_number("12345") is None
        True
    """
    text = clean_str(value)
    if not text:
        return None
    upper = text.upper()
    if _ORDER_NUMBER_RE.match(upper):
        return upper
    digits = "".join(char for char in upper if char.isdigit())
    if len(digits) >= ORDER_NUMBER_DIGITS:
        return f"{ORDER_NUMBER_PREFIX}-{digits[-ORDER_NUMBER_DIGITS:]}"
    return None


def order_number_from_session_id(session_id: Any) -> str | None:
    """Derive an order number from the trailing digits of a checkout session id."""
    text = clean_str(session_id)
    if not text:
        return None
    return sanitize_order_number(_SESSION_PREFIX_RE.sub("", text))


def normalize_email(value: Any) -> str | None:
    text = clean_str(value)
    if not text or "@" not in text:
        return None
    return text.lower()


def split_name(full_name: Any) -> tuple[str | None, str | None]:
    """Split a display name into (first, last); the last name keeps all remaining tokens."""
    text = clean_str(full_name)
    if not text:
        return None, None
    first, _, rest = text.partition(" ")
    return first, clean_str(rest)


def humanize(key: str) -> str:
    """``vehicle_model`` -> ``Vehicle Model``."""
    words = re.sub(r"([a-z])([A-Z])", r"\1 \2", key).replace("_", " ").replace("-", " ").split()
    return " ".join(word[:1].upper() + word[1:] for word in words)


def safe_json_dumps(value: Any, limit: int = MAX_JSON_LENGTH) -> str | None:
    """Serialize for storage in a text field, truncating to ``limit`` characters."""
    if value is None:
        return None
    try:
        text = json.dumps(value, default=str, sort_keys=True)
    except (TypeError, ValueError):
        return None
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


def compact(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Drop None, empty strings and empty containers from a field mapping."""
    result: dict[str, Any] = {}
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, str | list | dict) and not value:
            continue
        result[key] = value
    return result


# ============================================================================
# Metadata Synonym Table
# ============================================================================

METADATA_SYNONYMS: dict[str, tuple[str, ...]] = {
    # Back-references to application documents
    "order_id": ("sanity_order_id", "order_id", "orderId", "sanityOrderId"),
    "invoice_id": ("sanity_invoice_id", "invoice_id", "sanityInvoiceId", "invoiceId"),
    "quote_id": ("sanity_quote_id", "quote_id", "sanityQuoteId", "quoteId"),
    "payment_link_id": ("sanity_payment_link_id", "payment_link_doc_id", "paymentLinkDocId"),
    "product_id": (
        "sanity_product_id",
        "sanityProductId",
        "product_id",
        "productId",
        "item_id",
        "itemId",
    ),
    "customer_id": ("sanity_customer_id", "customer_id", "sanityCustomerId", "customerId"),
    # Business numbers
    "order_number": ("order_number", "orderNo", "orderNumber", "website_order_number"),
    "invoice_number": ("sanity_invoice_number", "invoice_number", "invoiceNumber"),
    "quote_number": ("quote_number", "quoteNumber"),
    # Identity
    "user_id": ("auth0_user_id", "auth0_sub", "userId", "user_id"),
    "customer_name": ("bill_to_name", "customer_name", "customerName"),
    "customer_email": ("customer_email", "customerEmail", "email"),
    # Catalog
    "sku": (
        "sku",
        "SKU",
        "product_sku",
        "productSku",
        "sanity_sku",
        "item_sku",
        "variant_sku",
        "inventory_sku",
    ),
    "slug": ("sanity_slug", "product_slug", "productSlug", "slug", "handle"),
    # Shipping
    "shipping_amount": ("shipping_amount", "shippingAmount"),
    "shipping_currency": ("shipping_currency", "shippingCurrency"),
    "shipping_carrier": ("shipping_carrier", "shippingCarrier"),
    "shipping_carrier_id": ("shipping_carrier_id", "shippingCarrierId"),
    "shipping_service": ("shipping_service_name", "shipping_service", "shippingService"),
    "shipping_service_code": ("shipping_service_code", "shippingServiceCode"),
    "shipping_rate_id": ("shipping_rate_id", "shippingRateId"),
    "shipping_delivery_days": ("shipping_delivery_days", "shippingDeliveryDays"),
    "shipping_estimated_delivery": (
        "shipping_estimated_delivery_date",
        "shippingEstimatedDeliveryDate",
    ),
    # Financial overrides
    "tax_amount": ("tax_amount", "taxAmount"),
    "discount_amount": ("discount_amount", "discountAmount"),
    "subtotal_amount": ("subtotal_amount", "subtotalAmount"),
    # Legacy carts
    "cart": ("cart", "cart_json", "cartItems", "cart_items"),
    "item_name": ("product_name", "item_name", "product", "title", "name"),
    "item_price": ("price", "amount", "unit_price", "unitPrice"),
    "item_quantity": ("quantity", "qty"),
}


def first_match(metadata: Mapping[str, Any] | None, field: str) -> str | None:
    """First non-blank metadata value among ``field``'s synonyms.

    Raises:
        KeyError: If ``field`` is not in the synonym table
    """
    return first_of(metadata, METADATA_SYNONYMS[field])


def first_of(metadata: Mapping[str, Any] | None, keys: Iterable[str]) -> str | None:
    """First non-blank value among ``keys`` in ``metadata``."""
    if not metadata:
        return None
    for key in keys:
        value = clean_str(metadata.get(key))
        if value:
            return value
    return None


def all_matches(metadata: Mapping[str, Any] | None, field: str) -> list[str]:
    """Every distinct non-blank value among ``field``'s synonyms, in synonym order."""
    if not metadata:
        return []
    values: list[str] = []
    for key in METADATA_SYNONYMS[field]:
        value = clean_str(metadata.get(key))
        if value and value not in values:
            values.append(value)
    return values


def merge_metadata(*sources: Mapping[str, Any] | None) -> dict[str, str]:
    """Merge metadata maps; the first source to define a key wins."""
    merged: dict[str, str] = {}
    for source in sources:
        if not source:
            continue
        for key, value in source.items():
            text = clean_str(value)
            if text and key not in merged:
                merged[str(key)] = text
    return merged


def metadata_entries(metadata: Mapping[str, Any] | None) -> list[dict[str, str]]:
    """Metadata as a keyed list of ``{key, value}`` entries for document storage."""
    if not metadata:
        return []
    entries: list[dict[str, str]] = []
    used: set[str] = set()
    for key, value in metadata.items():
        text = clean_str(value)
        if not text:
            continue
        entry_key = base = slugify(key, 64) or "meta"
        suffix = 2
        while entry_key in used:
            entry_key = f"{base}-{suffix}"
            suffix += 1
        used.add(entry_key)
        entries.append({"_key": entry_key, "key": str(key), "value": text})
    return entries
