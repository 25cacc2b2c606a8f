"""Shared handler result type and payload readers."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.reconciliation.helpers import (
    as_dict,
    clean_str,
)
from apps.payment_webhook.reconciliation.orders import OutcomeResult
from apps.payment_webhook.reconciliation.upsert import JournalEntry
from apps.payment_webhook.schemas import GatewayEvent


class HandlerStatus(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"
    ERROR = "error"


@dataclass
class HandlerResult:
    """What a handler did, recorded on the webhook log.

    Attributes:
        status: processed, ignored or error
        summary: One human readable line
        resource_type: Gateway object type the event was about
        resource_id: Gateway id of that object
        order_id: Order document touched, if any
        invoice_id: Invoice document touched, if any
        document_ids: Any other documents touched
    """

    status: HandlerStatus
    summary: str
    resource_type: str | None = None
    resource_id: str | None = None
    order_id: str | None = None
    invoice_id: str | None = None
    document_ids: list[str] = field(default_factory=list)

    @classmethod
    def ignored(cls, summary: str, event: GatewayEvent | None = None) -> HandlerResult:
        result = cls(HandlerStatus.IGNORED, summary)
        if event is not None:
            result.resource_type = clean_str(event.payload.get("object"))
            result.resource_id = clean_str(event.payload.get("id"))
        return result


def order_result(
    result: OutcomeResult, resource_type: str, resource_id: str | None, label: str
) -> HandlerResult:
    """Processed result describing the order an outcome was applied to."""
    number = result.order.get("orderNumber") or result.order_id
    status = result.payment_status or "unchanged"
    verb = "created" if result.created else "updated"
    return HandlerResult(
        HandlerStatus.PROCESSED,
        f"{label}: order {number} {verb} ({status})",
        resource_type=resource_type,
        resource_id=resource_id,
        order_id=result.order_id,
        invoice_id=result.invoice_id,
    )


EventHandler = Callable[[GatewayEvent, ReconciliationContext], HandlerResult]


def journal_entry(
    event: GatewayEvent,
    label: str,
    message: str | None = None,
    *,
    status: str | None = None,
    amount: Decimal | None = None,
    currency: str | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> JournalEntry:
    """Journal entry scoped to the event, so redelivery never duplicates it."""
    return JournalEntry(
        event_id=event.id,
        event_type=event.type,
        occurred_at=event.occurred_at,
        status=status,
        label=label,
        message=message,
        amount=amount,
        currency=currency,
        metadata=metadata,
        scope=event.type,
    )


# ============================================================================
# Payload Readers
# ============================================================================


def card_details(charge: Mapping[str, Any] | None) -> dict[str, Any]:
    """Card brand, last four and receipt from a charge snapshot."""
    charge = charge or {}
    card = as_dict(as_dict(charge.get("payment_method_details")).get("card"))
    return {
        "chargeId": clean_str(charge.get("id")),
        "cardBrand": clean_str(card.get("brand")),
        "cardLast4": clean_str(card.get("last4")),
        "receiptUrl": clean_str(charge.get("receipt_url")),
    }


def latest_charge(
    ctx: ReconciliationContext, payment_intent: Mapping[str, Any] | None
) -> dict[str, Any]:
    """Expanded latest charge of a payment intent, fetching it when only an id is present."""
    payment_intent = payment_intent or {}
    charge = payment_intent.get("latest_charge")
    if isinstance(charge, dict):
        return charge
    charge_id = clean_str(charge)
    if not charge_id:
        return {}
    return ctx.enrich("charge", lambda gw: gw.retrieve_charge(charge_id)) or {}


def payment_intent_snapshot(ctx: ReconciliationContext, value: Any) -> dict[str, Any]:
    """Payment intent as an object: the expanded value, or a gateway lookup by id."""
    if isinstance(value, dict):
        return value
    payment_intent_id = clean_str(value)
    if not payment_intent_id:
        return {}
    snapshot = ctx.enrich(
        "payment_intent", lambda gw: gw.retrieve_payment_intent(payment_intent_id)
    )
    return snapshot or {"id": payment_intent_id}


def shipping_details(source: Mapping[str, Any]) -> dict[str, Any]:
    """Shipping name/address from a session or payment intent.

    Newer API versions move the session's shipping block under
    ``collected_information``.
    """
    for candidate in (
        source.get("shipping_details"),
        as_dict(source.get("collected_information")).get("shipping_details"),
        source.get("shipping"),
    ):
        details = as_dict(candidate)
        if as_dict(details.get("address")):
            return details
    return {}


def has_street_address(shipping: Mapping[str, Any]) -> bool:
    return bool(clean_str(as_dict(shipping.get("address")).get("line1")))


def order_has_street_address(order: Mapping[str, Any] | None) -> bool:
    return bool(clean_str(as_dict((order or {}).get("shippingAddress")).get("addressLine1")))


def shipping_address_doc(
    shipping: Mapping[str, Any], email: str | None = None, phone: str | None = None
) -> dict[str, Any] | None:
    address = as_dict(shipping.get("address"))
    if not address:
        return None
    doc = {
        "_type": "shippingAddress",
        "name": clean_str(shipping.get("name")),
        "phone": clean_str(shipping.get("phone")) or clean_str(phone),
        "email": clean_str(email),
        "addressLine1": clean_str(address.get("line1")),
        "addressLine2": clean_str(address.get("line2")),
        "city": clean_str(address.get("city")),
        "state": clean_str(address.get("state")),
        "postalCode": clean_str(address.get("postal_code")),
        "country": clean_str(address.get("country")),
    }
    return {key: value for key, value in doc.items() if value is not None}


def currency_of(obj: Mapping[str, Any]) -> str | None:
    currency = clean_str(obj.get("currency"))
    return currency.upper() if currency else None
