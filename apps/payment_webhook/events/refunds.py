"""Refund handlers.

``charge.refunded`` carries the charge; ``refund.*`` and
``charge.refund.updated`` carry the refund. Both shapes are normalized to a
(charge, refund) pair before the order is touched. Refund events never
create orders.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

from apps.payment_webhook.events.base import (
    HandlerResult,
    currency_of,
    journal_entry,
    order_result,
)
from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.reconciliation.helpers import (
    as_dict,
    clean_str,
    humanize,
    merge_metadata,
    ref_id,
    to_int,
    to_major_units,
    unix_to_iso,
)
from apps.payment_webhook.reconciliation.orders import (
    PaymentOutcome,
    apply_payment_outcome,
    refund_amount_fields,
)
from apps.payment_webhook.reconciliation.resolver import OrderKeys, resolve_order
from apps.payment_webhook.reconciliation.status import PaymentStatus
from apps.payment_webhook.schemas import GatewayEvent

logger = logging.getLogger(__name__)

MESSAGE_SEPARATOR = " • "

# Refund statuses that do not (yet) move money back
_UNSETTLED_REFUND_STATUSES = frozenset({"failed", "canceled", "requires_action"})


def _charge_and_refund(
    ctx: ReconciliationContext, obj: Mapping[str, Any]
) -> tuple[dict[str, Any], dict[str, Any]]:
    if obj.get("object") == "refund":
        refund = dict(obj)
        charge_ref = obj.get("charge")
        charge = as_dict(charge_ref)
        charge_id = ref_id(charge_ref)
        if not charge and charge_id:
            charge = ctx.enrich("charge", lambda gw: gw.retrieve_charge(charge_id)) or {}
        return charge, refund
    charge = dict(obj)
    refunds = [r for r in as_dict(charge.get("refunds")).get("data") or [] if isinstance(r, dict)]
    refunds.sort(key=lambda r: to_int(r.get("created")) or 0, reverse=True)
    return charge, refunds[0] if refunds else {}


def is_full_refund(charge: Mapping[str, Any], amount_refunded_minor: int | None) -> bool:
    """A refund is full when the charge says so or the refunded sum covers it.

    Example:
        >>> is_full_refund({"amount": 5000, "refunded": False}, 5000)
        True
    """
    if charge.get("refunded") is True:
        return True
    amount = to_int(charge.get("amount"))
    return bool(amount and amount_refunded_minor is not None and amount_refunded_minor >= amount)


def refund_message(
    amount: Decimal | None, currency: str | None, reason: str | None, status: str | None
) -> str | None:
    parts = []
    if amount is not None:
        parts.append(f"Refunded {amount:.2f} {currency or ''}".strip())
    if reason:
        parts.append(f"Reason: {humanize(reason)}")
    if status:
        parts.append(f"Status: {status}")
    return MESSAGE_SEPARATOR.join(parts) or None


def handle_refund(event: GatewayEvent, ctx: ReconciliationContext) -> HandlerResult:
    """Apply a refund (full or partial) to the order and invoice."""
    charge, refund = _charge_and_refund(ctx, event.payload)
    charge_id = clean_str(charge.get("id")) or ref_id(refund.get("charge"))
    payment_intent_id = ref_id(charge.get("payment_intent")) or ref_id(refund.get("payment_intent"))
    metadata = merge_metadata(as_dict(refund.get("metadata")), as_dict(charge.get("metadata")))
    order = resolve_order(
        ctx,
        OrderKeys(
            metadata=metadata,
            payment_intent_id=payment_intent_id,
            charge_id=charge_id,
            primary_field="paymentIntentId",
            primary_id=payment_intent_id,
        ),
    )
    if order is None:
        return HandlerResult.ignored("Refund for an unknown order", event)

    refund_id = clean_str(refund.get("id"))
    refund_status = clean_str(refund.get("status"))
    if refund_status is None and charge.get("refunded"):
        refund_status = "succeeded"
    reason = clean_str(refund.get("reason"))
    refunded_minor = to_int(charge.get("amount_refunded"))
    if refunded_minor is None:
        refunded_minor = to_int(refund.get("amount"))
    amount_refunded = to_major_units(refunded_minor)
    currency = currency_of(refund) or currency_of(charge)
    refund_amount = to_major_units(refund.get("amount")) or amount_refunded

    if refund_status in _UNSETTLED_REFUND_STATUSES:
        payment_status = None
    elif is_full_refund(charge, refunded_minor):
        payment_status = PaymentStatus.REFUNDED.value
    else:
        payment_status = PaymentStatus.PARTIALLY_REFUNDED.value

    bookkeeping = refund_amount_fields(
        amount_refunded,
        refund_id,
        refund_status,
        reason,
        unix_to_iso(refund.get("created")) or unix_to_iso(event.created),
    )
    outcome = PaymentOutcome(
        payment_status=payment_status,
        occurred_at=event.occurred_at,
        journal=journal_entry(
            event,
            f"Refund {refund_id}" if refund_id else "Refund",
            refund_message(refund_amount, currency, reason, refund_status),
            amount=refund_amount,
            currency=currency,
        ),
        fields=bookkeeping,
        invoice_fields=bookkeeping,
    )
    result = apply_payment_outcome(ctx, order, outcome, metadata=metadata)
    logger.info(
        "Refund applied",
        extra={
            "order_id": result.order_id,
            "refund_id": refund_id,
            "refund_status": refund_status,
            "payment_status": result.payment_status,
        },
    )
    resource_type = "refund" if refund_id else "charge"
    return order_result(result, resource_type, refund_id or charge_id, "Refund")
