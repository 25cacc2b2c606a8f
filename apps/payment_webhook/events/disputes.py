"""Dispute handlers. Disputes never create orders."""

from __future__ import annotations

import logging
from typing import Any

from apps.payment_webhook.events.base import (
    HandlerResult,
    currency_of,
    journal_entry,
    order_has_street_address,
    order_result,
)
from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.reconciliation.helpers import (
    as_dict,
    clean_str,
    compact,
    humanize,
    merge_metadata,
    ref_id,
    to_major_units,
)
from apps.payment_webhook.reconciliation.orders import PaymentOutcome, apply_payment_outcome
from apps.payment_webhook.reconciliation.resolver import OrderKeys, resolve_order
from apps.payment_webhook.reconciliation.status import PaymentStatus
from apps.payment_webhook.schemas import GatewayEvent

logger = logging.getLogger(__name__)

WON_DISPUTE_STATUSES = frozenset({"won", "warning_closed"})
LOST_DISPUTE_STATUSES = frozenset({"lost"})


def dispute_payment_status(event_type: str, dispute_status: str | None) -> tuple[str | None, bool]:
    """Payment status a dispute event implies.

    Returns:
        Tuple of (payment status or None, preserve_existing_terminal_status)

    Examples:
        >>> dispute_payment_status("charge.dispute.closed", "lost")
        ('cancelled', True)
        >>> dispute_payment_status("charge.dispute.funds_reinstated", "won")
        ('paid', False)
    """
    if event_type == "charge.dispute.funds_reinstated":
        return PaymentStatus.PAID.value, False
    if event_type == "charge.dispute.closed":
        if dispute_status in WON_DISPUTE_STATUSES:
            return PaymentStatus.PAID.value, True
        if dispute_status in LOST_DISPUTE_STATUSES:
            return PaymentStatus.CANCELLED.value, True
        return None, True
    if dispute_status in WON_DISPUTE_STATUSES:
        return PaymentStatus.PAID.value, True
    if dispute_status in LOST_DISPUTE_STATUSES:
        return PaymentStatus.CANCELLED.value, True
    return PaymentStatus.DISPUTED.value, True


def handle_dispute(event: GatewayEvent, ctx: ReconciliationContext) -> HandlerResult:
    """Apply a dispute lifecycle event to its order."""
    dispute = event.payload
    dispute_id = clean_str(dispute.get("id"))
    charge_ref = dispute.get("charge")
    charge: dict[str, Any] = as_dict(charge_ref)
    charge_id = ref_id(charge_ref)
    payment_intent_id = ref_id(dispute.get("payment_intent")) or ref_id(
        charge.get("payment_intent")
    )
    metadata = merge_metadata(as_dict(dispute.get("metadata")), as_dict(charge.get("metadata")))

    order = resolve_order(
        ctx,
        OrderKeys(
            metadata=metadata,
            payment_intent_id=payment_intent_id,
            charge_id=charge_id,
            primary_field="chargeId",
            primary_id=charge_id,
        ),
    )
    if order is None:
        logger.warning("Dispute for an unknown order", extra={"charge_id": charge_id})
        return HandlerResult.ignored("Dispute for an unknown order", event)

    dispute_status = clean_str(dispute.get("status"))
    reason = clean_str(dispute.get("reason"))
    payment_status, preserve = dispute_payment_status(event.type, dispute_status)
    amount = to_major_units(dispute.get("amount"))
    fields = compact(
        {
            "disputeId": dispute_id,
            "disputeStatus": dispute_status,
            "disputeReason": reason,
            "disputeAmount": amount,
        }
    )
    message = " • ".join(
        part
        for part in (
            f"Status: {humanize(dispute_status)}" if dispute_status else None,
            f"Reason: {humanize(reason)}" if reason else None,
        )
        if part
    )
    outcome = PaymentOutcome(
        payment_status=payment_status,
        occurred_at=event.occurred_at,
        journal=journal_entry(
            event,
            f"Dispute {humanize(event.type.rsplit('.', 1)[-1])}",
            message or None,
            amount=amount,
            currency=currency_of(dispute),
        ),
        fields=fields,
        invoice_fields=fields,
        preserve_existing_terminal_status=preserve,
        has_shipping_address=order_has_street_address(order),
    )
    result = apply_payment_outcome(ctx, order, outcome, metadata=metadata)
    return order_result(result, "dispute", dispute_id, "Dispute")
