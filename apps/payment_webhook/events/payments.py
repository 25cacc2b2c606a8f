"""Payment intent and charge handlers."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from apps.payment_webhook.events.base import (
    HandlerResult,
    card_details,
    currency_of,
    has_street_address,
    journal_entry,
    latest_charge,
    order_has_street_address,
    order_result,
    payment_intent_snapshot,
    shipping_address_doc,
    shipping_details,
)
from apps.payment_webhook.events.fulfillment import run_paid_order_actions
from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.reconciliation.diagnostics import build_failure_diagnostics
from apps.payment_webhook.reconciliation.helpers import (
    as_dict,
    clean_str,
    compact,
    first_match,
    format_iso,
    merge_metadata,
    normalize_email,
    ref_id,
    slugify,
    to_major_units,
)
from apps.payment_webhook.reconciliation.orders import (
    OutcomeResult,
    PaymentOutcome,
    apply_payment_outcome,
    generate_order_number,
)
from apps.payment_webhook.reconciliation.resolver import OrderKeys, resolve_order
from apps.payment_webhook.reconciliation.status import PaymentStatus
from apps.payment_webhook.schemas import GatewayEvent

logger = logging.getLogger(__name__)

# Intent statuses that mean a "failure" event is already superseded
_INTENT_STATUS_OVERRIDES = {
    "succeeded": PaymentStatus.PAID.value,
    "processing": PaymentStatus.PENDING.value,
    "requires_capture": PaymentStatus.PENDING.value,
}


def _intent_keys(
    payment_intent: Mapping[str, Any],
    metadata: Mapping[str, Any],
    *,
    session_id: str | None = None,
    charge_id: str | None = None,
) -> OrderKeys:
    payment_intent_id = clean_str(payment_intent.get("id"))
    return OrderKeys(
        metadata=metadata,
        session_id=session_id,
        payment_intent_id=payment_intent_id,
        charge_id=charge_id,
        primary_field="paymentIntentId",
        primary_id=payment_intent_id,
    )


# ============================================================================
# Payment Intent Succeeded
# ============================================================================


def handle_payment_succeeded(event: GatewayEvent, ctx: ReconciliationContext) -> HandlerResult:
    """Mark the order paid, creating a minimal order for intents without a checkout."""
    payment_intent = event.payload
    payment_intent_id = clean_str(payment_intent.get("id"))
    if not payment_intent_id:
        return HandlerResult.ignored("Payment intent without id", event)
    metadata = merge_metadata(as_dict(payment_intent.get("metadata")))
    charge = latest_charge(ctx, payment_intent)
    keys = _intent_keys(payment_intent, metadata, charge_id=clean_str(charge.get("id")))
    order = resolve_order(ctx, keys)

    session_id: str | None = None
    if order is None:
        # The checkout event may not have arrived yet; key on its session when one exists
        session = ctx.enrich(
            "checkout_session", lambda gw: gw.find_checkout_session(payment_intent_id)
        )
        session_id = clean_str((session or {}).get("id"))
        if session_id:
            order = resolve_order(ctx, OrderKeys(metadata=metadata, session_id=session_id))

    shipping = shipping_details(payment_intent)
    email = normalize_email(
        payment_intent.get("receipt_email")
        or as_dict(charge.get("billing_details")).get("email")
        or first_match(metadata, "customer_email")
    )
    currency = currency_of(payment_intent)
    amount = to_major_units(payment_intent.get("amount_received")) or to_major_units(
        payment_intent.get("amount")
    )
    requires_capture = clean_str(payment_intent.get("status")) == "requires_capture"

    fields = compact(
        {
            "paymentIntentId": payment_intent_id,
            "stripePaymentIntentStatus": clean_str(payment_intent.get("status")),
            "stripeCustomerId": ref_id(payment_intent.get("customer")),
            "currency": currency,
            **card_details(charge),
        }
    )
    create_fields: dict[str, Any] = {}
    if order is None:
        order_number = generate_order_number(ctx, metadata, session_id)
        create_fields = compact(
            {
                "stripeSource": "payment_intent",
                "stripeSessionId": session_id or payment_intent_id,
                "orderNumber": order_number,
                "slug": {"_type": "slug", "current": slugify(order_number)},
                "customerEmail": email,
                "customerName": clean_str(shipping.get("name"))
                or first_match(metadata, "customer_name"),
                "shippingAddress": shipping_address_doc(shipping, email),
                "totalAmount": amount,
                "amountSubtotal": amount,
                "createdAt": format_iso(event.occurred_at),
            }
        )

    outcome = PaymentOutcome(
        payment_status=(
            PaymentStatus.PENDING.value if requires_capture else PaymentStatus.PAID.value
        ),
        occurred_at=event.occurred_at,
        journal=journal_entry(
            event,
            "Payment authorized" if requires_capture else "Payment succeeded",
            f"Payment intent {payment_intent_id}",
            amount=amount,
            currency=currency,
        ),
        fields=fields,
        invoice_fields={"paymentIntentId": payment_intent_id},
        has_shipping_address=has_street_address(shipping) or order_has_street_address(order),
        requires_capture=requires_capture,
    )
    result = apply_payment_outcome(
        ctx,
        order,
        outcome,
        natural_key=session_id or payment_intent_id,
        set_if_missing=create_fields,
        metadata=metadata,
    )
    run_paid_order_actions(ctx, result)
    return order_result(result, "payment_intent", payment_intent_id, "Payment succeeded")


# ============================================================================
# Failures and Cancellation
# ============================================================================


def record_payment_failure(
    event: GatewayEvent,
    ctx: ReconciliationContext,
    payment_intent: Mapping[str, Any],
    *,
    charge: Mapping[str, Any] | None = None,
    metadata: Mapping[str, Any] | None = None,
    session_id: str | None = None,
) -> OutcomeResult | None:
    """Mark the order for ``payment_intent`` failed, with diagnostics.

    An intent that has since succeeded or is still processing supersedes the
    failure. Returns None when no order matches; failures never create one.
    """
    charge = charge or latest_charge(ctx, payment_intent)
    metadata = merge_metadata(
        metadata, as_dict(payment_intent.get("metadata")), as_dict(charge.get("metadata"))
    )
    order = resolve_order(
        ctx,
        _intent_keys(
            payment_intent, metadata, session_id=session_id, charge_id=clean_str(charge.get("id"))
        ),
    )
    if order is None:
        return None

    intent_status = clean_str(payment_intent.get("status")) or ""
    status = _INTENT_STATUS_OVERRIDES.get(intent_status, PaymentStatus.FAILED.value)
    diagnostics = build_failure_diagnostics(payment_intent, charge)
    outcome = PaymentOutcome(
        payment_status=status,
        occurred_at=event.occurred_at,
        journal=journal_entry(
            event,
            "Payment failed",
            diagnostics.message or diagnostics.code,
            amount=to_major_units(payment_intent.get("amount") or charge.get("amount")),
            currency=currency_of(payment_intent) or currency_of(charge),
        ),
        fields=compact(
            {
                "stripePaymentIntentStatus": intent_status or None,
                "paymentIntentId": clean_str(payment_intent.get("id")),
                **card_details(charge),
            }
        ),
        failure=diagnostics if status == PaymentStatus.FAILED.value else None,
        requires_capture=intent_status == "requires_capture",
    )
    return apply_payment_outcome(ctx, order, outcome, metadata=metadata)


def handle_payment_failed(event: GatewayEvent, ctx: ReconciliationContext) -> HandlerResult:
    """Record a failed payment with diagnostics. Never creates an order.

    Handles ``payment_intent.payment_failed``, ``charge.failed`` and
    ``checkout.session.async_payment_failed``.
    """
    obj = event.payload
    object_type = clean_str(obj.get("object"))
    session_id: str | None = None
    charge: dict[str, Any] = {}
    if object_type == "checkout.session":
        session_id = clean_str(obj.get("id"))
        payment_intent = payment_intent_snapshot(ctx, obj.get("payment_intent"))
    elif object_type == "charge":
        charge = obj
        payment_intent = payment_intent_snapshot(ctx, obj.get("payment_intent"))
    else:
        payment_intent = obj

    result = record_payment_failure(
        event,
        ctx,
        payment_intent,
        charge=charge,
        metadata=as_dict(obj.get("metadata")),
        session_id=session_id,
    )
    if result is None:
        logger.info(
            "Payment failure for an unknown order", extra={"object_id": clean_str(obj.get("id"))}
        )
        return HandlerResult.ignored("Payment failed for an unknown order", event)
    resource_type = object_type or "payment_intent"
    return order_result(result, resource_type, clean_str(obj.get("id")), "Payment failed")


def handle_payment_canceled(event: GatewayEvent, ctx: ReconciliationContext) -> HandlerResult:
    """Cancel the order for a canceled payment intent, keeping earlier diagnostics."""
    payment_intent = event.payload
    payment_intent_id = clean_str(payment_intent.get("id"))
    metadata = merge_metadata(as_dict(payment_intent.get("metadata")))
    order = resolve_order(ctx, _intent_keys(payment_intent, metadata))
    if order is None:
        return HandlerResult.ignored("Payment canceled for an unknown order", event)

    diagnostics = build_failure_diagnostics(payment_intent)
    reason = clean_str(payment_intent.get("cancellation_reason"))
    outcome = PaymentOutcome(
        payment_status=PaymentStatus.CANCELLED.value,
        occurred_at=event.occurred_at,
        journal=journal_entry(
            event,
            "Payment canceled",
            f"Cancellation reason: {reason}" if reason else None,
            amount=to_major_units(payment_intent.get("amount")),
            currency=currency_of(payment_intent),
        ),
        fields=compact(
            {
                "stripePaymentIntentStatus": clean_str(payment_intent.get("status")),
                "paymentIntentId": payment_intent_id,
            }
        ),
        failure=diagnostics,
    )
    result = apply_payment_outcome(ctx, order, outcome, metadata=metadata)
    return order_result(result, "payment_intent", payment_intent_id, "Payment canceled")


# ============================================================================
# Charges
# ============================================================================


def handle_charge_succeeded(event: GatewayEvent, ctx: ReconciliationContext) -> HandlerResult:
    """Record charge display fields; a captured charge also marks the order paid."""
    charge = event.payload
    charge_id = clean_str(charge.get("id"))
    payment_intent_id = ref_id(charge.get("payment_intent"))
    metadata = merge_metadata(as_dict(charge.get("metadata")))
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
        return HandlerResult.ignored("Charge for an unknown order", event)

    captured = charge.get("captured") is not False and charge.get("paid") is not False
    outcome = PaymentOutcome(
        payment_status=PaymentStatus.PAID.value if captured else PaymentStatus.PENDING.value,
        occurred_at=event.occurred_at,
        journal=journal_entry(
            event,
            "Charge captured" if event.type == "charge.captured" else "Charge succeeded",
            f"Charge {charge_id}",
            amount=to_major_units(charge.get("amount_captured") or charge.get("amount")),
            currency=currency_of(charge),
        ),
        fields=compact({"paymentIntentId": payment_intent_id, **card_details(charge)}),
        has_shipping_address=order_has_street_address(order),
        requires_capture=not captured,
    )
    result = apply_payment_outcome(ctx, order, outcome, metadata=metadata)
    run_paid_order_actions(ctx, result)
    return order_result(result, "charge", charge_id, "Charge succeeded")
