"""Checkout session handlers.

``checkout.session.completed`` is the richest event: it carries the cart,
the totals, the customer and the shipping choice, so it is the one that
builds (or fills in) the full order snapshot. ``checkout.session.expired``
either expires an existing order or records an expired cart for recovery.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from apps.payment_webhook.events.base import (
    HandlerResult,
    HandlerStatus,
    card_details,
    has_street_address,
    journal_entry,
    latest_charge,
    order_result,
    payment_intent_snapshot,
    shipping_address_doc,
    shipping_details,
)
from apps.payment_webhook.events.fulfillment import run_paid_order_actions
from apps.payment_webhook.reconciliation.cart import build_cart
from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.reconciliation.customers import upsert_customer_profile
from apps.payment_webhook.reconciliation.diagnostics import (
    FailureDiagnostics,
    build_failure_diagnostics,
)
from apps.payment_webhook.reconciliation.enrichment import enrich_cart
from apps.payment_webhook.reconciliation.financials import (
    gateway_totals_from_session,
    overrides_from_metadata,
    reconcile_totals,
    resolve_shipping_selection,
)
from apps.payment_webhook.reconciliation.helpers import (
    as_dict,
    clean_str,
    compact,
    first_match,
    format_iso,
    merge_metadata,
    metadata_entries,
    normalize_email,
    ref_id,
    slugify,
    to_major_units,
    unix_to_iso,
)
from apps.payment_webhook.reconciliation.orders import (
    PaymentOutcome,
    apply_payment_outcome,
    generate_order_number,
)
from apps.payment_webhook.reconciliation.resolver import (
    InvoiceKeys,
    OrderKeys,
    resolve_invoice,
    resolve_order,
    resolve_payment_link,
    resolve_quote,
)
from apps.payment_webhook.reconciliation.status import (
    INVOICE_STATUS_CHANGED_AT,
    INVOICE_STATUS_MACHINE,
    PaymentStatus,
    decide_document_status,
    merge_failure_diagnostics,
)
from apps.payment_webhook.reconciliation.upsert import DEFAULT_JOURNAL_FIELD, upsert
from apps.payment_webhook.schemas import GatewayEvent
from apps.payment_webhook.store.query import DocumentQuery, FieldMatch

logger = logging.getLogger(__name__)

EXPIRED_FAILURE_CODE = "checkout.session.expired"

PAID_CHECKOUT_PAYMENT_STATUSES = frozenset({"paid", "succeeded", "complete", "no_payment_required"})
CANCELLED_CHECKOUT_PAYMENT_STATUSES = frozenset({"canceled", "cancelled"})
FAILED_CHECKOUT_PAYMENT_STATUSES = frozenset(
    {
        "failed",
        "requires_payment_method",
        "requires_action",
        "requires_customer_action",
        "requires_source",
        "requires_source_action",
        "requires_confirmation",
    }
)


def checkout_payment_status(
    session: Mapping[str, Any], payment_intent: Mapping[str, Any] | None = None
) -> tuple[str, bool]:
    """Normalize a session's payment status.

    Returns:
        Tuple of (payment status, requires_capture)

    Example:
        >>> checkout_payment_status({"payment_status": "no_payment_required"})
        ('paid', False)
    """
    payment_intent = payment_intent or {}
    session_status = (clean_str(session.get("status")) or "").lower()
    intent_status = (clean_str(payment_intent.get("status")) or "").lower()
    raw = (clean_str(session.get("payment_status")) or intent_status).lower()

    if raw in PAID_CHECKOUT_PAYMENT_STATUSES or intent_status == "succeeded":
        return PaymentStatus.PAID.value, False
    if session_status == "expired":
        return PaymentStatus.EXPIRED.value, False
    if raw in CANCELLED_CHECKOUT_PAYMENT_STATUSES:
        return PaymentStatus.CANCELLED.value, False
    if raw in FAILED_CHECKOUT_PAYMENT_STATUSES:
        return PaymentStatus.FAILED.value, False
    return PaymentStatus.PENDING.value, intent_status == "requires_capture"


def _customer_email(session: Mapping[str, Any]) -> str | None:
    details = as_dict(session.get("customer_details"))
    return normalize_email(details.get("email") or session.get("customer_email"))


def _expired_cart(ctx: ReconciliationContext, session_id: str) -> dict[str, Any] | None:
    hits = ctx.store.fetch(
        DocumentQuery(("expiredCart",), (FieldMatch("stripeSessionId", (session_id,)),))
    )
    return hits[0] if hits else None


# ============================================================================
# Completed
# ============================================================================


def _link_quote_and_payment_link(
    ctx: ReconciliationContext,
    session: Mapping[str, Any],
    metadata: Mapping[str, Any],
    order_id: str,
) -> dict[str, Any]:
    refs: dict[str, Any] = {}
    order_ref = {"_type": "reference", "_ref": order_id}
    quote = resolve_quote(ctx, metadata, ref_id(session.get("quote")))
    if quote is not None:
        ctx.store.patch(quote["_id"]).set({"orderRef": order_ref}).commit()
        refs["quoteRef"] = {"_type": "reference", "_ref": quote["_id"]}
    link = resolve_payment_link(ctx, metadata, ref_id(session.get("payment_link")))
    if link is not None:
        ctx.store.patch(link["_id"]).set({"lastOrderRef": order_ref}).commit()
        refs["paymentLinkRef"] = {"_type": "reference", "_ref": link["_id"]}
    if refs:
        ctx.store.patch(order_id).set(refs).commit()
    return refs


def mark_expired_cart_recovered(
    ctx: ReconciliationContext, event: GatewayEvent, session_id: str | None, order_id: str
) -> str | None:
    """Flag a previously expired cart as recovered by ``order_id``."""
    if not session_id:
        return None
    cart = _expired_cart(ctx, session_id)
    if cart is None:
        return None
    upsert(
        ctx,
        "expiredCart",
        cart,
        {
            "status": "recovered",
            "recoveredAt": format_iso(ctx.now()),
            "orderRef": {"_type": "reference", "_ref": order_id},
        },
        journal=journal_entry(event, "Checkout recovered", status="recovered"),
        journal_field=DEFAULT_JOURNAL_FIELD,
    )
    logger.info("Expired cart recovered", extra={"cart_id": cart["_id"], "order_id": order_id})
    return str(cart["_id"])


def handle_checkout_completed(event: GatewayEvent, ctx: ReconciliationContext) -> HandlerResult:
    """Create or complete the order for a finished checkout session."""
    session = event.payload
    session_id = clean_str(session.get("id"))
    if not session_id:
        return HandlerResult.ignored("Checkout session without id", event)

    payment_intent = (
        payment_intent_snapshot(ctx, session.get("payment_intent"))
        if session.get("payment_intent")
        else {}
    )
    metadata = merge_metadata(
        as_dict(session.get("metadata")), as_dict(payment_intent.get("metadata"))
    )
    payment_intent_id = clean_str(payment_intent.get("id"))
    charge = latest_charge(ctx, payment_intent)
    payment_status, requires_capture = checkout_payment_status(session, payment_intent)

    order = resolve_order(
        ctx,
        OrderKeys(
            metadata=metadata,
            session_id=session_id,
            payment_intent_id=payment_intent_id,
            charge_id=clean_str(charge.get("id")),
            primary_field="stripeSessionId",
            primary_id=session_id,
        ),
    )

    line_items = ctx.enrich("line_items", lambda gw: gw.list_checkout_line_items(session_id))
    if line_items is None:
        line_items = as_dict(session.get("line_items")).get("data")
    cart, cart_totals = enrich_cart(ctx, build_cart(line_items, metadata, scope=session_id))
    selection = resolve_shipping_selection(ctx, session, metadata)
    totals = reconcile_totals(
        gateway_totals_from_session(session),
        cart_totals,
        overrides_from_metadata(metadata),
        live_shipping=selection.amount if selection.amount_source == "rate_lookup" else None,
    )

    customer_details = as_dict(session.get("customer_details"))
    email = _customer_email(session)
    shipping = shipping_details(session)
    if not shipping and as_dict(customer_details.get("address")):
        shipping = customer_details
    customer_name = (
        clean_str(shipping.get("name"))
        or first_match(metadata, "customer_name")
        or clean_str(customer_details.get("name"))
        or clean_str(as_dict(charge.get("billing_details")).get("name"))
        or email
    )
    currency = clean_str(session.get("currency")) or clean_str(payment_intent.get("currency"))

    customer_id = upsert_customer_profile(
        ctx,
        email=email,
        name=clean_str(customer_details.get("name")) or customer_name,
        phone=clean_str(customer_details.get("phone")),
        address=as_dict(customer_details.get("address")) or as_dict(shipping.get("address")),
        gateway_customer_id=ref_id(session.get("customer")),
        user_id=first_match(metadata, "user_id"),
        metadata=metadata,
    )

    fields: dict[str, Any] = {
        "stripeSource": "checkout.session",
        "stripeSessionId": session_id,
        "stripeCheckoutStatus": clean_str(session.get("status")),
        "stripeCheckoutMode": clean_str(session.get("mode")),
        "stripePaymentIntentStatus": clean_str(payment_intent.get("status")),
        "paymentIntentId": payment_intent_id,
        "stripeCustomerId": ref_id(session.get("customer")),
        "clientReferenceId": clean_str(session.get("client_reference_id")),
        "customerName": customer_name,
        "customerEmail": email,
        "currency": currency.upper() if currency else None,
        "cart": [item.to_document() for item in cart] or None,
        "shippingAddress": shipping_address_doc(shipping, email, customer_details.get("phone")),
        "shippingCarrier": selection.carrier,
        "selectedService": (
            selection.to_document()
            if selection.amount is not None or selection.service
            else None
        ),
        "userId": first_match(metadata, "user_id"),
        "customerRef": {"_type": "reference", "_ref": customer_id} if customer_id else None,
        "metadata": metadata_entries(metadata) or None,
        **totals.to_document(),
        **card_details(charge),
    }
    if cart_totals.shipping is not None:
        fields.update(cart_totals.shipping.to_document())

    failure = None
    if payment_status == PaymentStatus.FAILED.value:
        failure = build_failure_diagnostics(payment_intent, charge)

    order_number = clean_str((order or {}).get("orderNumber")) or generate_order_number(
        ctx, metadata, session_id
    )
    outcome = PaymentOutcome(
        payment_status=payment_status,
        occurred_at=event.occurred_at,
        journal=journal_entry(
            event,
            "Checkout completed",
            f"Checkout session {session_id} completed",
            amount=totals.total,
            currency=currency,
        ),
        fields=compact(fields),
        invoice_fields=compact(
            {
                "customerEmail": email,
                "paymentIntentId": payment_intent_id,
                "stripeSessionId": session_id,
                "customerRef": fields["customerRef"],
            }
        ),
        failure=failure,
        has_shipping_address=has_street_address(shipping),
        requires_capture=requires_capture,
    )
    result = apply_payment_outcome(
        ctx,
        order,
        outcome,
        natural_key=session_id,
        set_if_missing={
            "orderNumber": order_number,
            "slug": {"_type": "slug", "current": slugify(order_number)},
            "createdAt": format_iso(event.occurred_at),
        },
        metadata=metadata,
    )

    mark_expired_cart_recovered(ctx, event, session_id, result.order_id)
    _link_quote_and_payment_link(ctx, session, metadata, result.order_id)
    run_paid_order_actions(ctx, result)
    return order_result(result, "checkout.session", session_id, "Checkout completed")


# ============================================================================
# Expired
# ============================================================================


def expired_message(session: Mapping[str, Any]) -> str:
    """Readable failure message for an expired checkout.

    Example:
        >>> expired_message({"id": "cs_1", "customer_email": "a@b.co"})
        'Checkout session expired before payment was completed. Customer: a@b.co. (session cs_1)'
    """
    message = "Checkout session expired before payment was completed."
    email = _customer_email(session)
    if email:
        message = f"{message} Customer: {email}."
    expires_at = unix_to_iso(session.get("expires_at"))
    if expires_at:
        message = f"{message} Expired at {expires_at}."
    return f"{message} (session {session.get('id')})"


def _expire_unlinked_invoice(
    ctx: ReconciliationContext, event: GatewayEvent, metadata: Mapping[str, Any], message: str
) -> str | None:
    invoice = resolve_invoice(ctx, InvoiceKeys(metadata=metadata))
    if invoice is None:
        return None
    decision = decide_document_status(
        INVOICE_STATUS_MACHINE,
        invoice,
        "status",
        INVOICE_STATUS_CHANGED_AT,
        PaymentStatus.EXPIRED.value,
        event.occurred_at,
    )
    if not decision.apply:
        return str(invoice["_id"])
    fields = {
        "status": decision.status,
        INVOICE_STATUS_CHANGED_AT: format_iso(event.occurred_at),
        "stripeInvoiceStatus": EXPIRED_FAILURE_CODE,
        "stripeLastSyncedAt": format_iso(ctx.now()),
        **merge_failure_diagnostics(invoice, EXPIRED_FAILURE_CODE, message),
    }
    journal = journal_entry(event, "Checkout expired", message)
    upsert(ctx, "invoice", invoice, fields, journal=journal)
    return str(invoice["_id"])


def record_expired_cart(
    ctx: ReconciliationContext,
    event: GatewayEvent,
    session: Mapping[str, Any],
    metadata: Mapping[str, Any],
    message: str,
) -> str:
    """Upsert the expired-cart record for a session that never became an order."""
    session_id = str(session["id"])
    email = _customer_email(session)
    total = to_major_units(session.get("amount_total"))
    currency = clean_str(session.get("currency"))
    cart = build_cart(as_dict(session.get("line_items")).get("data"), metadata, scope=session_id)
    fields = compact(
        {
            "stripeSessionId": session_id,
            "clientReferenceId": clean_str(session.get("client_reference_id")),
            "status": "expired",
            "paymentStatus": clean_str(session.get("payment_status")) or "pending",
            "customerEmail": email,
            "customerName": clean_str(as_dict(session.get("customer_details")).get("name"))
            or first_match(metadata, "customer_name")
            or email,
            "stripeCustomerId": ref_id(session.get("customer")),
            "totalAmount": total,
            "currency": currency.upper() if currency else None,
            "metadata": metadata_entries(metadata),
            "cart": [item.to_document() for item in cart],
            "paymentFailureCode": EXPIRED_FAILURE_CODE,
            "paymentFailureMessage": message,
            "expiredAt": unix_to_iso(session.get("expires_at")) or format_iso(ctx.now()),
        }
    )
    result = upsert(
        ctx,
        "expiredCart",
        _expired_cart(ctx, session_id),
        fields,
        natural_key=session_id,
        set_if_missing={"createdAt": unix_to_iso(session.get("created")) or format_iso(ctx.now())},
        journal=journal_entry(
            event,
            "Checkout expired",
            message,
            status="expired",
            amount=total,
            currency=currency,
        ),
        journal_field=DEFAULT_JOURNAL_FIELD,
    )
    return result.document_id


def handle_checkout_expired(event: GatewayEvent, ctx: ReconciliationContext) -> HandlerResult:
    """Expire the session's order (and invoice), or record an expired cart."""
    session = event.payload
    session_id = clean_str(session.get("id"))
    if not session_id:
        return HandlerResult.ignored("Checkout session without id", event)
    metadata = merge_metadata(as_dict(session.get("metadata")))
    message = expired_message(session)

    order = resolve_order(
        ctx,
        OrderKeys(
            metadata=metadata,
            session_id=session_id,
            payment_intent_id=ref_id(session.get("payment_intent")),
            primary_field="stripeSessionId",
            primary_id=session_id,
        ),
    )
    if order is None:
        invoice_id = _expire_unlinked_invoice(ctx, event, metadata, message)
        cart_id = record_expired_cart(ctx, event, session, metadata, message)
        return HandlerResult(
            HandlerStatus.PROCESSED,
            f"Checkout expired without order; expired cart {cart_id} recorded",
            resource_type="checkout.session",
            resource_id=session_id,
            invoice_id=invoice_id,
            document_ids=[cart_id],
        )

    currency = clean_str(session.get("currency"))
    outcome = PaymentOutcome(
        payment_status=PaymentStatus.EXPIRED.value,
        occurred_at=event.occurred_at,
        journal=journal_entry(
            event,
            "Checkout expired",
            message,
            amount=to_major_units(session.get("amount_total")),
            currency=currency,
        ),
        invoice_fields={"stripeInvoiceStatus": EXPIRED_FAILURE_CODE},
        failure=FailureDiagnostics(EXPIRED_FAILURE_CODE, message),
    )
    result = apply_payment_outcome(ctx, order, outcome, metadata=metadata)
    return order_result(result, "checkout.session", session_id, "Checkout expired")
