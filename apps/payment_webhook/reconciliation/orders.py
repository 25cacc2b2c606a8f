"""Applying payment outcomes to orders and their invoices.

Every handler that changes a payment status funnels through
``apply_payment_outcome``. It runs the status machine, splits the write
into fields that are always safe to refresh and fields gated by the status
decision, journals the event, then mirrors the outcome onto the linked
invoice (creating it lazily on the first paid outcome).
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any

from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.reconciliation.diagnostics import FailureDiagnostics
from apps.payment_webhook.reconciliation.helpers import (
    ORDER_NUMBER_DIGITS,
    ORDER_NUMBER_PREFIX,
    as_dict,
    clean_str,
    compact,
    first_match,
    format_iso,
    order_number_from_session_id,
    sanitize_order_number,
    to_date_string,
)
from apps.payment_webhook.reconciliation.resolver import (
    InvoiceKeys,
    order_number_taken,
    resolve_invoice,
)
from apps.payment_webhook.reconciliation.status import (
    INVOICE_STATUS_CHANGED_AT,
    INVOICE_STATUS_MACHINE,
    PAYMENT_STATUS_CHANGED_AT,
    PAYMENT_STATUS_FORCED_AT,
    PAYMENT_STATUS_MACHINE,
    DecisionReason,
    PaymentStatus,
    StatusDecision,
    advance_fulfillment,
    decide_document_status,
    derive_invoice_status,
    derive_order_status,
    fulfillment_for_payment,
    merge_failure_diagnostics,
)
from apps.payment_webhook.reconciliation.upsert import (
    DEFAULT_JOURNAL_FIELD,
    ORDER_JOURNAL_FIELD,
    JournalEntry,
    upsert,
)

logger = logging.getLogger(__name__)

ORDER_NUMBER_ATTEMPTS = 8


# ============================================================================
# Order Numbers
# ============================================================================


def generate_order_number(
    ctx: ReconciliationContext,
    metadata: Mapping[str, Any] | None,
    session_id: str | None,
    rng: Callable[[int, int], int] = random.randint,
) -> str:
    """Pick the business number for a new order.

    Precedence: metadata order number, metadata invoice number, the session
    id's trailing digits, then a random number checked for uniqueness.
    """
    for candidate in (
        sanitize_order_number(first_match(metadata, "order_number")),
        sanitize_order_number(first_match(metadata, "invoice_number")),
        order_number_from_session_id(session_id),
    ):
        if candidate:
            return candidate

    upper = 10**ORDER_NUMBER_DIGITS - 1
    for _ in range(ORDER_NUMBER_ATTEMPTS):
        candidate = f"{ORDER_NUMBER_PREFIX}-{rng(0, upper):0{ORDER_NUMBER_DIGITS}d}"
        if not order_number_taken(ctx, candidate):
            return candidate
    fallback = int(ctx.now().timestamp() * 1000) % (upper + 1)
    logger.warning("Order number attempts exhausted; using time-derived number")
    return f"{ORDER_NUMBER_PREFIX}-{fallback:0{ORDER_NUMBER_DIGITS}d}"


# ============================================================================
# Outcome Application
# ============================================================================


@dataclass
class PaymentOutcome:
    """What one event implies for an order.

    Attributes:
        payment_status: Implied payment status, or None for a bookkeeping-only event
        occurred_at: Gateway event time, used for ordering
        journal: Journal entry recorded on the order (and invoice)
        fields: Fields refreshed on every delivery (data snapshots, refund bookkeeping)
        status_fields: Fields written only when the status decision applies
        invoice_fields: Fields mirrored onto the linked invoice
        failure: Failure diagnostics, written fill-if-empty
        force_failure: Overwrite existing diagnostics
        preserve_existing_terminal_status: False only for explicit reversals
        has_shipping_address: Drives the fulfillment ladder
        requires_capture: Authorized but not yet captured
    """

    payment_status: str | None
    occurred_at: datetime
    journal: JournalEntry | None = None
    fields: dict[str, Any] = field(default_factory=dict)
    status_fields: dict[str, Any] = field(default_factory=dict)
    invoice_fields: dict[str, Any] = field(default_factory=dict)
    failure: FailureDiagnostics | None = None
    force_failure: bool = False
    preserve_existing_terminal_status: bool = True
    has_shipping_address: bool = False
    requires_capture: bool = False


@dataclass
class OutcomeResult:
    order_id: str
    created: bool
    decision: StatusDecision | None
    order: dict[str, Any]
    invoice_id: str | None = None

    @property
    def payment_status(self) -> str | None:
        return self.decision.status if self.decision else self.order.get("paymentStatus")

    @property
    def became_paid(self) -> bool:
        return bool(
            self.decision
            and self.decision.changed
            and self.decision.status == PaymentStatus.PAID.value
        )


def _status_writes(
    order: Mapping[str, Any] | None, outcome: PaymentOutcome
) -> tuple[StatusDecision | None, dict[str, Any]]:
    if outcome.payment_status is None:
        return None, {}
    decision = decide_document_status(
        PAYMENT_STATUS_MACHINE,
        order,
        "paymentStatus",
        PAYMENT_STATUS_CHANGED_AT,
        outcome.payment_status,
        outcome.occurred_at,
        forced_at_field=PAYMENT_STATUS_FORCED_AT,
        preserve_existing_terminal_status=outcome.preserve_existing_terminal_status,
    )
    if not decision.apply:
        return decision, {}

    order = order or {}
    writes: dict[str, Any] = dict(outcome.status_fields)
    if decision.changed:
        writes["paymentStatus"] = decision.status
        writes[PAYMENT_STATUS_CHANGED_AT] = format_iso(outcome.occurred_at)
        if decision.reason is DecisionReason.FORCED:
            writes[PAYMENT_STATUS_FORCED_AT] = format_iso(outcome.occurred_at)
        order_status = derive_order_status(decision.status, clean_str(order.get("status")))
        if order_status:
            writes["status"] = order_status
    target = fulfillment_for_payment(
        decision.status,
        has_shipping_address=outcome.has_shipping_address,
        requires_capture=outcome.requires_capture,
    )
    fulfillment = advance_fulfillment(clean_str(order.get("fulfillmentStatus")), target)
    if fulfillment:
        writes["fulfillmentStatus"] = fulfillment
    if outcome.failure is not None and not outcome.failure.is_empty:
        writes.update(
            merge_failure_diagnostics(
                order,
                outcome.failure.code,
                outcome.failure.message,
                force=outcome.force_failure,
            )
        )
    return decision, writes


def apply_payment_outcome(
    ctx: ReconciliationContext,
    order: Mapping[str, Any] | None,
    outcome: PaymentOutcome,
    *,
    natural_key: str | None = None,
    create_only: Mapping[str, Any] | None = None,
    set_if_missing: Mapping[str, Any] | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> OutcomeResult:
    """Write ``outcome`` to ``order`` (creating it when None) and its invoice.

    Callers that must never create an order pass an existing document only.
    """
    decision, status_writes = _status_writes(order, outcome)
    fields = {**outcome.fields, **status_writes, "stripeLastSyncedAt": format_iso(ctx.now())}
    if decision is not None and outcome.journal is not None:
        journal = replace(outcome.journal, status=outcome.journal.status or decision.status)
    else:
        journal = outcome.journal
    result = upsert(
        ctx,
        "order",
        order,
        fields,
        natural_key=natural_key,
        create_only=create_only,
        set_if_missing=set_if_missing,
        journal=journal,
        journal_field=ORDER_JOURNAL_FIELD,
    )
    outcome_result = OutcomeResult(result.document_id, result.created, decision, result.document)
    outcome_result.invoice_id = sync_invoice_for_order(ctx, outcome_result, outcome, metadata)
    return outcome_result


# ============================================================================
# Invoices
# ============================================================================


def _invoice_line_items(order: Mapping[str, Any]) -> list[dict[str, Any]]:
    lines: list[dict[str, Any]] = []
    for item in order.get("cart") or []:
        if not isinstance(item, dict):
            continue
        line = compact(
            {
                "_type": "invoiceLineItem",
                "_key": item.get("_key"),
                "description": item.get("name"),
                "sku": item.get("sku"),
                "quantity": item.get("quantity"),
                "unitPrice": item.get("price"),
                "lineTotal": item.get("lineTotal"),
                "product": item.get("productRef"),
            }
        )
        lines.append(line)
    return lines


def create_invoice_for_order(
    ctx: ReconciliationContext, order: Mapping[str, Any], status: str
) -> str:
    """Create the billing record for a paid order and link it back."""
    order_id = str(order["_id"])
    number = clean_str(order.get("orderNumber"))
    document = compact(
        {
            "title": f"Invoice {number}" if number else None,
            "invoiceNumber": number,
            "orderNumber": number,
            "orderRef": {"_type": "reference", "_ref": order_id},
            "customerRef": order.get("customerRef"),
            "customerName": order.get("customerName"),
            "customerEmail": order.get("customerEmail"),
            "status": status,
            INVOICE_STATUS_CHANGED_AT: order.get(PAYMENT_STATUS_CHANGED_AT),
            "currency": order.get("currency"),
            "subtotal": order.get("amountSubtotal"),
            "tax": order.get("amountTax"),
            "shipping": order.get("amountShipping"),
            "discount": order.get("amountDiscount"),
            "total": order.get("totalAmount"),
            "amountPaid": order.get("totalAmount") if status == "paid" else None,
            "paymentIntentId": order.get("paymentIntentId"),
            "stripeSessionId": order.get("stripeSessionId"),
            "invoiceDate": to_date_string(ctx.now()),
            "lineItems": _invoice_line_items(order),
            "billTo": order.get("shippingAddress"),
        }
    )
    result = upsert(ctx, "invoice", None, document, natural_key=f"order:{order_id}")
    ctx.store.patch(order_id).set(
        {"invoiceRef": {"_type": "reference", "_ref": result.document_id}}
    ).commit()
    logger.info(
        "Invoice created for paid order",
        extra={"order_id": order_id, "invoice_id": result.document_id},
    )
    return result.document_id


def sync_invoice_for_order(
    ctx: ReconciliationContext,
    result: OutcomeResult,
    outcome: PaymentOutcome,
    metadata: Mapping[str, Any] | None = None,
) -> str | None:
    """Mirror an order outcome onto its invoice; create one on first payment."""
    order = result.order
    invoice = resolve_invoice(
        ctx,
        InvoiceKeys(
            metadata=metadata or {},
            invoice_ref=clean_str(as_dict(order.get("invoiceRef")).get("_ref")),
            payment_intent_id=clean_str(order.get("paymentIntentId")),
            order_id=result.order_id,
            order_number=clean_str(order.get("orderNumber")),
        ),
    )
    decision = result.decision
    invoice_status = derive_invoice_status(decision.status) if decision and decision.apply else None

    if invoice is None:
        if invoice_status == "paid":
            return create_invoice_for_order(ctx, order, invoice_status)
        return None

    fields: dict[str, Any] = dict(outcome.invoice_fields)
    if invoice_status:
        invoice_decision = decide_document_status(
            INVOICE_STATUS_MACHINE,
            invoice,
            "status",
            INVOICE_STATUS_CHANGED_AT,
            invoice_status,
            outcome.occurred_at,
            preserve_existing_terminal_status=outcome.preserve_existing_terminal_status,
        )
        if invoice_decision.changed:
            fields["status"] = invoice_decision.status
            fields[INVOICE_STATUS_CHANGED_AT] = format_iso(outcome.occurred_at)
        if invoice_decision.apply and outcome.failure is not None and not outcome.failure.is_empty:
            fields.update(
                merge_failure_diagnostics(
                    invoice,
                    outcome.failure.code,
                    outcome.failure.message,
                    force=outcome.force_failure,
                )
            )
    if not as_dict(order.get("invoiceRef")).get("_ref"):
        ctx.store.patch(result.order_id).set_if_missing(
            {"invoiceRef": {"_type": "reference", "_ref": invoice["_id"]}}
        ).commit()
    fields.setdefault("orderRef", {"_type": "reference", "_ref": result.order_id})
    journal = outcome.journal
    invoice_journal = replace(journal, scope=f"{journal.scope}:invoice") if journal else None
    upsert(
        ctx,
        "invoice",
        invoice,
        {key: value for key, value in fields.items() if key != "orderRef"},
        set_if_missing={"orderRef": fields["orderRef"]},
        journal=invoice_journal,
        journal_field=DEFAULT_JOURNAL_FIELD,
    )
    return str(invoice["_id"])


def refund_amount_fields(
    amount_refunded: Decimal | None,
    refund_id: str | None,
    refund_status: str | None,
    reason: str | None,
    refunded_at: str | None,
) -> dict[str, Any]:
    return compact(
        {
            "amountRefunded": amount_refunded,
            "lastRefundId": refund_id,
            "lastRefundStatus": refund_status,
            "lastRefundReason": reason,
            "lastRefundedAt": refunded_at,
        }
    )
