"""Gateway invoice sync.

Gateway invoices mirror onto existing invoice documents only; a miss is
ignored. A failed invoice payment also marks the linked order's payment.
"""

from __future__ import annotations

import logging
from typing import Any

from apps.payment_webhook.events.base import (
    HandlerResult,
    HandlerStatus,
    currency_of,
    journal_entry,
    payment_intent_snapshot,
)
from apps.payment_webhook.events.payments import record_payment_failure
from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.reconciliation.helpers import (
    as_dict,
    clean_str,
    compact,
    format_iso,
    merge_metadata,
    ref_id,
    to_date_string,
    to_major_units,
)
from apps.payment_webhook.reconciliation.resolver import InvoiceKeys, resolve_invoice
from apps.payment_webhook.reconciliation.status import (
    INVOICE_STATUS_CHANGED_AT,
    INVOICE_STATUS_MACHINE,
    InvoiceStatus,
    decide_document_status,
)
from apps.payment_webhook.reconciliation.upsert import upsert
from apps.payment_webhook.schemas import GatewayEvent

logger = logging.getLogger(__name__)

GATEWAY_INVOICE_STATUS_MAP: dict[str, str] = {
    "draft": InvoiceStatus.PENDING.value,
    "open": InvoiceStatus.PENDING.value,
    "unpaid": InvoiceStatus.PENDING.value,
    "paid": InvoiceStatus.PAID.value,
    "uncollectible": InvoiceStatus.CANCELLED.value,
    "void": InvoiceStatus.CANCELLED.value,
    "canceled": InvoiceStatus.CANCELLED.value,
}

_FAILURE_EVENT_TYPES = frozenset({"invoice.payment_failed", "invoice.marked_uncollectible"})


def map_invoice_status(gateway_status: str | None) -> str | None:
    """Invoice document status for a gateway invoice status, or None if unknown."""
    return GATEWAY_INVOICE_STATUS_MAP.get((gateway_status or "").lower())


def handle_invoice(event: GatewayEvent, ctx: ReconciliationContext) -> HandlerResult:
    """Mirror a gateway invoice onto its invoice document."""
    invoice = event.payload
    gateway_invoice_id = clean_str(invoice.get("id"))
    metadata = merge_metadata(as_dict(invoice.get("metadata")))
    payment_intent_ref = invoice.get("payment_intent")

    document = resolve_invoice(
        ctx,
        InvoiceKeys(
            metadata=metadata,
            gateway_invoice_id=gateway_invoice_id,
            invoice_number=clean_str(invoice.get("number")),
        ),
    )

    order_id: str | None = None
    if event.type in _FAILURE_EVENT_TYPES and payment_intent_ref:
        failure = record_payment_failure(
            event,
            ctx,
            payment_intent_snapshot(ctx, payment_intent_ref),
            metadata=metadata,
        )
        order_id = failure.order_id if failure else None
        if failure is not None and document is not None:
            document = ctx.store.get(document["_id"]) or document

    if document is None:
        if order_id:
            return HandlerResult(
                HandlerStatus.PROCESSED,
                "Invoice payment failure recorded on order; no invoice document",
                resource_type="invoice",
                resource_id=gateway_invoice_id,
                order_id=order_id,
            )
        logger.info(
            "Invoice event for an unknown invoice", extra={"invoice_id": gateway_invoice_id}
        )
        return HandlerResult.ignored("Invoice has no matching document", event)

    gateway_status = clean_str(invoice.get("status"))
    customer_details = as_dict(invoice.get("customer_details"))
    fields: dict[str, Any] = compact(
        {
            "stripeInvoiceId": gateway_invoice_id,
            "stripeInvoiceStatus": gateway_status,
            "stripeHostedInvoiceUrl": clean_str(invoice.get("hosted_invoice_url")),
            "stripeInvoicePdf": clean_str(invoice.get("invoice_pdf")),
            "receiptUrl": clean_str(invoice.get("hosted_invoice_url")),
            "amountSubtotal": to_major_units(
                invoice.get("subtotal", invoice.get("amount_subtotal"))
            ),
            "amountTax": to_major_units(invoice.get("tax", invoice.get("amount_tax"))),
            "total": to_major_units(invoice.get("total")),
            "amountPaid": to_major_units(invoice.get("amount_paid")),
            "amountDue": to_major_units(invoice.get("amount_due")),
            "currency": currency_of(invoice),
            "customerEmail": clean_str(invoice.get("customer_email"))
            or clean_str(customer_details.get("email")),
            "paymentIntentId": ref_id(payment_intent_ref),
            "dueDate": to_date_string(invoice.get("due_date")),
            "invoiceDate": to_date_string(invoice.get("created")),
            "stripeLastSyncedAt": format_iso(ctx.now()),
        }
    )

    mapped = map_invoice_status(gateway_status)
    if mapped:
        decision = decide_document_status(
            INVOICE_STATUS_MACHINE,
            document,
            "status",
            INVOICE_STATUS_CHANGED_AT,
            mapped,
            event.occurred_at,
        )
        if decision.changed:
            fields["status"] = decision.status
            fields[INVOICE_STATUS_CHANGED_AT] = format_iso(event.occurred_at)

    result = upsert(
        ctx,
        "invoice",
        document,
        fields,
        journal=journal_entry(
            event,
            f"Invoice {gateway_status}" if gateway_status else "Invoice updated",
            amount=fields.get("total"),
            currency=fields.get("currency"),
        ),
    )
    return HandlerResult(
        HandlerStatus.PROCESSED,
        f"Invoice {document.get('invoiceNumber') or result.document_id} synced ({gateway_status})",
        resource_type="invoice",
        resource_id=gateway_invoice_id,
        order_id=order_id or clean_str(as_dict(document.get("orderRef")).get("_ref")),
        invoice_id=result.document_id,
    )
