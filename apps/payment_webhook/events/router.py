"""Event dispatch and the per-event webhook log.

``process_event`` is the per-event boundary: it looks the event's category
up in ``HANDLERS``, runs the handler and records the outcome on a
``stripeWebhook`` document keyed by the gateway event id. Handler
exceptions are caught here and recorded as ``error``; they never reach the
HTTP layer.

Example:
    >>> result = process_event(event, ctx)
    >>> result.status
    <HandlerStatus.PROCESSED: 'processed'>
"""

from __future__ import annotations

import logging
import time
from typing import Any

from apps.payment_webhook.events.base import EventHandler, HandlerResult, HandlerStatus
from apps.payment_webhook.events.catalog import (
    handle_price,
    handle_price_deleted,
    handle_product,
    handle_product_deleted,
)
from apps.payment_webhook.events.checkout import handle_checkout_completed, handle_checkout_expired
from apps.payment_webhook.events.customers import handle_customer, handle_customer_deleted
from apps.payment_webhook.events.disputes import handle_dispute
from apps.payment_webhook.events.invoices import handle_invoice
from apps.payment_webhook.events.payments import (
    handle_charge_succeeded,
    handle_payment_canceled,
    handle_payment_failed,
    handle_payment_succeeded,
)
from apps.payment_webhook.events.quotes import handle_payment_link, handle_quote
from apps.payment_webhook.events.refunds import handle_refund
from apps.payment_webhook.metrics import (
    documents_written_total,
    webhook_events_total,
    webhook_processing_duration,
)
from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.reconciliation.helpers import format_iso, safe_json_dumps, to_int
from apps.payment_webhook.schemas import EventCategory, GatewayEvent
from libs.common.exceptions import DocumentStoreError
from libs.common.logging import EventContext, log_with_context

logger = logging.getLogger(__name__)

WEBHOOK_LOG_TYPE = "stripeWebhook"

HANDLERS: dict[EventCategory, EventHandler] = {
    EventCategory.CHECKOUT_COMPLETED: handle_checkout_completed,
    EventCategory.CHECKOUT_EXPIRED: handle_checkout_expired,
    EventCategory.PAYMENT_SUCCEEDED: handle_payment_succeeded,
    EventCategory.PAYMENT_FAILED: handle_payment_failed,
    EventCategory.PAYMENT_CANCELED: handle_payment_canceled,
    EventCategory.CHARGE_SUCCEEDED: handle_charge_succeeded,
    EventCategory.CHARGE_FAILED: handle_payment_failed,
    EventCategory.REFUND: handle_refund,
    EventCategory.DISPUTE: handle_dispute,
    EventCategory.INVOICE: handle_invoice,
    EventCategory.PRODUCT: handle_product,
    EventCategory.PRODUCT_DELETED: handle_product_deleted,
    EventCategory.PRICE: handle_price,
    EventCategory.PRICE_DELETED: handle_price_deleted,
    EventCategory.CUSTOMER: handle_customer,
    EventCategory.CUSTOMER_DELETED: handle_customer_deleted,
    EventCategory.QUOTE: handle_quote,
    EventCategory.PAYMENT_LINK: handle_payment_link,
}


def webhook_log_id(event_id: str) -> str:
    return f"{WEBHOOK_LOG_TYPE}.{event_id}"


def _reference(document_id: str | None) -> dict[str, str] | None:
    if not document_id:
        return None
    return {"_type": "reference", "_ref": document_id}


def dispatch(event: GatewayEvent, ctx: ReconciliationContext) -> HandlerResult:
    """Run the handler for the event's category; unknown types are ignored."""
    handler = HANDLERS.get(event.category)
    if handler is None:
        logger.info("Unhandled event type", extra={"event_type": event.type})
        return HandlerResult.ignored(f"Unhandled event type {event.type}", event)
    return handler(event, ctx)


def record_webhook_log(
    event: GatewayEvent,
    ctx: ReconciliationContext,
    result: HandlerResult,
    error: str | None = None,
) -> None:
    """Create or replace the ``stripeWebhook`` document for this event.

    Redeliveries replace the same document and bump its attempt counter.
    Store failures are logged and dropped so the delivery is still
    acknowledged.
    """
    document_id = webhook_log_id(event.id)
    try:
        previous = ctx.store.get(document_id) or {}
        document: dict[str, Any] = {
            "_id": document_id,
            "_type": WEBHOOK_LOG_TYPE,
            "stripeEventId": event.id,
            "eventType": event.type,
            "status": result.status.value,
            "summary": result.summary,
            "occurredAt": format_iso(event.occurred_at),
            "processedAt": format_iso(ctx.now()),
            "livemode": event.livemode,
            "requestId": event.request_id,
            "resourceType": result.resource_type,
            "resourceId": result.resource_id,
            "orderRef": _reference(result.order_id),
            "invoiceRef": _reference(result.invoice_id),
            "error": error,
            "attempts": (to_int(previous.get("attempts")) or 0) + 1,
            "rawPayload": safe_json_dumps(event.payload),
        }
        ctx.store.create_or_replace({k: v for k, v in document.items() if v is not None})
        documents_written_total.labels(doc_type=WEBHOOK_LOG_TYPE, operation="replace").inc()
    except DocumentStoreError as exc:
        logger.warning(
            "Failed to record webhook log",
            extra={"event_type": event.type, "error": str(exc)},
        )


def process_event(event: GatewayEvent, ctx: ReconciliationContext) -> HandlerResult:
    """Reconcile one verified event and record its outcome.

    Never raises for handler failures: the exception is logged with its
    traceback and returned as an ``error`` result.
    """
    with EventContext(event.id):
        start = time.perf_counter()
        error: str | None = None
        try:
            result = dispatch(event, ctx)
        except Exception as exc:
            logger.error(
                "Event handler failed",
                extra={"event_type": event.type, "error": str(exc)},
                exc_info=True,
            )
            error = f"{type(exc).__name__}: {exc}"
            result = HandlerResult(HandlerStatus.ERROR, f"Handler failed for {event.type}")
            result.resource_type = event.payload.get("object")
            result.resource_id = event.payload.get("id")
        finally:
            webhook_processing_duration.observe(time.perf_counter() - start)

        outcome_label = event.type if event.category is not EventCategory.UNHANDLED else "unhandled"
        webhook_events_total.labels(event_type=outcome_label, outcome=result.status.value).inc()
        record_webhook_log(event, ctx, result, error)
        log_with_context(
            logger,
            "INFO",
            f"Event {result.status.value}",
            event_type=event.type,
            summary=result.summary,
            order_id=result.order_id,
            invoice_id=result.invoice_id,
        )
        return result
