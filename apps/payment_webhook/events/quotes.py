"""Quote and payment link mirrors.

Both document types are authored in the application; gateway events only
refresh their status, amount and URL, and never create them.
"""

from __future__ import annotations

import logging
from typing import Any

from apps.payment_webhook.events.base import (
    HandlerResult,
    HandlerStatus,
    currency_of,
    journal_entry,
)
from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.reconciliation.helpers import (
    as_dict,
    clean_str,
    compact,
    format_iso,
    merge_metadata,
    to_major_units,
    unix_to_iso,
)
from apps.payment_webhook.reconciliation.resolver import resolve_payment_link, resolve_quote
from apps.payment_webhook.reconciliation.upsert import upsert
from apps.payment_webhook.schemas import GatewayEvent

logger = logging.getLogger(__name__)


def handle_quote(event: GatewayEvent, ctx: ReconciliationContext) -> HandlerResult:
    quote = event.payload
    quote_id = clean_str(quote.get("id"))
    metadata = merge_metadata(as_dict(quote.get("metadata")))
    document = resolve_quote(ctx, metadata, quote_id, clean_str(quote.get("number")))
    if document is None:
        logger.info(
            "Quote not found; quotes are never created from events",
            extra={"quote_id": quote_id},
        )
        return HandlerResult.ignored("Quote has no matching document", event)

    status = clean_str(quote.get("status"))
    amount = to_major_units(quote.get("amount_total"))
    status_transitions = as_dict(quote.get("status_transitions"))
    fields: dict[str, Any] = compact(
        {
            "stripeQuoteId": quote_id,
            "stripeQuoteStatus": status,
            "stripeQuoteNumber": clean_str(quote.get("number")),
            "amountTotal": amount,
            "currency": currency_of(quote),
            "stripeQuoteUrl": clean_str(quote.get("url")),
            "expiresAt": unix_to_iso(quote.get("expires_at")),
            "acceptedAt": unix_to_iso(status_transitions.get("accepted_at")),
            "stripeLastSyncedAt": format_iso(ctx.now()),
        }
    )
    result = upsert(
        ctx,
        "quote",
        document,
        fields,
        journal=journal_entry(
            event,
            f"Quote {status}" if status else "Quote updated",
            amount=amount,
            currency=fields.get("currency"),
        ),
    )
    return HandlerResult(
        HandlerStatus.PROCESSED,
        f"Quote {result.document_id} synced ({status})",
        resource_type="quote",
        resource_id=quote_id,
        document_ids=[result.document_id],
    )


def handle_payment_link(event: GatewayEvent, ctx: ReconciliationContext) -> HandlerResult:
    link = event.payload
    link_id = clean_str(link.get("id"))
    metadata = merge_metadata(as_dict(link.get("metadata")))
    document = resolve_payment_link(ctx, metadata, link_id)
    if document is None:
        return HandlerResult.ignored("Payment link has no matching document", event)

    active = link.get("active")
    status = None if active is None else ("active" if active else "inactive")
    fields = compact(
        {
            "stripePaymentLinkId": link_id,
            "stripePaymentLinkStatus": status,
            "stripePaymentLinkUrl": clean_str(link.get("url")),
            "amountTotal": to_major_units(link.get("amount_total")),
            "currency": currency_of(link),
            "stripeLastSyncedAt": format_iso(ctx.now()),
        }
    )
    result = upsert(
        ctx,
        "paymentLink",
        document,
        fields,
        journal=journal_entry(
            event, f"Payment link {status}" if status else "Payment link updated"
        ),
    )
    return HandlerResult(
        HandlerStatus.PROCESSED,
        f"Payment link {result.document_id} synced ({status})",
        resource_type="payment_link",
        resource_id=link_id,
        document_ids=[result.document_id],
    )
