"""Customer profile sync from gateway customer events."""

from __future__ import annotations

import logging

from apps.payment_webhook.events.base import HandlerResult, HandlerStatus
from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.reconciliation.customers import upsert_customer_profile
from apps.payment_webhook.reconciliation.helpers import (
    as_dict,
    clean_str,
    first_match,
    format_iso,
    merge_metadata,
)
from apps.payment_webhook.reconciliation.resolver import resolve_customer
from apps.payment_webhook.reconciliation.upsert import upsert
from apps.payment_webhook.schemas import GatewayEvent

logger = logging.getLogger(__name__)


def handle_customer(event: GatewayEvent, ctx: ReconciliationContext) -> HandlerResult:
    """Upsert the customer profile keyed by lower-cased email.

    The shipping address is preferred over the customer's own address for the
    profile's address text and billing snapshot.
    """
    customer = event.payload
    customer_id = clean_str(customer.get("id"))
    metadata = merge_metadata(as_dict(customer.get("metadata")))
    shipping = as_dict(customer.get("shipping"))
    address = as_dict(shipping.get("address")) or as_dict(customer.get("address"))

    document_id = upsert_customer_profile(
        ctx,
        email=clean_str(customer.get("email")),
        name=clean_str(customer.get("name")) or clean_str(shipping.get("name")),
        phone=clean_str(customer.get("phone")) or clean_str(shipping.get("phone")),
        address=address or None,
        gateway_customer_id=customer_id,
        user_id=first_match(metadata, "user_id"),
        metadata=metadata,
    )
    if document_id is None:
        return HandlerResult.ignored("Customer has no email", event)
    return HandlerResult(
        HandlerStatus.PROCESSED,
        f"Customer {document_id} synced",
        resource_type="customer",
        resource_id=customer_id,
        document_ids=[document_id],
    )


def handle_customer_deleted(event: GatewayEvent, ctx: ReconciliationContext) -> HandlerResult:
    """Stamp the sync time on the profile; profiles outlive gateway customers."""
    customer = event.payload
    customer_id = clean_str(customer.get("id"))
    existing = resolve_customer(
        ctx,
        clean_str(customer.get("email")),
        customer_id,
        merge_metadata(as_dict(customer.get("metadata"))),
    )
    if existing is None:
        return HandlerResult.ignored("Deleted customer has no profile", event)
    upsert(ctx, "customer", existing, {"stripeLastSyncedAt": format_iso(ctx.now())})
    logger.info(
        "Gateway customer deleted; profile kept",
        extra={"customer_id": customer_id, "document_id": existing["_id"]},
    )
    return HandlerResult(
        HandlerStatus.PROCESSED,
        f"Customer {existing['_id']} deleted at gateway",
        resource_type="customer",
        resource_id=customer_id,
        document_ids=[existing["_id"]],
    )
