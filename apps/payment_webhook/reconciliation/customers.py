"""Customer profile upsert.

Profiles are keyed by lower-cased email and cross-referenced by the
gateway customer id. Any event carrying contact details may refresh the
profile, but only additively: blank incoming values never clear stored
ones, and names are only filled where missing.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.reconciliation.helpers import (
    as_dict,
    clean_str,
    compact,
    format_iso,
    normalize_email,
    split_name,
)
from apps.payment_webhook.reconciliation.resolver import resolve_customer
from apps.payment_webhook.reconciliation.upsert import upsert
from libs.common.log_sanitizer import mask_email

logger = logging.getLogger(__name__)


def format_address_text(name: str | None, address: Mapping[str, Any] | None) -> str | None:
    """Multi-line postal address: name, lines, ``city, state postal``, country."""
    address = address or {}
    locality = " ".join(
        part
        for part in (
            ", ".join(
                p for p in (clean_str(address.get("city")), clean_str(address.get("state"))) if p
            ),
            clean_str(address.get("postal_code")),
        )
        if part
    )
    lines = [
        clean_str(name),
        clean_str(address.get("line1")),
        clean_str(address.get("line2")),
        locality or None,
        clean_str(address.get("country")),
    ]
    text = "\n".join(line for line in lines if line)
    return text or None


def billing_address_doc(address: Mapping[str, Any] | None) -> dict[str, Any] | None:
    address = address or {}
    street = ", ".join(
        part for part in (clean_str(address.get("line1")), clean_str(address.get("line2"))) if part
    )
    doc = compact(
        {
            "street": street,
            "city": clean_str(address.get("city")),
            "state": clean_str(address.get("state")),
            "postalCode": clean_str(address.get("postal_code")),
            "country": clean_str(address.get("country")),
        }
    )
    return doc or None


def upsert_customer_profile(
    ctx: ReconciliationContext,
    *,
    email: str | None,
    name: str | None = None,
    phone: str | None = None,
    address: Mapping[str, Any] | None = None,
    gateway_customer_id: str | None = None,
    user_id: str | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> str | None:
    """Create or refresh the customer profile for ``email``.

    Returns:
        Customer document id, or None when the event identifies nobody
    """
    normalized = normalize_email(email)
    existing = resolve_customer(ctx, normalized, gateway_customer_id, metadata)
    if existing is None and not normalized:
        logger.info("No email on event; customer profile skipped")
        return None

    first_name, last_name = split_name(name)
    address = as_dict(address)
    fields = compact(
        {
            "stripeCustomerId": clean_str(gateway_customer_id),
            "phone": clean_str(phone),
            "address": format_address_text(name, address) if address else None,
            "billingAddress": billing_address_doc(address) if address else None,
            "stripeLastSyncedAt": format_iso(ctx.now()),
        }
    )
    result = upsert(
        ctx,
        "customer",
        existing,
        fields,
        natural_key=f"email:{normalized}" if normalized else None,
        set_if_missing=compact(
            {
                "email": normalized,
                "firstName": first_name,
                "lastName": last_name,
                "name": clean_str(name),
                "userId": clean_str(user_id),
                "roles": ["customer"],
            }
        ),
    )
    if existing is not None and existing.get("roles") == []:
        # An existing empty list is not "missing" to the store
        ctx.store.patch(result.document_id).set({"roles": ["customer"]}).commit()
    logger.info(
        "Customer profile %s",
        "created" if result.created else "refreshed",
        extra={"customer_id": result.document_id, "email": mask_email(normalized or "")},
    )
    return result.document_id
