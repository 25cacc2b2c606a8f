"""
Webhook signature verification for payment gateway webhooks.

The gateway signs every delivery with HMAC-SHA256 and sends the result in
the ``Stripe-Signature`` header::

    Stripe-Signature: t=1700000000,v1=5257a869e7...,v1=ab12...

Verification is delegated to the gateway SDK (``stripe.WebhookSignature``):
any matching ``v1`` entry is accepted while a secret is being rolled, and
deliveries older than the tolerance are rejected. The verified body is then
validated into a ``GatewayEvent`` rather than the SDK's own event object, so
the reconciliation engine stays independent of the SDK's object model.

See: https://docs.stripe.com/webhooks#verify-events
"""

from __future__ import annotations

import json

import stripe
from pydantic import ValidationError

from apps.payment_webhook.schemas import GatewayEvent
from libs.common.exceptions import WebhookVerificationError

SIGNATURE_HEADER = "Stripe-Signature"
DEFAULT_TOLERANCE_SECONDS = stripe.Webhook.DEFAULT_TOLERANCE


def verify_webhook_signature(
    payload: bytes,
    header: str | None,
    secret: str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> None:
    """
    Verify a delivery's signature header.

    Args:
        payload: Raw request body bytes, exactly as received
        header: Signature header value
        secret: Webhook signing secret
        tolerance_seconds: Maximum accepted age of the signed timestamp; 0 disables it

    Raises:
        WebhookVerificationError: On a malformed header, stale timestamp or mismatch
    """
    if not secret:
        raise WebhookVerificationError("Webhook secret not configured")
    if not header:
        raise WebhookVerificationError("Missing signature header")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        # The gateway signs the UTF-8 text of the body
        raise WebhookVerificationError(f"Invalid payload encoding: {exc}") from exc

    try:
        stripe.WebhookSignature.verify_header(body, header, secret, tolerance_seconds)
    except stripe.SignatureVerificationError as exc:
        raise WebhookVerificationError(str(exc)) from exc


def construct_event(
    payload: bytes,
    header: str | None,
    secret: str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> GatewayEvent:
    """
    Verify a delivery and parse it into a ``GatewayEvent``.

    JSON is parsed only after the signature passes.

    Raises:
        WebhookVerificationError: On any signature or parse failure
    """
    verify_webhook_signature(payload, header, secret, tolerance_seconds)

    try:
        raw = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise WebhookVerificationError(f"Invalid JSON payload: {exc}") from exc
    if not isinstance(raw, dict):
        raise WebhookVerificationError("Webhook payload must be a JSON object")

    try:
        return GatewayEvent.model_validate(raw)
    except ValidationError as exc:
        raise WebhookVerificationError(
            f"Payload is not a valid event: {exc.error_count()} validation error(s)"
        ) from exc
