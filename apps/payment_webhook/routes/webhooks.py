"""Inbound gateway webhook route.

Response contract:
    OPTIONS                          200, empty body
    any method other than POST       405
    signing secret or store missing  500
    no signature header              400
    bad signature or bad payload     400
    everything else                  200 {"received": true, ...}

Once a delivery is authenticated the gateway always gets a 200, even when
reconciliation fails: the failure is already journaled on the webhook log and
a retry would only replay the same error.

Design Pattern:
    - Router defined at module level
    - Dependencies injected via Depends() in route handlers
    - Blocking reconciliation runs in a worker thread (asyncio.to_thread)
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from apps.payment_webhook.config import PaymentWebhookConfig
from apps.payment_webhook.dependencies import get_config, get_reconciliation_context
from apps.payment_webhook.events.router import process_event
from apps.payment_webhook.metrics import signature_failures_total
from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.schemas import WebhookAck
from apps.payment_webhook.webhook_security import SIGNATURE_HEADER, construct_event
from libs.common.exceptions import WebhookVerificationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["Webhooks"])


# =============================================================================
# Webhook Endpoints
# =============================================================================


@router.options("/stripe")
async def stripe_webhook_preflight() -> Response:
    return Response(status_code=status.HTTP_200_OK)


@router.post("/stripe", response_model=WebhookAck, response_model_exclude_none=True)
async def handle_stripe_webhook(
    request: Request,
    config: PaymentWebhookConfig = Depends(get_config),
    recon: ReconciliationContext = Depends(get_reconciliation_context),
) -> WebhookAck:
    """
    Verify a gateway delivery and reconcile the event it carries.

    AUTHENTICATION:
    - Timestamped HMAC-SHA256 signature in the Stripe-Signature header
    - The raw body is verified before any JSON parsing

    Args:
        request: FastAPI request object (raw body and headers)
        config: Application configuration (injected)
        recon: Reconciliation context (injected)

    Returns:
        WebhookAck: ``received`` plus the event id and processing outcome
    """
    missing = config.missing_required_settings()
    if missing:
        logger.error("Webhook rejected: configuration incomplete", extra={"missing": missing})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing is not configured",
        )

    signature_header = request.headers.get(SIGNATURE_HEADER)
    if not signature_header:
        signature_failures_total.labels(reason="missing_signature").inc()
        logger.warning("Webhook received without signature")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing {SIGNATURE_HEADER} header",
        )

    body = await request.body()
    try:
        event = construct_event(
            body,
            signature_header,
            config.webhook_secret or "",
            tolerance_seconds=config.signature_tolerance_seconds,
        )
    except WebhookVerificationError as exc:
        signature_failures_total.labels(reason="invalid_signature").inc()
        logger.warning("Webhook verification failed", extra={"error": str(exc)})
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Webhook Error: {exc}",
        ) from exc

    try:
        result = await asyncio.to_thread(process_event, event, recon)
    except Exception:
        logger.exception(
            "Webhook processing failed outside the event handler",
            extra={"event_type": event.type},
        )
        return WebhookAck(event_id=event.id, hint="internal error logged")

    return WebhookAck(event_id=event.id, outcome=result.status.value)
