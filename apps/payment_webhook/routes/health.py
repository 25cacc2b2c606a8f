"""Health check endpoints for the Payment Webhook service."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends

from apps.payment_webhook.app_context import AppContext
from apps.payment_webhook.config import PaymentWebhookConfig
from apps.payment_webhook.dependencies import get_config, get_context, get_version
from apps.payment_webhook.schemas import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/")
async def root(
    version: str = Depends(get_version),
    config: PaymentWebhookConfig = Depends(get_config),
) -> dict[str, Any]:
    return {
        "service": "payment_webhook",
        "version": version,
        "status": "running",
        "environment": config.environment,
    }


@router.get("/health", tags=["health"])
async def health_check(
    ctx: AppContext = Depends(get_context),
    config: PaymentWebhookConfig = Depends(get_config),
    version: str = Depends(get_version),
) -> HealthResponse:
    """
    Health check endpoint.

    Reports ``degraded`` while a required secret is missing, because every
    webhook delivery is answered with 500 until it is configured.

    Returns:
        HealthResponse: Service health status
    """
    missing = config.missing_required_settings()
    if missing:
        logger.warning("Health degraded", extra={"missing_settings": missing})
    return HealthResponse(
        status="degraded" if missing else "healthy",
        service="payment_webhook",
        version=version,
        environment=config.environment,
        document_store_backend=config.document_store_backend,
        gateway_enrichment=ctx.gateway is not None,
        missing_settings=missing,
        timestamp=datetime.now(UTC),
    )
