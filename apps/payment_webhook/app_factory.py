"""Application factory for the Payment Webhook service.

Usage:
    # In tests
    from apps.payment_webhook.app_factory import (
        create_app,
        create_mock_context,
        create_test_config,
    )

    app = create_app(
        test_mode=True,
        test_context=create_mock_context(),
        test_config=create_test_config(webhook_secret="whsec_test"),
    )
    with TestClient(app) as client:
        assert client.get("/health").status_code == 200

    # In production (main.py)
    app = create_app()
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI
from prometheus_client import make_asgi_app

from apps.payment_webhook import __version__
from apps.payment_webhook.routes import health, webhooks
from libs.common.logging.middleware import add_trace_id_middleware

if TYPE_CHECKING:
    from apps.payment_webhook.app_context import AppContext
    from apps.payment_webhook.config import PaymentWebhookConfig

logger = logging.getLogger(__name__)


def create_app(
    *,
    test_mode: bool = False,
    test_context: AppContext | None = None,
    test_config: PaymentWebhookConfig | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        test_mode: If True, use the injected context/config instead of
            building real clients
        test_context: Optional test AppContext to inject (testing only)
        test_config: Optional test config to inject (testing only)

    Returns:
        FastAPI: Configured application instance
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        from apps.payment_webhook.config import get_config

        config = test_config if test_mode and test_config else get_config()
        if test_mode:
            context = test_context or create_mock_context()
        else:
            context = initialize_app_context(config)

        app.state.config = config
        app.state.context = context
        app.state.version = __version__
        logger.info(
            "Payment webhook service starting",
            extra={
                "environment": config.environment,
                "store_backend": config.document_store_backend,
                "gateway_enrichment": context.gateway is not None,
            },
        )
        try:
            yield
        finally:
            shutdown_app_context(context)
            logger.info("Payment webhook service shut down")

    app = FastAPI(
        title="Payment Webhook",
        description="Payment gateway event reconciliation service",
        version=__version__,
        lifespan=lifespan,
    )

    # Mount Prometheus metrics endpoint
    app.mount("/metrics", make_asgi_app())

    add_trace_id_middleware(app)

    app.include_router(health.router)
    app.include_router(webhooks.router)

    return app


# ============================================================================
# Lifecycle Helpers
# ============================================================================


def initialize_app_context(config: PaymentWebhookConfig) -> AppContext:
    """Build the store, gateway client and collaborators from configuration.

    Optional collaborators whose settings are absent are left disabled. A
    hosted store without credentials is replaced with an empty in-memory store;
    the webhook route refuses deliveries with 500 until it is configured.
    """
    from apps.payment_webhook.app_context import AppContext, Collaborators
    from apps.payment_webhook.collaborators import (
        HttpFulfillmentTrigger,
        HttpPackingSlipGenerator,
        HttpShippingSync,
        ResendEmailSender,
    )
    from apps.payment_webhook.gateway_client import StripeGatewayClient
    from apps.payment_webhook.store import InMemoryDocumentStore, SanityDocumentStore

    resources: list[Any] = []
    timeout = config.collaborator_timeout_seconds

    store: Any
    if (
        config.document_store_backend == "http"
        and config.document_store_project_id
        and config.document_store_token
    ):
        store = SanityDocumentStore(
            project_id=config.document_store_project_id,
            dataset=config.document_store_dataset,
            token=config.document_store_token,
            api_version=config.document_store_api_version,
            timeout=timeout,
        )
        resources.append(store)
    else:
        if config.document_store_backend == "http":
            logger.error(
                "Document store credentials missing; webhooks will be rejected",
                extra={"missing": config.missing_required_settings()},
            )
        store = InMemoryDocumentStore()

    gateway = StripeGatewayClient(config.gateway_api_key) if config.gateway_api_key else None
    if gateway is None:
        logger.warning("STRIPE_SECRET_KEY not set; gateway enrichment disabled")

    collaborators = Collaborators()
    if config.packing_slip_url:
        collaborators.packing_slip = HttpPackingSlipGenerator(config.packing_slip_url, timeout)
        resources.append(collaborators.packing_slip)
    if config.shipping_sync_url:
        collaborators.shipping_sync = HttpShippingSync(config.shipping_sync_url, timeout)
        resources.append(collaborators.shipping_sync)
    if config.email_api_key:
        collaborators.email = ResendEmailSender(config.email_api_key, config.email_from, timeout)
        resources.append(collaborators.email)
    if config.fulfillment_base_url:
        collaborators.fulfillment = HttpFulfillmentTrigger(config.fulfillment_base_url, timeout)
        resources.append(collaborators.fulfillment)

    return AppContext(
        store=store,
        gateway=gateway,
        collaborators=collaborators,
        resources=resources,
    )


def shutdown_app_context(context: AppContext) -> None:
    """Close every HTTP client the context opened."""
    for resource in context.resources:
        close = getattr(resource, "close", None)
        if close is None:
            continue
        try:
            close()
        except Exception as exc:
            logger.warning(
                "Failed to close resource",
                extra={"resource": type(resource).__name__, "error": str(exc)},
            )


# ============================================================================
# Testing Utilities
# ============================================================================


def create_mock_context(**overrides: Any) -> AppContext:
    """Create an AppContext for testing.

    The store defaults to a fresh in-memory store; the gateway and every
    collaborator default to disabled. Individual members can be overridden.

    Usage:
        def test_with_gateway():
            ctx = create_mock_context(gateway=MagicMock())
    """
    from apps.payment_webhook.app_context import AppContext, Collaborators
    from apps.payment_webhook.store import InMemoryDocumentStore

    defaults: dict[str, Any] = {
        "store": InMemoryDocumentStore(),
        "gateway": None,
        "collaborators": Collaborators(),
    }
    defaults.update(overrides)

    return AppContext(**defaults)


def create_test_config(**overrides: Any) -> PaymentWebhookConfig:
    """Create a test configuration.

    Uses the in-memory store backend and a fixed signing secret unless
    overridden.

    Usage:
        def test_missing_secret():
            config = create_test_config(webhook_secret=None)
            assert config.missing_required_settings() == ["STRIPE_WEBHOOK_SECRET"]
    """
    from apps.payment_webhook.config import PaymentWebhookConfig

    config = PaymentWebhookConfig(
        environment="test",
        webhook_secret="whsec_test_secret",
        document_store_backend="memory",
    )

    for key, value in overrides.items():
        setattr(config, key, value)

    return config
