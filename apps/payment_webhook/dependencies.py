"""FastAPI dependency providers for the Payment Webhook service.

Routes never reach for module-level clients; everything comes from
``app.state`` through these providers, so tests swap the whole context with
``create_app(test_mode=True, test_context=..., test_config=...)`` or
``app.dependency_overrides``.

Usage:
    from apps.payment_webhook.dependencies import get_config, get_context

    @router.post("/stripe")
    async def handle(
        ctx: AppContext = Depends(get_context),
        config: PaymentWebhookConfig = Depends(get_config),
    ):
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING, cast

from fastapi import Depends, Request

from apps.payment_webhook.reconciliation.context import ReconciliationContext

if TYPE_CHECKING:
    from apps.payment_webhook.app_context import AppContext
    from apps.payment_webhook.config import PaymentWebhookConfig


def get_context(request: Request) -> AppContext:
    """Get application context from FastAPI app state.

    Raises:
        RuntimeError: If AppContext is not initialized in app.state
    """
    from apps.payment_webhook.app_context import AppContext as AppContextType

    ctx = getattr(request.app.state, "context", None)
    if ctx is None:
        raise RuntimeError(
            "AppContext not initialized in app.state. "
            "The lifespan context manager initializes it before routes are "
            "accessible; check that app_factory.py sets app.state.context."
        )
    return cast(AppContextType, ctx)


def get_config(request: Request) -> PaymentWebhookConfig:
    """Get configuration from FastAPI app state.

    Raises:
        RuntimeError: If config is not initialized in app.state
    """
    from apps.payment_webhook.config import PaymentWebhookConfig as ConfigType

    config = getattr(request.app.state, "config", None)
    if config is None:
        raise RuntimeError(
            "PaymentWebhookConfig not initialized in app.state. "
            "Check that app_factory.py sets app.state.config during startup."
        )
    return cast(ConfigType, config)


def get_version(request: Request) -> str:
    version = getattr(request.app.state, "version", None)
    if version is None:
        raise RuntimeError("Version not initialized in app.state.")
    return cast(str, version)


def get_reconciliation_context(
    ctx: AppContext = Depends(get_context),
    config: PaymentWebhookConfig = Depends(get_config),
) -> ReconciliationContext:
    """Per-request reconciliation context built from the app's capabilities."""
    return ReconciliationContext(
        store=ctx.store,
        gateway=ctx.gateway,
        collaborators=ctx.collaborators,
        package_defaults=config.package_defaults,
    )
