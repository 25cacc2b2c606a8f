"""
Root conftest for tests.

This ensures:
1. No trace ID leaks from one test into the next
2. Service settings from the developer's shell never reach the config loader
"""

import pytest

from libs.common.logging.context import clear_trace_id

# Every setting read by apps.payment_webhook.config.get_config
SERVICE_ENV_VARS = (
    "STRIPE_WEBHOOK_SECRET",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_TOLERANCE_SECONDS",
    "DOCUMENT_STORE_BACKEND",
    "SANITY_STUDIO_PROJECT_ID",
    "SANITY_STUDIO_DATASET",
    "SANITY_API_TOKEN",
    "RESEND_API_KEY",
    "FULFILLMENT_BASE_URL",
    "PUBLIC_SITE_URL",
    "SANITY_STUDIO_NETLIFY_BASE",
    "COLLABORATOR_TIMEOUT_SECONDS",
    "DEFAULT_PACKAGE_WEIGHT_LBS",
    "LOG_LEVEL",
    "ENVIRONMENT",
    "SANITY_API_VERSION",
    "ORDER_EMAIL_FROM",
    "PACKING_SLIP_URL",
    "SHIPPING_SYNC_URL",
    "DEFAULT_PACKAGE_LENGTH_IN",
    "DEFAULT_PACKAGE_WIDTH_IN",
    "DEFAULT_PACKAGE_HEIGHT_IN",
)


@pytest.fixture(autouse=True)
def isolated_service_environment(monkeypatch: pytest.MonkeyPatch):
    """Clear correlation ids and service env vars around every test."""
    for name in SERVICE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    clear_trace_id()
    yield
    clear_trace_id()
