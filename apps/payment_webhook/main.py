"""
Payment Webhook FastAPI Application.

Endpoints:
- POST /api/v1/webhooks/stripe - Receive signed gateway events
- GET /health - Health check
- GET /metrics - Prometheus metrics

Environment Variables:
    STRIPE_WEBHOOK_SECRET: Webhook signing secret (required)
    STRIPE_SECRET_KEY: Gateway API key for enrichment lookups (optional)
    DOCUMENT_STORE_BACKEND: http (default) or memory
    SANITY_STUDIO_PROJECT_ID / SANITY_STUDIO_DATASET / SANITY_API_TOKEN: Store credentials
    LOG_LEVEL: Logging level (default: INFO)

Usage:
    # Development (in-memory store)
    $ DOCUMENT_STORE_BACKEND=memory uvicorn apps.payment_webhook.main:app --reload --port 8010

    # Production
    $ uvicorn apps.payment_webhook.main:app --host 0.0.0.0 --port 8010
"""

import os

from apps.payment_webhook.app_factory import create_app
from libs.common.logging import configure_logging

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

configure_logging(service_name="payment_webhook", log_level=LOG_LEVEL)

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "apps.payment_webhook.main:app",
        host="0.0.0.0",
        port=8010,
        reload=True,
        log_level=LOG_LEVEL.lower(),
    )
