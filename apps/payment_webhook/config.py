"""Configuration module for the Payment Webhook service.

All environment variable parsing lives here. Values are read once at cold
start into a typed dataclass that is stored on ``app.state`` and injected
into routes and the reconciliation engine.

Usage:
    from apps.payment_webhook.config import get_config

    config = get_config()
    if config.missing_required_settings():
        logger.error("Webhook cannot process events")
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

logger = logging.getLogger(__name__)


# ============================================================================
# Helper Functions
# ============================================================================


def _get_str_env(name: str) -> str | None:
    """Read a string env var, treating blank values as unset."""
    raw = os.getenv(name)
    if raw is None:
        return None
    return raw.strip() or None


def _get_first_str_env(*names: str) -> str | None:
    """Return the first non-blank value among several env var names."""
    for name in names:
        value = _get_str_env(name)
        if value:
            return value
    return None


def _get_float_env(name: str, default: float) -> float:
    """Parse float from environment variable with fallback to default.

    Args:
        name: Environment variable name
        default: Default value if env var is missing or invalid

    Returns:
        Parsed float value or default
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid float for %s=%s; using default=%s", name, raw, default)
        return default


def _get_decimal_env(name: str, default: Decimal) -> Decimal:
    """Parse Decimal from environment variable with fallback to default."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = Decimal(raw)
    except (ValueError, InvalidOperation):
        logger.warning("Invalid decimal for %s=%s; using default=%s", name, raw, default)
        return default
    if not value.is_finite() or value <= 0:
        logger.warning("%s must be > 0; using default=%s", name, default)
        return default
    return value


def _get_int_env(name: str, default: int) -> int:
    """Parse int from environment variable with fallback to default."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid int for %s=%s; using default=%s", name, raw, default)
        return default


# ============================================================================
# Configuration Dataclass
# ============================================================================


@dataclass(frozen=True)
class PackageDefaults:
    """Fallback parcel metrics used when catalog products carry none."""

    weight_lbs: Decimal = Decimal("5")
    length_in: Decimal = Decimal("12")
    width_in: Decimal = Decimal("9")
    height_in: Decimal = Decimal("4")


@dataclass
class PaymentWebhookConfig:
    """Configuration for the Payment Webhook service.

    Attributes:
        # Core Settings
        log_level: Logging level (default: INFO)
        environment: Environment name (dev, test, staging, prod)

        # Gateway
        webhook_secret: Signing secret for inbound webhook signatures
        signature_tolerance_seconds: Max age of a signed timestamp
        gateway_api_key: Secret API key for gateway read calls (enrichment)

        # Document Store
        document_store_backend: "http" (hosted store) or "memory" (dev/test)
        document_store_project_id / dataset / api_version / token: Store credentials

        # Collaborators
        email_api_key: Transactional email provider key
        email_from: Sender address for confirmation emails
        fulfillment_base_url: Base URL of the downstream fulfillment function
        packing_slip_url: Packing slip generation endpoint
        shipping_sync_url: Shipping-label provider sync endpoint
        collaborator_timeout_seconds: Timeout for each outbound collaborator call

        # Cart enrichment
        package_defaults: Default parcel weight/dimensions
    """

    # Core Settings
    log_level: str = "INFO"
    environment: str = "dev"

    # Gateway
    webhook_secret: str | None = None
    signature_tolerance_seconds: int = 300
    gateway_api_key: str | None = None

    # Document Store
    document_store_backend: str = "http"
    document_store_project_id: str | None = None
    document_store_dataset: str = "production"
    document_store_api_version: str = "2024-04-10"
    document_store_token: str | None = None

    # Collaborators
    email_api_key: str | None = None
    email_from: str = "orders@localhost"
    fulfillment_base_url: str | None = None
    packing_slip_url: str | None = None
    shipping_sync_url: str | None = None
    collaborator_timeout_seconds: float = 10.0

    # Cart enrichment
    package_defaults: PackageDefaults = field(default_factory=PackageDefaults)

    def missing_required_settings(self) -> list[str]:
        """List the env vars whose absence makes event processing unsafe.

        The webhook signing secret is always required. Store credentials are
        required only for the hosted ``http`` backend.
        """
        missing: list[str] = []
        if not self.webhook_secret:
            missing.append("STRIPE_WEBHOOK_SECRET")
        if self.document_store_backend == "http":
            if not self.document_store_project_id:
                missing.append("SANITY_STUDIO_PROJECT_ID")
            if not self.document_store_token:
                missing.append("SANITY_API_TOKEN")
        return missing


# ============================================================================
# Configuration Factory
# ============================================================================

_VALID_BACKENDS = ("http", "memory")


def get_config() -> PaymentWebhookConfig:
    """Load configuration from environment variables.

    Returns:
        PaymentWebhookConfig: Parsed configuration

    Raises:
        None: Invalid values fall back to defaults with warnings
    """
    backend = (os.getenv("DOCUMENT_STORE_BACKEND") or "http").strip().lower()
    if backend not in _VALID_BACKENDS:
        logger.warning(
            "DOCUMENT_STORE_BACKEND must be one of %s; using default=http",
            _VALID_BACKENDS,
            extra={"document_store_backend": backend},
        )
        backend = "http"

    tolerance = _get_int_env("STRIPE_WEBHOOK_TOLERANCE_SECONDS", 300)
    if tolerance <= 0:
        logger.warning("STRIPE_WEBHOOK_TOLERANCE_SECONDS must be > 0; using default=300")
        tolerance = 300

    timeout = _get_float_env("COLLABORATOR_TIMEOUT_SECONDS", 10.0)
    if timeout <= 0:
        logger.warning("COLLABORATOR_TIMEOUT_SECONDS must be > 0; using default=10.0")
        timeout = 10.0

    return PaymentWebhookConfig(
        # Core Settings
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        environment=os.getenv("ENVIRONMENT", "dev"),
        # Gateway
        webhook_secret=_get_str_env("STRIPE_WEBHOOK_SECRET"),
        signature_tolerance_seconds=tolerance,
        gateway_api_key=_get_str_env("STRIPE_SECRET_KEY"),
        # Document Store
        document_store_backend=backend,
        document_store_project_id=_get_str_env("SANITY_STUDIO_PROJECT_ID"),
        document_store_dataset=_get_str_env("SANITY_STUDIO_DATASET") or "production",
        document_store_api_version=_get_str_env("SANITY_API_VERSION") or "2024-04-10",
        document_store_token=_get_str_env("SANITY_API_TOKEN"),
        # Collaborators
        email_api_key=_get_str_env("RESEND_API_KEY"),
        email_from=_get_str_env("ORDER_EMAIL_FROM") or "orders@localhost",
        fulfillment_base_url=_get_first_str_env(
            "FULFILLMENT_BASE_URL", "PUBLIC_SITE_URL", "SANITY_STUDIO_NETLIFY_BASE"
        ),
        packing_slip_url=_get_str_env("PACKING_SLIP_URL"),
        shipping_sync_url=_get_str_env("SHIPPING_SYNC_URL"),
        collaborator_timeout_seconds=timeout,
        # Cart enrichment
        package_defaults=PackageDefaults(
            weight_lbs=_get_decimal_env("DEFAULT_PACKAGE_WEIGHT_LBS", Decimal("5")),
            length_in=_get_decimal_env("DEFAULT_PACKAGE_LENGTH_IN", Decimal("12")),
            width_in=_get_decimal_env("DEFAULT_PACKAGE_WIDTH_IN", Decimal("9")),
            height_in=_get_decimal_env("DEFAULT_PACKAGE_HEIGHT_IN", Decimal("4")),
        ),
    )
