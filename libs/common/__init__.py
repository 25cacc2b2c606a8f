"""Common utilities and exceptions."""

from libs.common.exceptions import (
    CollaboratorError,
    DocumentStoreError,
    GatewayError,
    PaymentPlatformError,
    WebhookVerificationError,
)
from libs.common.log_sanitizer import mask_email, sanitize_dict

__all__ = [
    "PaymentPlatformError",
    "WebhookVerificationError",
    "GatewayError",
    "DocumentStoreError",
    "CollaboratorError",
    # Log sanitization
    "mask_email",
    "sanitize_dict",
]
