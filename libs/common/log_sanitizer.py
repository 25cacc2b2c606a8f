"""PII masking utilities for webhook logs.

Webhook payloads carry customer contact details (email, phone, postal
address) and gateway secrets in headers. Nothing that identifies a buyer
should reach the log pipeline in clear text.
"""

from __future__ import annotations

import re
from typing import Any

EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
PHONE_PATTERN = re.compile(r"\+?[\d\s\-\(\)]{10,}")
# Gateway secret keys and webhook signing secrets (sk_live_..., whsec_...)
SECRET_KEY_PATTERN = re.compile(r"\b(?:sk|rk|whsec)_[A-Za-z0-9_]{8,}\b")

_ADDRESS_KEYS = {"line1", "line2", "addressline1", "addressline2", "street", "postal_code", "postalcode"}


def mask_email(email: str) -> str:
    """Mask an email address, preserving only the domain part."""
    if not email:
        return "***"
    _, _, domain = email.partition("@")
    return f"***@{domain}" if domain else "***"


def mask_phone(phone: str) -> str:
    """Mask a phone number, showing only the last four digits."""
    digits = "".join(char for char in phone if char.isdigit())
    return f"***{digits[-4:]}"


def mask_secret(value: str) -> str:
    """Mask a gateway key, keeping its prefix so the key type stays visible."""
    prefix, _, _ = value.partition("_")
    return f"{prefix}_***" if prefix and prefix != value else "***"


def _sanitize_string(text: str) -> str:
    sanitized = EMAIL_PATTERN.sub(lambda m: mask_email(m.group(0)), text)
    sanitized = SECRET_KEY_PATTERN.sub(lambda m: mask_secret(m.group(0)), sanitized)
    return PHONE_PATTERN.sub(lambda m: mask_phone(m.group(0)), sanitized)


def _sanitize_value(value: Any) -> Any:
    if isinstance(value, dict):
        return sanitize_dict(value)
    if isinstance(value, list):
        return [_sanitize_value(item) for item in value]
    if isinstance(value, str):
        return _sanitize_string(value)
    return value


def sanitize_dict(data: dict[str, Any]) -> dict[str, Any]:
    """Recursively sanitize a dictionary by masking PII values.

    Sensitive keys are masked regardless of value type. Other strings are
    scanned for embedded emails, phone numbers and gateway keys.

    Example:
        >>> sanitize_dict({"customerEmail": "jane@example.com", "total": 59})
        {'customerEmail': '***@example.com', 'total': 59}
    """
    sanitized: dict[str, Any] = {}
    for raw_key, raw_value in data.items():
        key = str(raw_key).lower()
        if "email" in key:
            sanitized[raw_key] = mask_email(raw_value) if isinstance(raw_value, str) else "***"
        elif "phone" in key:
            sanitized[raw_key] = mask_phone(raw_value) if isinstance(raw_value, str) else "***"
        elif any(token in key for token in ("secret", "token", "api_key", "signature")):
            sanitized[raw_key] = "***"
        elif key.replace("_", "") in _ADDRESS_KEYS or key in _ADDRESS_KEYS:
            sanitized[raw_key] = "***"
        else:
            sanitized[raw_key] = _sanitize_value(raw_value)
    return sanitized
