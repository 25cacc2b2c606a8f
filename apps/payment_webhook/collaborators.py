"""Outbound side-effect collaborators.

All four collaborators are best-effort: a failure is logged and counted
but never aborts reconciliation. Each one is a thin httpx client with
tenacity retries for transient network errors. Non-2xx responses are raised
as ``CollaboratorError`` and absorbed by ``run_best_effort``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, Field
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from apps.payment_webhook.metrics import collaborator_failures_total
from libs.common.exceptions import CollaboratorError
from libs.common.log_sanitizer import mask_email

logger = logging.getLogger(__name__)

T = TypeVar("T")

FULFILLMENT_PATH = "/.netlify/functions/fulfill-order"
RESEND_API_URL = "https://api.resend.com/emails"

_transient_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    retry=retry_if_exception_type((httpx.TimeoutException, httpx.ConnectError)),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


def run_best_effort(name: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T | None:
    """Invoke a collaborator, absorbing and counting its failures.

    Returns:
        The collaborator's result, or None if it failed
    """
    try:
        return fn(*args, **kwargs)
    except (CollaboratorError, httpx.HTTPError) as exc:
        collaborator_failures_total.labels(collaborator=name).inc()
        logger.warning(
            "Collaborator %s failed",
            name,
            extra={"collaborator": name, "error": str(exc)},
        )
        return None


def _raise_for_status(name: str, response: httpx.Response) -> None:
    if response.status_code >= 400:
        raise CollaboratorError(
            f"{name} returned HTTP {response.status_code}: {response.text[:200]}"
        )


class _HttpCollaborator:
    def __init__(self, timeout: float, client: httpx.Client | None) -> None:
        self.client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self.client.close()


# ============================================================================
# Packing Slip
# ============================================================================


class HttpPackingSlipGenerator(_HttpCollaborator):
    """Requests a packing-slip asset for an order and returns its URL."""

    def __init__(self, url: str, timeout: float = 10.0, client: httpx.Client | None = None):
        super().__init__(timeout, client)
        self.url = url

    @_transient_retry
    def generate(self, order_id: str, invoice_id: str | None) -> str | None:
        response = self.client.post(self.url, json={"orderId": order_id, "invoiceId": invoice_id})
        _raise_for_status("packing_slip", response)
        try:
            body = response.json()
        except ValueError as exc:
            raise CollaboratorError("packing_slip returned a non-JSON body") from exc
        url = body.get("url") or body.get("assetUrl") if isinstance(body, dict) else None
        return str(url) if url else None


# ============================================================================
# Shipping Label Sync
# ============================================================================


class HttpShippingSync(_HttpCollaborator):
    """Pushes an order to the shipping-label provider."""

    def __init__(self, url: str, timeout: float = 10.0, client: httpx.Client | None = None):
        super().__init__(timeout, client)
        self.url = url

    @_transient_retry
    def sync(self, order_id: str) -> None:
        response = self.client.post(self.url, json={"orderId": order_id})
        _raise_for_status("shipping_sync", response)


# ============================================================================
# Fulfillment Trigger
# ============================================================================


class HttpFulfillmentTrigger(_HttpCollaborator):
    """Notifies the downstream fulfillment function that an order is ready."""

    def __init__(self, base_url: str, timeout: float = 10.0, client: httpx.Client | None = None):
        super().__init__(timeout, client)
        self.url = f"{base_url.rstrip('/')}{FULFILLMENT_PATH}"

    @_transient_retry
    def trigger(self, order_id: str) -> None:
        response = self.client.post(self.url, json={"orderId": order_id})
        _raise_for_status("fulfillment", response)


# ============================================================================
# Transactional Email
# ============================================================================


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    html: str
    text: str


class DeliveryResult(BaseModel):
    """Result of an email delivery attempt."""

    success: bool
    message_id: str | None = None
    error: str | None = None
    retryable: bool = True
    metadata: dict[str, str] = Field(default_factory=dict)


class ResendEmailSender(_HttpCollaborator):
    """Sends transactional email through the Resend HTTP API."""

    def __init__(
        self,
        api_key: str,
        from_email: str,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(timeout, client)
        self.api_key = api_key
        self.from_email = from_email

    def send(self, message: EmailMessage) -> DeliveryResult:
        masked = mask_email(message.to)
        logger.info("email_send_attempt", extra={"recipient": masked})
        try:
            response = self._post(message)
        except httpx.TimeoutException:
            logger.error("email_send_timeout", extra={"recipient": masked})
            return DeliveryResult(success=False, error="timeout", retryable=True)
        except httpx.RequestError as exc:
            logger.error("email_send_connection_error", extra={"recipient": masked})
            return DeliveryResult(success=False, error=type(exc).__name__, retryable=True)

        if 200 <= response.status_code < 300:
            body = response.json() if response.content else {}
            message_id = body.get("id") if isinstance(body, dict) else None
            return DeliveryResult(success=True, message_id=message_id)

        retryable = response.status_code == 429 or response.status_code >= 500
        logger.error(
            "email_send_failed",
            extra={"recipient": masked, "status": response.status_code, "retryable": retryable},
        )
        return DeliveryResult(
            success=False,
            error=f"Email provider HTTP {response.status_code}",
            retryable=retryable,
        )

    @_transient_retry
    def _post(self, message: EmailMessage) -> httpx.Response:
        return self.client.post(
            RESEND_API_URL,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "from": self.from_email,
                "to": [message.to],
                "subject": message.subject,
                "html": message.html,
                "text": message.text,
            },
        )
