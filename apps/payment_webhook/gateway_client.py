"""Read-only payment gateway client used to enrich sparse events.

Events often carry only ids for related resources (the charge behind a
payment intent, the shipping rate chosen at checkout). This client fetches
them through the ``stripe`` SDK. Results are converted to plain dicts so the
reconciliation engine never depends on SDK object types.

Every failure is raised as ``GatewayError``. Enrichment is best-effort and
callers decide how to degrade.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import stripe

from libs.common.exceptions import GatewayError

logger = logging.getLogger(__name__)

LINE_ITEM_PAGE_SIZE = 100


def _to_dict(obj: Any) -> dict[str, Any]:
    """Convert an SDK object (or plain mapping) into a JSON-compatible dict."""
    if obj is None:
        return {}
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    # StripeObject renders itself as JSON, recursively, across SDK versions
    return json.loads(str(obj))


class StripeGatewayClient:
    """
    Gateway client backed by the stripe SDK.

    The API key is passed per request instead of being assigned to the
    module-level ``stripe.api_key``, so several clients (test and live)
    can coexist in one process.

    Example:
        >>> client = StripeGatewayClient(api_key="sk_test_...")
        >>> intent = client.retrieve_payment_intent("pi_123")
        >>> intent["latest_charge"]
        'ch_123'
    """

    def __init__(self, api_key: str) -> None:
        self.api_key = api_key

    def _call(self, resource: str, fn: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, api_key=self.api_key, **kwargs)
        except stripe.StripeError as exc:
            logger.warning(
                "Gateway %s lookup failed",
                resource,
                extra={"resource": resource, "error": str(exc), "code": exc.code},
            )
            raise GatewayError(f"{resource} lookup failed: {exc.user_message or exc}") from exc

    def retrieve_payment_intent(self, payment_intent_id: str) -> dict[str, Any]:
        return _to_dict(
            self._call(
                "payment_intent",
                stripe.PaymentIntent.retrieve,
                payment_intent_id,
                expand=["latest_charge"],
            )
        )

    def retrieve_charge(self, charge_id: str) -> dict[str, Any]:
        return _to_dict(self._call("charge", stripe.Charge.retrieve, charge_id))

    def retrieve_shipping_rate(self, shipping_rate_id: str) -> dict[str, Any]:
        return _to_dict(
            self._call("shipping_rate", stripe.ShippingRate.retrieve, shipping_rate_id)
        )

    def retrieve_product(self, product_id: str) -> dict[str, Any]:
        return _to_dict(self._call("product", stripe.Product.retrieve, product_id))

    def list_checkout_line_items(self, session_id: str) -> list[dict[str, Any]]:
        page = self._call(
            "line_items",
            stripe.checkout.Session.list_line_items,
            session_id,
            limit=LINE_ITEM_PAGE_SIZE,
            expand=["data.price.product"],
        )
        data = _to_dict(page).get("data") or []
        return [item for item in data if isinstance(item, dict)]

    def find_checkout_session(self, payment_intent_id: str) -> dict[str, Any] | None:
        page = self._call(
            "checkout_session",
            stripe.checkout.Session.list,
            payment_intent=payment_intent_id,
            limit=1,
        )
        data = _to_dict(page).get("data") or []
        return data[0] if data and isinstance(data[0], dict) else None
