"""
HTTP contract tests for the inbound webhook route.

The app runs in test mode with an in-memory store; deliveries are signed
with the same secret the test config carries.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from collections.abc import Iterator
from typing import Any

import pytest
from fastapi.testclient import TestClient

from apps.payment_webhook.app_context import AppContext
from apps.payment_webhook.app_factory import create_app, create_mock_context, create_test_config
from apps.payment_webhook.events import router as event_router
from apps.payment_webhook.schemas import EventCategory
from apps.payment_webhook.webhook_security import SIGNATURE_HEADER

SECRET = "whsec_test_secret"
WEBHOOK_PATH = "/api/v1/webhooks/stripe"


def _event_body(event_type: str = "checkout.session.completed", **obj: Any) -> bytes:
    payload = {
        "id": "evt_route_1",
        "type": event_type,
        "created": 1714557600,
        "livemode": False,
        "data": {
            "object": {
                "id": "cs_test_route123456",
                "object": "checkout.session",
                "status": "complete",
                "payment_status": "paid",
                "currency": "usd",
                "amount_subtotal": 1000,
                "amount_total": 1000,
                "customer_details": {"email": "route@example.com", "name": "Route Tester"},
                **obj,
            }
        },
    }
    return json.dumps(payload).encode()


def _signed_headers(body: bytes, secret: str = SECRET) -> dict[str, str]:
    timestamp = int(time.time())
    signature = hmac.new(
        secret.encode(), f"{timestamp}.".encode() + body, hashlib.sha256
    ).hexdigest()
    return {
        SIGNATURE_HEADER: f"t={timestamp},v1={signature}",
        "Content-Type": "application/json",
    }


@pytest.fixture()
def app_context() -> AppContext:
    return create_mock_context()


@pytest.fixture()
def client(app_context: AppContext) -> Iterator[TestClient]:
    app = create_app(test_mode=True, test_context=app_context, test_config=create_test_config())
    with TestClient(app) as test_client:
        yield test_client


class TestMethods:
    def test_options_returns_empty_200(self, client: TestClient) -> None:
        response = client.options(WEBHOOK_PATH)
        assert response.status_code == 200
        assert response.content == b""

    @pytest.mark.parametrize("method", ["GET", "PUT", "DELETE", "PATCH"])
    def test_other_methods_not_allowed(self, client: TestClient, method: str) -> None:
        response = client.request(method, WEBHOOK_PATH)
        assert response.status_code == 405


class TestAuthentication:
    def test_missing_signature_is_400(self, client: TestClient) -> None:
        response = client.post(WEBHOOK_PATH, content=_event_body())
        assert response.status_code == 400
        assert SIGNATURE_HEADER in response.json()["detail"]

    def test_wrong_secret_is_400(self, client: TestClient) -> None:
        body = _event_body()
        response = client.post(WEBHOOK_PATH, content=body, headers=_signed_headers(body, "whsec_other"))
        assert response.status_code == 400
        assert response.json()["detail"].startswith("Webhook Error:")

    def test_tampered_body_is_400(self, client: TestClient) -> None:
        body = _event_body()
        headers = _signed_headers(body)
        response = client.post(WEBHOOK_PATH, content=body + b" ", headers=headers)
        assert response.status_code == 400

    def test_signed_garbage_is_400(self, client: TestClient) -> None:
        body = b"{not json"
        response = client.post(WEBHOOK_PATH, content=body, headers=_signed_headers(body))
        assert response.status_code == 400

    def test_signed_non_event_is_400(self, client: TestClient) -> None:
        body = json.dumps({"hello": "world"}).encode()
        response = client.post(WEBHOOK_PATH, content=body, headers=_signed_headers(body))
        assert response.status_code == 400

    def test_missing_secret_is_500(self, app_context: AppContext) -> None:
        """Without a signing secret nothing can be verified, so nothing is accepted."""
        app = create_app(
            test_mode=True,
            test_context=app_context,
            test_config=create_test_config(webhook_secret=None),
        )
        body = _event_body()
        with TestClient(app) as test_client:
            response = test_client.post(WEBHOOK_PATH, content=body, headers=_signed_headers(body))
        assert response.status_code == 500
        assert app_context.store.all_of_type("order") == []  # type: ignore[attr-defined]


class TestAcknowledgement:
    def test_processed_event_is_acknowledged(
        self, client: TestClient, app_context: AppContext
    ) -> None:
        body = _event_body()
        response = client.post(WEBHOOK_PATH, content=body, headers=_signed_headers(body))

        assert response.status_code == 200
        assert response.json() == {
            "received": True,
            "eventId": "evt_route_1",
            "outcome": "processed",
        }
        orders = app_context.store.all_of_type("order")  # type: ignore[attr-defined]
        assert len(orders) == 1
        assert orders[0]["customerEmail"] == "route@example.com"
        log = app_context.store.get("stripeWebhook.evt_route_1")
        assert log is not None
        assert log["status"] == "processed"

    def test_unhandled_type_is_acknowledged_as_ignored(self, client: TestClient) -> None:
        body = _event_body("balance.available")
        response = client.post(WEBHOOK_PATH, content=body, headers=_signed_headers(body))
        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"

    def test_handler_failure_still_returns_200(
        self, client: TestClient, app_context: AppContext, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def explode(event: Any, ctx: Any) -> Any:
            raise RuntimeError("store exploded")

        monkeypatch.setitem(event_router.HANDLERS, EventCategory.CHECKOUT_COMPLETED, explode)
        body = _event_body()
        response = client.post(WEBHOOK_PATH, content=body, headers=_signed_headers(body))

        assert response.status_code == 200
        assert response.json()["received"] is True
        assert response.json()["outcome"] == "error"
        log = app_context.store.get("stripeWebhook.evt_route_1")
        assert log is not None
        assert log["error"] == "RuntimeError: store exploded"

    def test_failure_outside_handler_returns_200_with_hint(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def broken_process_event(event: Any, ctx: Any) -> Any:
            raise RuntimeError("boom")

        monkeypatch.setattr(
            "apps.payment_webhook.routes.webhooks.process_event", broken_process_event
        )
        body = _event_body()
        response = client.post(WEBHOOK_PATH, content=body, headers=_signed_headers(body))

        assert response.status_code == 200
        assert response.json() == {
            "received": True,
            "eventId": "evt_route_1",
            "hint": "internal error logged",
        }

    def test_redelivery_is_idempotent(self, client: TestClient, app_context: AppContext) -> None:
        body = _event_body()
        for _ in range(2):
            response = client.post(WEBHOOK_PATH, content=body, headers=_signed_headers(body))
            assert response.status_code == 200

        orders = app_context.store.all_of_type("order")  # type: ignore[attr-defined]
        assert len(orders) == 1
        assert len(orders[0]["orderEvents"]) == 1
        log = app_context.store.get("stripeWebhook.evt_route_1")
        assert log is not None
        assert log["attempts"] == 2
