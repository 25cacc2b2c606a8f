"""Shared fixtures for payment webhook tests.

The reconciliation tests run the real engine against the in-memory document
store with a frozen clock; gateway enrichment is disabled unless a test
injects a MagicMock gateway.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import pytest

from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.schemas import GatewayEvent
from apps.payment_webhook.store.memory import InMemoryDocumentStore

FROZEN_NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)

# 2024-05-01T10:00:00Z
BASE_CREATED = 1714557600


def make_event(
    event_type: str,
    obj: dict[str, Any],
    *,
    event_id: str = "evt_test_1",
    created: int = BASE_CREATED,
) -> GatewayEvent:
    """Build a verified event envelope around ``obj``."""
    return GatewayEvent.model_validate(
        {
            "id": event_id,
            "type": event_type,
            "created": created,
            "livemode": False,
            "data": {"object": obj},
            "request": {"id": "req_test_1"},
        }
    )


def checkout_session(**overrides: Any) -> dict[str, Any]:
    """A paid checkout session: one $50 item, $5 shipping, $4 tax."""
    session: dict[str, Any] = {
        "id": "cs_test_a1b2c3123456",
        "object": "checkout.session",
        "status": "complete",
        "payment_status": "paid",
        "mode": "payment",
        "currency": "usd",
        "amount_subtotal": 5000,
        "amount_total": 5900,
        "total_details": {"amount_tax": 400, "amount_discount": 0, "amount_shipping": 500},
        "shipping_cost": {"amount_total": 500},
        "customer_details": {
            "email": "Buyer@Example.com",
            "name": "Jane Buyer",
            "phone": "+15555550100",
        },
        "shipping_details": {
            "name": "Jane Buyer",
            "address": {
                "line1": "1 Main St",
                "city": "Austin",
                "state": "TX",
                "postal_code": "78701",
                "country": "US",
            },
        },
        "metadata": {},
        "line_items": {
            "data": [
                {
                    "id": "li_1",
                    "description": "Intercooler Kit",
                    "quantity": 1,
                    "amount_subtotal": 5000,
                    "amount_total": 5000,
                    "price": {"id": "price_1", "unit_amount": 5000, "product": "prod_1"},
                }
            ]
        },
    }
    session.update(overrides)
    return session


@pytest.fixture()
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture()
def ctx(store: InMemoryDocumentStore) -> ReconciliationContext:
    return ReconciliationContext(store=store, now=lambda: FROZEN_NOW)


@pytest.fixture()
def event_factory() -> Callable[..., GatewayEvent]:
    return make_event


@pytest.fixture()
def session_factory() -> Callable[..., dict[str, Any]]:
    return checkout_session


@pytest.fixture()
def frozen_now() -> datetime:
    return FROZEN_NOW
