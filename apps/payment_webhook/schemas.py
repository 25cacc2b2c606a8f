"""Pydantic models for the inbound webhook envelope.

The gateway delivers a tagged union of dozens of event types. Each event
type maps to exactly one ``EventCategory``; the router dispatches on the
category and every handler reads the payload object it expects. Unknown
types map to ``EventCategory.UNHANDLED`` and are logged as ignored.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EventCategory(str, Enum):
    """Closed set of event families handled by the reconciliation engine."""

    CHECKOUT_COMPLETED = "checkout_completed"
    CHECKOUT_EXPIRED = "checkout_expired"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CANCELED = "payment_canceled"
    CHARGE_SUCCEEDED = "charge_succeeded"
    CHARGE_FAILED = "charge_failed"
    REFUND = "refund"
    DISPUTE = "dispute"
    INVOICE = "invoice"
    PRODUCT = "product"
    PRODUCT_DELETED = "product_deleted"
    PRICE = "price"
    PRICE_DELETED = "price_deleted"
    CUSTOMER = "customer"
    CUSTOMER_DELETED = "customer_deleted"
    QUOTE = "quote"
    PAYMENT_LINK = "payment_link"
    UNHANDLED = "unhandled"


EVENT_CATEGORIES: dict[str, EventCategory] = {
    "checkout.session.completed": EventCategory.CHECKOUT_COMPLETED,
    "checkout.session.async_payment_succeeded": EventCategory.CHECKOUT_COMPLETED,
    "checkout.session.async_payment_failed": EventCategory.PAYMENT_FAILED,
    "checkout.session.expired": EventCategory.CHECKOUT_EXPIRED,
    "payment_intent.succeeded": EventCategory.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": EventCategory.PAYMENT_FAILED,
    "payment_intent.canceled": EventCategory.PAYMENT_CANCELED,
    "charge.succeeded": EventCategory.CHARGE_SUCCEEDED,
    "charge.captured": EventCategory.CHARGE_SUCCEEDED,
    "charge.failed": EventCategory.CHARGE_FAILED,
    "charge.refunded": EventCategory.REFUND,
    "charge.refund.updated": EventCategory.REFUND,
    "refund.created": EventCategory.REFUND,
    "refund.updated": EventCategory.REFUND,
    "refund.failed": EventCategory.REFUND,
    "charge.dispute.created": EventCategory.DISPUTE,
    "charge.dispute.updated": EventCategory.DISPUTE,
    "charge.dispute.closed": EventCategory.DISPUTE,
    "charge.dispute.funds_withdrawn": EventCategory.DISPUTE,
    "charge.dispute.funds_reinstated": EventCategory.DISPUTE,
    "invoice.created": EventCategory.INVOICE,
    "invoice.finalized": EventCategory.INVOICE,
    "invoice.updated": EventCategory.INVOICE,
    "invoice.paid": EventCategory.INVOICE,
    "invoice.payment_succeeded": EventCategory.INVOICE,
    "invoice.payment_failed": EventCategory.INVOICE,
    "invoice.voided": EventCategory.INVOICE,
    "invoice.marked_uncollectible": EventCategory.INVOICE,
    "product.created": EventCategory.PRODUCT,
    "product.updated": EventCategory.PRODUCT,
    "product.deleted": EventCategory.PRODUCT_DELETED,
    "price.created": EventCategory.PRICE,
    "price.updated": EventCategory.PRICE,
    "price.deleted": EventCategory.PRICE_DELETED,
    "customer.created": EventCategory.CUSTOMER,
    "customer.updated": EventCategory.CUSTOMER,
    "customer.deleted": EventCategory.CUSTOMER_DELETED,
    "quote.created": EventCategory.QUOTE,
    "quote.finalized": EventCategory.QUOTE,
    "quote.accepted": EventCategory.QUOTE,
    "quote.canceled": EventCategory.QUOTE,
    "payment_link.created": EventCategory.PAYMENT_LINK,
    "payment_link.updated": EventCategory.PAYMENT_LINK,
}


def categorize(event_type: str) -> EventCategory:
    return EVENT_CATEGORIES.get(event_type, EventCategory.UNHANDLED)


class EventData(BaseModel):
    """The ``data`` member of an event: the resource snapshot."""

    model_config = ConfigDict(extra="allow")

    object: dict[str, Any]
    previous_attributes: dict[str, Any] | None = None


class EventRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    idempotency_key: str | None = None


class GatewayEvent(BaseModel):
    """A verified gateway event.

    Attributes:
        id: Gateway event id, stable across redeliveries
        type: Event type tag (e.g. ``checkout.session.completed``)
        created: Unix seconds when the gateway created the event
        livemode: Whether the event came from live mode
        data: Resource snapshot
        request: Originating API request, when the event has one
    """

    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: int = 0
    livemode: bool = False
    data: EventData
    request: EventRequest | None = None

    @property
    def category(self) -> EventCategory:
        return categorize(self.type)

    @property
    def payload(self) -> dict[str, Any]:
        return self.data.object

    @property
    def occurred_at(self) -> datetime:
        """When the underlying change happened, used for status ordering."""
        if self.created > 0:
            return datetime.fromtimestamp(self.created, tz=UTC)
        return datetime.now(UTC)

    @property
    def request_id(self) -> str | None:
        return self.request.id if self.request else None


class WebhookAck(BaseModel):
    """Response body returned to the gateway once a request is authenticated."""

    received: bool = True
    event_id: str | None = Field(default=None, alias="eventId", serialization_alias="eventId")
    outcome: str | None = None
    hint: str | None = None

    model_config = ConfigDict(populate_by_name=True)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    service: str
    version: str
    environment: str
    document_store_backend: str
    gateway_enrichment: bool
    missing_settings: list[str] = Field(default_factory=list)
    timestamp: datetime
