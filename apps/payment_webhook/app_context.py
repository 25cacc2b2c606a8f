"""Application context for dependency injection in the Payment Webhook service.

The document store, the payment gateway client and the outbound side-effect
collaborators are constructed once at startup and carried in ``AppContext``.
Routes receive it through ``Depends(get_context)``; the reconciliation engine
receives the same objects through ``ReconciliationContext``. Every member is
typed against a Protocol so tests can substitute in-memory fakes or mocks.

Usage:
    async def my_route(ctx: AppContext = Depends(get_context)):
        ctx.store.fetch(DocumentQuery(...))
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from apps.payment_webhook.collaborators import DeliveryResult, EmailMessage
    from apps.payment_webhook.store.patch import Patch
    from apps.payment_webhook.store.query import DocumentQuery


class DocumentStoreProtocol(Protocol):
    """Protocol for the external document store.

    Reads are side-effect free. Writes must tolerate being retried with an
    identical payload.
    """

    def fetch(self, query: DocumentQuery) -> list[dict[str, Any]]:
        """Return documents matching ``query`` (oldest first, up to its limit)."""
        ...

    def get(self, document_id: str) -> dict[str, Any] | None:
        """Return one document by id, or None."""
        ...

    def create(self, document: dict[str, Any]) -> str:
        """Create a document and return its id. Fails if the id already exists."""
        ...

    def create_or_replace(self, document: dict[str, Any]) -> str:
        """Create or fully replace the document with ``document['_id']``."""
        ...

    def patch(self, document_id: str) -> Patch:
        """Start a patch against ``document_id``."""
        ...

    def commit_patch(self, patch: Patch) -> dict[str, Any] | None:
        """Apply ``patch`` atomically, returning the updated document if known."""
        ...


class PaymentGatewayProtocol(Protocol):
    """Protocol for read-only gateway lookups used to enrich sparse events.

    Every method raises ``GatewayError`` on failure; callers degrade to a
    missing field rather than aborting the event.
    """

    def retrieve_payment_intent(self, payment_intent_id: str) -> dict[str, Any]:
        ...

    def retrieve_charge(self, charge_id: str) -> dict[str, Any]:
        ...

    def retrieve_shipping_rate(self, shipping_rate_id: str) -> dict[str, Any]:
        ...

    def retrieve_product(self, product_id: str) -> dict[str, Any]:
        ...

    def list_checkout_line_items(self, session_id: str) -> list[dict[str, Any]]:
        """Line items of a checkout session with ``price.product`` expanded."""
        ...

    def find_checkout_session(self, payment_intent_id: str) -> dict[str, Any] | None:
        """The checkout session that created ``payment_intent_id``, if any."""
        ...


class PackingSlipProtocol(Protocol):
    def generate(self, order_id: str, invoice_id: str | None) -> str | None:
        """Generate a packing-slip asset and return its URL."""
        ...


class ShippingSyncProtocol(Protocol):
    def sync(self, order_id: str) -> None:
        """Push an order to the shipping-label provider."""
        ...


class EmailSenderProtocol(Protocol):
    def send(self, message: EmailMessage) -> DeliveryResult:
        """Send a transactional email."""
        ...


class FulfillmentTriggerProtocol(Protocol):
    def trigger(self, order_id: str) -> None:
        """POST ``{"orderId": ...}`` to the downstream fulfillment function."""
        ...


@dataclass
class Collaborators:
    """Outbound side-effect collaborators. A None member is disabled."""

    packing_slip: PackingSlipProtocol | None = None
    shipping_sync: ShippingSyncProtocol | None = None
    email: EmailSenderProtocol | None = None
    fulfillment: FulfillmentTriggerProtocol | None = None


@dataclass
class AppContext:
    """Central context for all application dependencies.

    Attributes:
        store: Document store holding orders, invoices, customers and catalog
        gateway: Payment gateway read client (None when no API key is configured)
        collaborators: Outbound best-effort collaborators
        resources: Objects to close on shutdown (HTTP clients)
    """

    store: DocumentStoreProtocol
    gateway: PaymentGatewayProtocol | None = None
    collaborators: Collaborators = field(default_factory=Collaborators)
    resources: list[Any] = field(default_factory=list)
