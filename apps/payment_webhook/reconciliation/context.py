"""Dependency injection context for reconciliation.

Handlers receive every capability through this dataclass instead of
module-level client handles, so tests can run the whole engine against an
in-memory store with a frozen clock.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, TypeVar

from apps.payment_webhook.app_context import Collaborators
from apps.payment_webhook.config import PackageDefaults
from apps.payment_webhook.metrics import gateway_enrichment_failures_total
from libs.common.exceptions import GatewayError

if TYPE_CHECKING:
    from apps.payment_webhook.app_context import DocumentStoreProtocol, PaymentGatewayProtocol

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ReconciliationContext:
    """Context containing all dependencies for reconciliation operations.

    Example:
        >>> ctx = ReconciliationContext(
        ...     store=InMemoryDocumentStore(),
        ...     now=lambda: datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC),
        ... )
    """

    store: DocumentStoreProtocol
    """Document store holding every business document."""

    gateway: PaymentGatewayProtocol | None = None
    """Gateway read client for enrichment. None disables enrichment."""

    collaborators: Collaborators = field(default_factory=Collaborators)
    """Outbound best-effort collaborators."""

    package_defaults: PackageDefaults = field(default_factory=PackageDefaults)
    """Parcel metrics used when catalog products carry none."""

    now: Callable[[], datetime] = lambda: datetime.now(UTC)
    """Injectable time provider for deterministic testing."""

    def enrich(self, resource: str, fn: Callable[[PaymentGatewayProtocol], T]) -> T | None:
        """Run a gateway lookup, degrading to None when unavailable or failing.

        Example:
            >>> charge = ctx.enrich("charge", lambda gw: gw.retrieve_charge("ch_1"))
        """
        if self.gateway is None:
            return None
        try:
            return fn(self.gateway)
        except GatewayError as exc:
            gateway_enrichment_failures_total.labels(resource=resource).inc()
            logger.warning(
                "Gateway enrichment failed; continuing without %s",
                resource,
                extra={"resource": resource, "error": str(exc)},
            )
            return None

