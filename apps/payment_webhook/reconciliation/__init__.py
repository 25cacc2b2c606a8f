"""Reconciliation package for the payment webhook service.

Package Structure:
    - context.py: Dependency injection context
    - helpers.py: Pure derivation helpers and the metadata synonym table
    - resolver.py: Entity resolution strategies
    - cart.py: Line-item normalization
    - enrichment.py: Catalog enrichment and parcel metrics
    - financials.py: Totals reconciliation and shipping selection
    - status.py: Monotonic status machines
    - upsert.py: Idempotent upsert and the event journal
    - orders.py: Applying payment outcomes to orders and invoices
    - customers.py: Customer profile upsert
    - diagnostics.py: Payment failure diagnostics
"""

from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.reconciliation.orders import (
    OutcomeResult,
    PaymentOutcome,
    apply_payment_outcome,
    generate_order_number,
)
from apps.payment_webhook.reconciliation.resolver import (
    InvoiceKeys,
    OrderKeys,
    resolve_customer,
    resolve_invoice,
    resolve_order,
)
from apps.payment_webhook.reconciliation.status import (
    INVOICE_STATUS_MACHINE,
    PAYMENT_STATUS_MACHINE,
    DecisionReason,
    FulfillmentStatus,
    InvoiceStatus,
    PaymentStatus,
    StatusDecision,
)
from apps.payment_webhook.reconciliation.upsert import JournalEntry, UpsertResult, upsert

__all__ = [
    "ReconciliationContext",
    "OutcomeResult",
    "PaymentOutcome",
    "apply_payment_outcome",
    "generate_order_number",
    "InvoiceKeys",
    "OrderKeys",
    "resolve_customer",
    "resolve_invoice",
    "resolve_order",
    "INVOICE_STATUS_MACHINE",
    "PAYMENT_STATUS_MACHINE",
    "DecisionReason",
    "FulfillmentStatus",
    "InvoiceStatus",
    "PaymentStatus",
    "StatusDecision",
    "JournalEntry",
    "UpsertResult",
    "upsert",
]
