"""Prometheus metrics definitions for the Payment Webhook service.

Usage:
    from apps.payment_webhook.metrics import webhook_events_total

    webhook_events_total.labels(event_type="charge.refunded", outcome="processed").inc()
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

# ============================================================================
# Inbound Webhook Metrics
# ============================================================================

webhook_events_total = Counter(
    "payment_webhook_events_total",
    "Verified webhook events by type and processing outcome",
    ["event_type", "outcome"],  # outcome: processed, ignored, error
)

webhook_processing_duration = Histogram(
    "payment_webhook_processing_duration_seconds",
    "Time taken to reconcile one verified event",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

signature_failures_total = Counter(
    "payment_webhook_signature_failures_total",
    "Rejected deliveries by reason",
    ["reason"],  # reason: missing_signature, invalid_signature
)

# ============================================================================
# Reconciliation Metrics
# ============================================================================

status_writes_suppressed_total = Counter(
    "payment_webhook_status_writes_suppressed_total",
    "Status writes dropped by the monotonic status rules",
    ["entity", "reason"],  # reason: terminal, stale, illegal_transition
)

documents_written_total = Counter(
    "payment_webhook_documents_written_total",
    "Document store writes by document type and operation",
    ["doc_type", "operation"],  # operation: create, patch, replace
)

# ============================================================================
# Dependency Metrics
# ============================================================================

collaborator_failures_total = Counter(
    "payment_webhook_collaborator_failures_total",
    "Best-effort collaborator calls that failed",
    ["collaborator"],
)

gateway_enrichment_failures_total = Counter(
    "payment_webhook_gateway_enrichment_failures_total",
    "Gateway lookups that failed and left fields absent",
    ["resource"],
)
