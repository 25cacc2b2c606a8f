"""
Payment Webhook Service.

Receives signed payment-gateway webhooks and reconciles them into the
commerce document store (orders, invoices, customers, catalog).

Key Features:
- HMAC signature verification with replay tolerance
- Entity resolution across gateway ids, metadata ids and business numbers
- Monotonic, occurred-at ordered payment status merge
- Idempotent upserts with an append-only per-order event journal
- Best-effort collaborators (packing slips, shipping sync, email, fulfillment)

Usage:
    uvicorn apps.payment_webhook.main:app --port 8010
"""

__version__ = "0.1.0"
