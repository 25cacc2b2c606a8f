"""
Apps package - FastAPI services for the storefront payment platform.

This package contains the service applications:
- payment_webhook: Verifies payment gateway webhooks and reconciles them
  into orders, invoices, carts, customers and the catalog
"""
