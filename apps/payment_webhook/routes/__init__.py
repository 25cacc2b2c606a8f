"""Route modules for the Payment Webhook service.

- health: Health check and root endpoints
- webhooks: Inbound gateway webhook
"""
