"""Best-effort follow-up actions once an order is paid.

None of these may fail the event: each runs through ``run_best_effort``,
which logs and counts collaborator failures.
"""

from __future__ import annotations

import logging

from apps.payment_webhook.app_context import FulfillmentTriggerProtocol
from apps.payment_webhook.collaborators import run_best_effort
from apps.payment_webhook.events.base import order_has_street_address
from apps.payment_webhook.events.emails import order_confirmation_email
from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.reconciliation.helpers import clean_str, format_iso
from apps.payment_webhook.reconciliation.orders import OutcomeResult

logger = logging.getLogger(__name__)


def ensure_packing_slip(ctx: ReconciliationContext, result: OutcomeResult) -> str | None:
    """Generate and store a packing slip if the order has none yet."""
    generator = ctx.collaborators.packing_slip
    existing = clean_str(result.order.get("packingSlipUrl"))
    if generator is None or existing:
        return existing
    url = run_best_effort("packing_slip", generator.generate, result.order_id, result.invoice_id)
    if url:
        ctx.store.patch(result.order_id).set({"packingSlipUrl": url}).commit()
        result.order["packingSlipUrl"] = url
    return url


def send_confirmation(ctx: ReconciliationContext, result: OutcomeResult) -> bool:
    """Send the confirmation email, only for orders created by this event."""
    sender = ctx.collaborators.email
    if sender is None or not result.created or result.order.get("confirmationEmailSent"):
        return False
    message = order_confirmation_email(result.order)
    if message is None:
        return False
    delivery = run_best_effort("email", sender.send, message)
    if delivery is None or not delivery.success:
        logger.warning(
            "Order confirmation email not delivered",
            extra={"order_id": result.order_id, "error": delivery.error if delivery else None},
        )
        return False
    ctx.store.patch(result.order_id).set({"confirmationEmailSent": True}).commit()
    return True


def _notify_fulfillment(trigger: FulfillmentTriggerProtocol, order_id: str) -> bool:
    trigger.trigger(order_id)
    return True


def trigger_fulfillment_once(ctx: ReconciliationContext, result: OutcomeResult) -> bool:
    """Notify the fulfillment function, at most once per order.

    Orders created from a bare payment intent wait until they carry a street
    address.

    ``fulfillmentTriggeredAt`` is stamped only after a successful call, so a
    failed trigger is retried by the next paid event for the order.
    """
    trigger = ctx.collaborators.fulfillment
    if trigger is None or clean_str(result.order.get("fulfillmentTriggeredAt")):
        return False
    from_intent = result.order.get("stripeSource") == "payment_intent"
    if from_intent and not order_has_street_address(result.order):
        return False

    if not run_best_effort("fulfillment", _notify_fulfillment, trigger, result.order_id):
        return False
    stamp = {"fulfillmentTriggeredAt": format_iso(ctx.now())}
    ctx.store.patch(result.order_id).set_if_missing(stamp).commit()
    result.order.update(stamp)
    return True


def run_paid_order_actions(ctx: ReconciliationContext, result: OutcomeResult) -> None:
    """Packing slip, shipping sync, confirmation email, then the fulfillment trigger.

    Shipping sync fires only on the event that moved the order to paid, so
    redelivery does not repeat it. The fulfillment trigger runs on any paid
    event until it has succeeded once, so an order paid before its shipping
    address arrived is still handed to fulfillment.
    """
    if result.payment_status != "paid":
        return
    ensure_packing_slip(ctx, result)
    if result.became_paid and ctx.collaborators.shipping_sync is not None:
        run_best_effort("shipping_sync", ctx.collaborators.shipping_sync.sync, result.order_id)
    send_confirmation(ctx, result)
    trigger_fulfillment_once(ctx, result)
