"""Per-category gateway event handlers.

Every handler has the signature ``(GatewayEvent, ReconciliationContext) ->
HandlerResult``; ``router.HANDLERS`` maps each ``EventCategory`` to one.
"""

from apps.payment_webhook.events.base import HandlerResult, HandlerStatus
from apps.payment_webhook.events.router import HANDLERS, dispatch, process_event

__all__ = [
    "HANDLERS",
    "HandlerResult",
    "HandlerStatus",
    "dispatch",
    "process_event",
]
