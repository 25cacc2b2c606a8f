"""Monotonic status merge for orders and invoices.

Every status write made by an event handler goes through this module. It is
the only place the following policies are expressed:

* terminal statuses are never left unless the caller explicitly opts out
  with ``preserve_existing_terminal_status=False``
* a status write older (by gateway ``occurred_at``) than the stored status
  is stale and dropped, except when it carries a terminal outcome
* a terminal outcome older than an explicit reversal is stale as well, so
  replaying it cannot undo the reversal
* non-terminal moves must follow the transition table
* failure diagnostics are fill-if-empty unless forced
* fulfillment only climbs its ladder, except for explicit cancellation

Ordering uses event time, not arrival time, so redelivery and out-of-order
delivery converge to the same state.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from apps.payment_webhook.metrics import status_writes_suppressed_total
from apps.payment_webhook.reconciliation.helpers import clean_str, parse_timestamp

logger = logging.getLogger(__name__)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    DISPUTED = "disputed"


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class FulfillmentStatus(str, Enum):
    UNFULFILLED = "unfulfilled"
    AWAITING_CAPTURE = "awaiting_capture"
    READY_TO_SHIP = "ready_to_ship"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


# ============================================================================
# Decision Model
# ============================================================================


class DecisionReason(str, Enum):
    INITIAL = "initial"
    UNCHANGED = "unchanged"
    TRANSITION = "transition"
    TERMINAL_WINS = "terminal_wins"
    FORCED = "forced"
    TERMINAL = "terminal"
    STALE = "stale"
    ILLEGAL_TRANSITION = "illegal_transition"


@dataclass(frozen=True)
class StatusDecision:
    """Outcome of merging one incoming status into a stored one.

    Attributes:
        apply: Whether the incoming status may be written
        status: The status the document should hold afterwards
        reason: Why the decision was made
    """

    apply: bool
    status: str
    reason: DecisionReason

    @property
    def changed(self) -> bool:
        return self.apply and self.reason is not DecisionReason.UNCHANGED


@dataclass(frozen=True)
class StatusMachine:
    """Terminal set and legal non-terminal transitions for one status field."""

    entity: str
    terminal: frozenset[str]
    transitions: Mapping[str, frozenset[str]]

    def is_terminal(self, status: str | None) -> bool:
        return status in self.terminal

    def decide(
        self,
        current: str | None,
        incoming: str,
        *,
        incoming_at: datetime | None = None,
        current_at: datetime | None = None,
        forced_at: datetime | None = None,
        preserve_existing_terminal_status: bool = True,
    ) -> StatusDecision:
        """Decide whether ``incoming`` may replace ``current``.

        Rules, first match wins:
            1. nothing stored: apply
            2. same status: apply (no change)
            3. stored terminal: suppress, unless preservation is disabled
            4. incoming terminal: apply regardless of event time, unless it is
               older than the last forced write (``forced_at``)
            5. incoming older than the stored status: suppress as stale
            6. apply only if the transition table allows it

        Example:
            >>> PAYMENT_STATUS_MACHINE.decide("refunded", "paid").apply
            False
            >>> PAYMENT_STATUS_MACHINE.decide(
            ...     "refunded", "paid", preserve_existing_terminal_status=False
            ... ).reason
            <DecisionReason.FORCED: 'forced'>
        """
        current = clean_str(current)
        if current is None:
            return StatusDecision(True, incoming, DecisionReason.INITIAL)
        if current == incoming:
            return StatusDecision(True, incoming, DecisionReason.UNCHANGED)
        if self.is_terminal(current):
            if not preserve_existing_terminal_status:
                return StatusDecision(True, incoming, DecisionReason.FORCED)
            return StatusDecision(False, current, DecisionReason.TERMINAL)
        if self.is_terminal(incoming):
            if incoming_at is not None and forced_at is not None and incoming_at < forced_at:
                return StatusDecision(False, current, DecisionReason.STALE)
            return StatusDecision(True, incoming, DecisionReason.TERMINAL_WINS)
        if incoming_at is not None and current_at is not None and incoming_at < current_at:
            return StatusDecision(False, current, DecisionReason.STALE)
        if current not in self.transitions or incoming in self.transitions[current]:
            # Values outside the vocabulary (legacy data) can always be normalized
            return StatusDecision(True, incoming, DecisionReason.TRANSITION)
        return StatusDecision(False, current, DecisionReason.ILLEGAL_TRANSITION)


_P = PaymentStatus

PAYMENT_STATUS_MACHINE = StatusMachine(
    entity="order",
    terminal=frozenset({_P.REFUNDED.value, _P.CANCELLED.value, _P.EXPIRED.value}),
    transitions={
        _P.PENDING.value: frozenset({_P.PAID.value, _P.FAILED.value}),
        _P.FAILED.value: frozenset({_P.PAID.value}),
        _P.PAID.value: frozenset({_P.PARTIALLY_REFUNDED.value, _P.DISPUTED.value}),
        _P.PARTIALLY_REFUNDED.value: frozenset({_P.DISPUTED.value}),
        _P.DISPUTED.value: frozenset({_P.PAID.value}),
    },
)

INVOICE_STATUS_MACHINE = StatusMachine(
    entity="invoice",
    terminal=frozenset(
        {InvoiceStatus.REFUNDED.value, InvoiceStatus.CANCELLED.value, InvoiceStatus.EXPIRED.value}
    ),
    transitions={
        InvoiceStatus.PENDING.value: frozenset({InvoiceStatus.PAID.value}),
        InvoiceStatus.PAID.value: frozenset(),
    },
)

TERMINAL_PAYMENT_STATUSES = PAYMENT_STATUS_MACHINE.terminal
TERMINAL_INVOICE_STATUSES = INVOICE_STATUS_MACHINE.terminal

PAYMENT_STATUS_CHANGED_AT = "paymentStatusChangedAt"
PAYMENT_STATUS_FORCED_AT = "paymentStatusForcedAt"
INVOICE_STATUS_CHANGED_AT = "statusChangedAt"


def decide_document_status(
    machine: StatusMachine,
    document: Mapping[str, Any] | None,
    status_field: str,
    changed_at_field: str,
    incoming: str,
    occurred_at: datetime | None,
    *,
    forced_at_field: str | None = None,
    preserve_existing_terminal_status: bool = True,
) -> StatusDecision:
    """Run ``machine`` against the status stored on ``document``.

    ``forced_at_field`` names the field holding the time of the last forced
    write, when the document records one. Suppressed writes are logged and
    counted.
    """
    document = document or {}
    decision = machine.decide(
        document.get(status_field),
        incoming,
        incoming_at=occurred_at,
        current_at=parse_timestamp(document.get(changed_at_field)),
        forced_at=parse_timestamp(document.get(forced_at_field)) if forced_at_field else None,
        preserve_existing_terminal_status=preserve_existing_terminal_status,
    )
    if not decision.apply:
        status_writes_suppressed_total.labels(
            entity=machine.entity, reason=decision.reason.value
        ).inc()
        logger.info(
            "Status write suppressed",
            extra={
                "entity": machine.entity,
                "document_id": document.get("_id"),
                "current": decision.status,
                "incoming": incoming,
                "reason": decision.reason.value,
            },
        )
    return decision


# ============================================================================
# Derived Statuses
# ============================================================================

# Order statuses set by downstream fulfillment that payment events must not regress
ORDER_PROGRESS_STATUSES = frozenset({"fulfilled", "shipped", "delivered", "completed", "closed"})

_ORDER_STATUS_FOR_PAYMENT: dict[str, str] = {
    _P.PENDING.value: "pending",
    _P.PAID.value: "paid",
    _P.FAILED.value: "failed",
    _P.CANCELLED.value: "cancelled",
    _P.EXPIRED.value: "expired",
    _P.REFUNDED.value: "refunded",
    _P.PARTIALLY_REFUNDED.value: "paid",
    _P.DISPUTED.value: "disputed",
}

_INVOICE_STATUS_FOR_PAYMENT: dict[str, str | None] = {
    _P.PENDING.value: InvoiceStatus.PENDING.value,
    _P.PAID.value: InvoiceStatus.PAID.value,
    _P.FAILED.value: InvoiceStatus.PENDING.value,
    _P.CANCELLED.value: InvoiceStatus.CANCELLED.value,
    _P.EXPIRED.value: InvoiceStatus.EXPIRED.value,
    _P.REFUNDED.value: InvoiceStatus.REFUNDED.value,
    _P.PARTIALLY_REFUNDED.value: InvoiceStatus.PAID.value,
    _P.DISPUTED.value: None,
}


def derive_order_status(payment_status: str, current_order_status: str | None) -> str | None:
    """Order ``status`` implied by an accepted payment status, or None to keep it."""
    derived = _ORDER_STATUS_FOR_PAYMENT.get(payment_status)
    if derived is None:
        return None
    if derived in TERMINAL_PAYMENT_STATUSES:
        return derived
    if current_order_status in ORDER_PROGRESS_STATUSES:
        return None
    return derived


def derive_invoice_status(payment_status: str) -> str | None:
    """Invoice status implied by an accepted payment status, or None to keep it."""
    return _INVOICE_STATUS_FOR_PAYMENT.get(payment_status)


# ============================================================================
# Fulfillment Ladder
# ============================================================================

FULFILLMENT_LADDER: tuple[str, ...] = (
    FulfillmentStatus.UNFULFILLED.value,
    FulfillmentStatus.AWAITING_CAPTURE.value,
    FulfillmentStatus.READY_TO_SHIP.value,
    FulfillmentStatus.SHIPPED.value,
    FulfillmentStatus.DELIVERED.value,
)


def advance_fulfillment(current: str | None, incoming: str | None) -> str | None:
    """Return the fulfillment status to write, or None to leave it unchanged.

    Examples:
        >>> advance_fulfillment("unfulfilled", "ready_to_ship")
        'ready_to_ship'
        >>> advance_fulfillment("shipped", "ready_to_ship") is None
        True
        >>> advance_fulfillment("shipped", "cancelled")
        'cancelled'
    """
    if not incoming or incoming == current:
        return None
    if current == FulfillmentStatus.CANCELLED.value:
        return None
    if incoming == FulfillmentStatus.CANCELLED.value:
        return incoming
    if incoming not in FULFILLMENT_LADDER:
        return None
    if current not in FULFILLMENT_LADDER:
        return incoming
    if FULFILLMENT_LADDER.index(incoming) > FULFILLMENT_LADDER.index(current):
        return incoming
    return None


def fulfillment_for_payment(
    payment_status: str, *, has_shipping_address: bool, requires_capture: bool = False
) -> str | None:
    """Fulfillment status implied by a payment outcome."""
    if requires_capture:
        return FulfillmentStatus.AWAITING_CAPTURE.value
    if payment_status == _P.PAID.value:
        if has_shipping_address:
            return FulfillmentStatus.READY_TO_SHIP.value
        return FulfillmentStatus.UNFULFILLED.value
    if payment_status in (_P.REFUNDED.value, _P.CANCELLED.value, _P.EXPIRED.value):
        return FulfillmentStatus.CANCELLED.value
    if payment_status in (_P.PENDING.value, _P.FAILED.value):
        return FulfillmentStatus.UNFULFILLED.value
    return None


# ============================================================================
# Failure Diagnostics
# ============================================================================


def merge_failure_diagnostics(
    document: Mapping[str, Any] | None,
    code: str | None,
    message: str | None,
    *,
    force: bool = False,
    code_field: str = "paymentFailureCode",
    message_field: str = "paymentFailureMessage",
) -> dict[str, str]:
    """Diagnostic fields to set: each is written only when empty, unless forced."""
    document = document or {}
    updates: dict[str, str] = {}
    code = clean_str(code)
    message = clean_str(message)
    if code and (force or not clean_str(document.get(code_field))):
        updates[code_field] = code
    if message and (force or not clean_str(document.get(message_field))):
        updates[message_field] = message
    return updates
