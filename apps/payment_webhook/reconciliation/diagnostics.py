"""Payment failure diagnostics.

Combines the payment intent's ``last_payment_error`` with the latest
charge's outcome into one code and one readable message, e.g.::

    code:    "insufficient_funds | card_declined | declined_by_network"
    message: "Your card has insufficient funds. (The bank declined the payment.)
              (https://stripe.com/docs/error-codes/card-declined)
              (codes: insufficient_funds, card_declined,
              declined_by_network)"
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from apps.payment_webhook.reconciliation.helpers import as_dict, clean_str

CODE_SEPARATOR = " | "


@dataclass(frozen=True)
class FailureDiagnostics:
    code: str | None = None
    message: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.code or self.message)


def _append_unique(values: list[str], value: str | None) -> None:
    if value and value not in values:
        values.append(value)


def build_failure_diagnostics(
    payment_intent: Mapping[str, Any] | None,
    charge: Mapping[str, Any] | None = None,
) -> FailureDiagnostics:
    """Summarize why a payment failed.

    Args:
        payment_intent: Payment intent snapshot (may be empty)
        charge: Latest charge snapshot, when available

    Returns:
        FailureDiagnostics; empty when neither source carries failure detail
    """
    payment_intent = payment_intent or {}
    charge = charge or as_dict(payment_intent.get("latest_charge"))
    last_error = as_dict(payment_intent.get("last_payment_error"))
    outcome = as_dict(charge.get("outcome"))

    codes: list[str] = []
    error_code = clean_str(last_error.get("code"))
    outcome_reason = clean_str(outcome.get("reason"))
    _append_unique(codes, outcome_reason or error_code)
    if outcome_reason:
        _append_unique(codes, error_code)
    _append_unique(codes, clean_str(last_error.get("decline_code")))
    _append_unique(codes, clean_str(charge.get("failure_code")))
    _append_unique(codes, clean_str(outcome.get("network_status")))

    message = (
        clean_str(last_error.get("message"))
        or clean_str(payment_intent.get("cancellation_reason"))
        or None
    )
    extras = (clean_str(outcome.get("seller_message")), clean_str(charge.get("failure_message")))
    for extra in extras:
        if not extra:
            continue
        if message is None:
            message = extra
        elif extra.lower() not in message.lower():
            message = f"{message} ({extra})"

    doc_url = clean_str(last_error.get("doc_url"))
    if doc_url and message and doc_url not in message:
        message = f"{message} ({doc_url})"

    if codes:
        unmentioned = [code for code in codes if message is None or code not in message]
        if message is None:
            message = f"Payment failed (codes: {', '.join(codes)})"
        elif unmentioned:
            message = f"{message} (codes: {', '.join(unmentioned)})"

    return FailureDiagnostics(
        code=CODE_SEPARATOR.join(codes) if codes else None,
        message=message,
    )
