"""Order confirmation email rendering."""

from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal
from html import escape
from typing import Any

from apps.payment_webhook.collaborators import EmailMessage
from apps.payment_webhook.reconciliation.helpers import clean_str, to_decimal


def _money(value: Any, currency: str | None) -> str:
    amount = to_decimal(value)
    if amount is None:
        return ""
    symbol = "$" if (currency or "USD").upper() == "USD" else f"{currency} "
    return f"{symbol}{amount.quantize(Decimal('0.01')):,}"


def _address_lines(address: Mapping[str, Any] | None) -> list[str]:
    address = address or {}
    locality = " ".join(
        part
        for part in (
            ", ".join(
                p for p in (clean_str(address.get("city")), clean_str(address.get("state"))) if p
            ),
            clean_str(address.get("postalCode")),
        )
        if part
    )
    lines = [
        clean_str(address.get("name")),
        clean_str(address.get("addressLine1")),
        clean_str(address.get("addressLine2")),
        locality or None,
        clean_str(address.get("country")),
    ]
    return [line for line in lines if line]


def order_confirmation_email(order: Mapping[str, Any]) -> EmailMessage | None:
    """Build the confirmation email for a freshly created order.

    Returns None when the order has no customer email.
    """
    to = clean_str(order.get("customerEmail"))
    if not to:
        return None
    number = clean_str(order.get("orderNumber"))
    currency = clean_str(order.get("currency"))
    name = clean_str(order.get("customerName"))
    items = [item for item in order.get("cart") or [] if isinstance(item, Mapping)]

    item_lines = [
        f"- {item.get('quantity') or 1} x {item.get('name') or item.get('sku') or 'Item'} "
        f"{_money(item.get('lineTotal') or item.get('price'), currency)}".rstrip()
        for item in items
    ] or ["- (details unavailable)"]
    address = _address_lines(order.get("shippingAddress"))
    total = _money(order.get("totalAmount"), currency)

    text_lines = [f"Hi {name}," if name else "Hello,", ""]
    text_lines.append(f"Thank you for your order{f' #{number}' if number else ''}!")
    text_lines += ["", "Items:", *item_lines]
    if total:
        text_lines += ["", f"Order total: {total}"]
    if address:
        text_lines += ["", "Shipping to:", *address]
    text_lines += ["", "We will email you tracking details as soon as your package ships."]

    rows = "".join(
        f"<tr><td>{escape(str(item.get('name') or item.get('sku') or 'Item'))}</td>"
        f"<td>{escape(str(item.get('quantity') or 1))}</td>"
        f"<td>{escape(_money(item.get('lineTotal') or item.get('price'), currency))}</td></tr>"
        for item in items
    )
    html_parts = [
        f"<h1>Thank you for your order{f' #{escape(number)}' if number else ''}</h1>",
        f"<p>{'Hi ' + escape(name) + ', w' if name else 'W'}e're getting your order ready now.</p>",
    ]
    if rows:
        html_parts.append(
            "<table><thead><tr><th>Item</th><th>Qty</th><th>Total</th></tr></thead>"
            f"<tbody>{rows}</tbody></table>"
        )
    if total:
        html_parts.append(f"<p><strong>Order total:</strong> {escape(total)}</p>")
    if address:
        lines = "<br>".join(escape(line) for line in address)
        html_parts.append(f"<p>Shipping to:<br>{lines}</p>")

    subject = f"Order Confirmation #{number}" if number else "Order Confirmation"
    return EmailMessage(
        to=to, subject=subject, html="".join(html_parts), text="\n".join(text_lines)
    )
