"""Patch builder shared by every document-store backend.

A patch accumulates field operations against one document id and is sent
as a single transaction on ``commit()``. Operations mirror the hosted
store's mutation API so the HTTP backend can forward them verbatim.

Example:
    >>> store.patch(order_id).set({"paymentStatus": "paid"}).set_if_missing(
    ...     {"orderNumber": "FAS-123456"}
    ... ).append("orderEvents", [entry]).commit()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from apps.payment_webhook.app_context import DocumentStoreProtocol


def encode_value(value: Any) -> Any:
    """Convert engine values (Decimal, datetime) to JSON-compatible primitives."""
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat().replace("+00:00", "Z")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: encode_value(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [encode_value(item) for item in value]
    return value


@dataclass
class Patch:
    """Accumulated operations for one document."""

    store: DocumentStoreProtocol
    document_id: str
    set_fields: dict[str, Any] = field(default_factory=dict)
    set_if_missing_fields: dict[str, Any] = field(default_factory=dict)
    unset_paths: list[str] = field(default_factory=list)
    inc_fields: dict[str, int] = field(default_factory=dict)
    appends: list[tuple[str, list[Any]]] = field(default_factory=list)

    def set(self, fields: dict[str, Any]) -> Patch:
        self.set_fields.update({key: value for key, value in fields.items() if value is not None})
        return self

    def set_if_missing(self, fields: dict[str, Any]) -> Patch:
        self.set_if_missing_fields.update(
            {key: value for key, value in fields.items() if value is not None}
        )
        return self

    def unset(self, paths: list[str]) -> Patch:
        self.unset_paths.extend(path for path in paths if path not in self.unset_paths)
        return self

    def inc(self, fields: dict[str, int]) -> Patch:
        for key, amount in fields.items():
            self.inc_fields[key] = self.inc_fields.get(key, 0) + amount
        return self

    def append(self, array_field: str, items: list[Any]) -> Patch:
        """Append ``items`` to ``array_field``, creating the array if absent."""
        if items:
            self.appends.append((array_field, list(items)))
        return self

    @property
    def is_empty(self) -> bool:
        return not (
            self.set_fields
            or self.set_if_missing_fields
            or self.unset_paths
            or self.inc_fields
            or self.appends
        )

    def to_mutations(self) -> list[dict[str, Any]]:
        """Render as the store's mutation list (one transaction)."""
        mutations: list[dict[str, Any]] = []
        base: dict[str, Any] = {"id": self.document_id}
        if self.set_if_missing_fields:
            base["setIfMissing"] = encode_value(self.set_if_missing_fields)
        if self.set_fields:
            base["set"] = encode_value(self.set_fields)
        if self.unset_paths:
            base["unset"] = list(self.unset_paths)
        if self.inc_fields:
            base["inc"] = dict(self.inc_fields)
        if len(base) > 1:
            mutations.append({"patch": base})
        # The mutation API accepts one insert per patch
        for array_field, items in self.appends:
            mutations.append(
                {
                    "patch": {
                        "id": self.document_id,
                        "setIfMissing": {array_field: []},
                        "insert": {"after": f"{array_field}[-1]", "items": encode_value(items)},
                    }
                }
            )
        return mutations

    def commit(self) -> dict[str, Any] | None:
        """Send the patch. Returns the updated document when the backend reports it."""
        if self.is_empty:
            return None
        return self.store.commit_patch(self)
