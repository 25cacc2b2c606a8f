"""Idempotent create-or-patch with an append-only event journal.

``upsert`` patches the document the resolver found, or creates one when it
found none. Created documents get a deterministic ``_id`` derived from
their natural key, so two concurrent deliveries of the same event cannot
both create: the loser's ``create`` conflicts and it falls back to a patch.

Journal entries carry a ``_key`` derived from the gateway event id. An entry
whose key is already present is never appended again, so redelivering an
event re-patches the same values without growing the journal.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from apps.payment_webhook.metrics import documents_written_total
from apps.payment_webhook.reconciliation.context import ReconciliationContext
from apps.payment_webhook.reconciliation.helpers import (
    clean_str,
    compact,
    format_iso,
    safe_json_dumps,
)
from libs.common.exceptions import DocumentStoreError

logger = logging.getLogger(__name__)

ORDER_JOURNAL_FIELD = "orderEvents"
DEFAULT_JOURNAL_FIELD = "events"


def deterministic_id(doc_type: str, natural_key: str) -> str:
    """Stable document id for ``natural_key``.

    Example:
        >>> deterministic_id("order", "cs_test_123")
        'order-...'
    """
    digest = hashlib.sha1(f"{doc_type}:{natural_key}".encode()).hexdigest()[:24]
    return f"{doc_type}-{digest}"


# ============================================================================
# Journal
# ============================================================================


@dataclass(frozen=True)
class JournalEntry:
    """One append-only audit record attached to an order, invoice or cart."""

    event_id: str
    event_type: str
    occurred_at: datetime
    status: str | None = None
    label: str | None = None
    message: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    metadata: Mapping[str, Any] | None = None
    scope: str = ""

    @property
    def key(self) -> str:
        """Array key unique per (event, scope)."""
        return hashlib.sha1(f"{self.event_id}:{self.scope}".encode()).hexdigest()[:16]

    def to_document(self) -> dict[str, Any]:
        return compact(
            {
                "_type": "orderEvent",
                "_key": self.key,
                "type": self.event_type,
                "createdAt": format_iso(self.occurred_at),
                "status": self.status,
                "label": self.label,
                "message": self.message,
                "amount": self.amount,
                "currency": self.currency.upper() if self.currency else None,
                "stripeEventId": self.event_id,
                "metadata": safe_json_dumps(dict(self.metadata)) if self.metadata else None,
            }
        )


def journal_contains(
    document: Mapping[str, Any] | None, journal_field: str, entry: JournalEntry
) -> bool:
    existing = (document or {}).get(journal_field)
    if not isinstance(existing, list):
        return False
    return any(isinstance(item, dict) and item.get("_key") == entry.key for item in existing)


# ============================================================================
# Upsert
# ============================================================================


@dataclass
class UpsertResult:
    document_id: str
    created: bool
    document: dict[str, Any] = field(default_factory=dict)
    journal_appended: bool = False


def upsert(
    ctx: ReconciliationContext,
    doc_type: str,
    existing: Mapping[str, Any] | None,
    fields: Mapping[str, Any],
    *,
    natural_key: str | None = None,
    create_only: Mapping[str, Any] | None = None,
    set_if_missing: Mapping[str, Any] | None = None,
    unset: list[str] | None = None,
    journal: JournalEntry | None = None,
    journal_field: str = DEFAULT_JOURNAL_FIELD,
) -> UpsertResult:
    """Create or patch one document.

    Args:
        ctx: Reconciliation context
        doc_type: Document ``_type``
        existing: The document the resolver found, or None
        fields: Fields written on both paths (None values are skipped)
        natural_key: Stable external key used for the id of a created document
        create_only: Fields written only when creating (immutable identifiers)
        set_if_missing: Fields written only where the document has no value
        unset: Paths removed on the patch path
        journal: Entry appended unless already present
        journal_field: Array holding the journal

    Returns:
        UpsertResult describing what happened
    """
    if existing is None:
        document: dict[str, Any] = {"_type": doc_type}
        if natural_key:
            document["_id"] = deterministic_id(doc_type, natural_key)
        document.update(compact(set_if_missing or {}))
        document.update(compact(create_only or {}))
        document.update({key: value for key, value in fields.items() if value is not None})
        if journal is not None:
            document[journal_field] = [journal.to_document()]
        try:
            document_id = ctx.store.create(document)
        except DocumentStoreError as exc:
            if exc.status_code != 409 or "_id" not in document:
                raise
            logger.info(
                "Concurrent create detected; patching existing document",
                extra={"doc_type": doc_type, "document_id": document["_id"]},
            )
            existing = ctx.store.get(document["_id"])
            if existing is None:
                raise
        else:
            documents_written_total.labels(doc_type=doc_type, operation="create").inc()
            logger.info(
                "Created %s", doc_type, extra={"doc_type": doc_type, "document_id": document_id}
            )
            created = {**document, "_id": document_id}
            return UpsertResult(document_id, True, created, journal is not None)

    document_id = str(existing["_id"])
    patch = ctx.store.patch(document_id).set(dict(fields))
    if set_if_missing:
        patch.set_if_missing(dict(set_if_missing))
    if unset:
        patch.unset(unset)
    appended = False
    if journal is not None and not journal_contains(existing, journal_field, journal):
        patch.append(journal_field, [journal.to_document()])
        appended = True
    elif journal is not None:
        logger.info(
            "Journal entry already recorded",
            extra={"doc_type": doc_type, "document_id": document_id, "event_id": journal.event_id},
        )
    updated = patch.commit()
    if not patch.is_empty:
        documents_written_total.labels(doc_type=doc_type, operation="patch").inc()
    merged = dict(existing)
    merged.update(updated or {key: value for key, value in fields.items() if value is not None})
    return UpsertResult(document_id, False, merged, appended)


def append_journal(
    ctx: ReconciliationContext,
    document: Mapping[str, Any],
    entry: JournalEntry,
    journal_field: str = ORDER_JOURNAL_FIELD,
) -> bool:
    """Append ``entry`` to a document's journal unless it is already there."""
    if journal_contains(document, journal_field, entry):
        return False
    document_id = clean_str(document.get("_id"))
    if not document_id:
        return False
    ctx.store.patch(document_id).append(journal_field, [entry.to_document()]).commit()
    documents_written_total.labels(doc_type=str(document.get("_type")), operation="patch").inc()
    return True
