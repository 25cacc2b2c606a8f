"""In-memory document store.

Used for the ``memory`` backend in dev mode and as the fake behind the
reconciliation tests. It honours the same contract as the HTTP client:
``create`` refuses existing ids, ``create_or_replace`` overwrites, patches on
missing documents fail and every returned document is a deep copy.
Values are stored JSON-encoded (Decimal as float, datetimes as ISO text)
exactly as the HTTP backend would persist them.
"""

from __future__ import annotations

import copy
import threading
import uuid
from datetime import UTC, datetime
from typing import Any

from apps.payment_webhook.store.patch import Patch, encode_value
from apps.payment_webhook.store.query import DocumentQuery, document_matches
from libs.common.exceptions import DocumentStoreError


def _set_path(document: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    target = document
    for part in parts[:-1]:
        child = target.get(part)
        if not isinstance(child, dict):
            child = {}
            target[part] = child
        target = child
    target[parts[-1]] = value


def _has_path(document: dict[str, Any], path: str) -> bool:
    current: Any = document
    for part in path.split("."):
        if not isinstance(current, dict) or current.get(part) is None:
            return False
        current = current[part]
    return True


def _unset_path(document: dict[str, Any], path: str) -> None:
    parts = path.split(".")
    target: Any = document
    for part in parts[:-1]:
        target = target.get(part) if isinstance(target, dict) else None
        if target is None:
            return
    if isinstance(target, dict):
        target.pop(parts[-1], None)


class InMemoryDocumentStore:
    """Thread-safe dict-backed document store.

    Example:
        >>> store = InMemoryDocumentStore()
        >>> order_id = store.create({"_type": "order", "stripeSessionId": "cs_1"})
        >>> store.patch(order_id).set({"paymentStatus": "paid"}).commit()["paymentStatus"]
        'paid'
    """

    def __init__(self, documents: list[dict[str, Any]] | None = None) -> None:
        self._lock = threading.Lock()
        self._documents: dict[str, dict[str, Any]] = {}
        for document in documents or []:
            self.create(document)

    # ------------------------------------------------------------------ reads

    def fetch(self, query: DocumentQuery) -> list[dict[str, Any]]:
        if query.is_empty:
            return []
        with self._lock:
            matches = [
                copy.deepcopy(document)
                for document in self._documents.values()
                if document_matches(document, query)
            ]
        return matches[: query.limit]

    def get(self, document_id: str) -> dict[str, Any] | None:
        with self._lock:
            document = self._documents.get(document_id)
            return copy.deepcopy(document) if document is not None else None

    def all_of_type(self, doc_type: str) -> list[dict[str, Any]]:
        """Every document of ``doc_type`` in creation order (test helper)."""
        with self._lock:
            return [
                copy.deepcopy(document)
                for document in self._documents.values()
                if document.get("_type") == doc_type
            ]

    # ----------------------------------------------------------------- writes

    def create(self, document: dict[str, Any]) -> str:
        if not document.get("_type"):
            raise DocumentStoreError("Document is missing _type", status_code=400)
        document_id = document.get("_id") or str(uuid.uuid4())
        with self._lock:
            if document_id in self._documents:
                raise DocumentStoreError(
                    f"Document {document_id} already exists", status_code=409
                )
            self._documents[document_id] = self._stamp(document, document_id, created=True)
        return document_id

    def create_or_replace(self, document: dict[str, Any]) -> str:
        document_id = document.get("_id")
        if not document_id or not document.get("_type"):
            raise DocumentStoreError("createOrReplace requires _id and _type", status_code=400)
        with self._lock:
            existing = self._documents.get(document_id)
            stamped = self._stamp(document, document_id, created=existing is None)
            if existing is not None:
                stamped["_createdAt"] = existing["_createdAt"]
            self._documents[document_id] = stamped
        return document_id

    def patch(self, document_id: str) -> Patch:
        return Patch(store=self, document_id=document_id)

    def commit_patch(self, patch: Patch) -> dict[str, Any] | None:
        with self._lock:
            document = self._documents.get(patch.document_id)
            if document is None:
                raise DocumentStoreError(
                    f"Document {patch.document_id} not found", status_code=404
                )
            updated = copy.deepcopy(document)
            for path, value in patch.set_if_missing_fields.items():
                if not _has_path(updated, path):
                    _set_path(updated, path, encode_value(value))
            for path, value in patch.set_fields.items():
                _set_path(updated, path, encode_value(value))
            for path in patch.unset_paths:
                _unset_path(updated, path)
            for path, amount in patch.inc_fields.items():
                _set_path(updated, path, (updated.get(path) or 0) + amount)
            for array_field, items in patch.appends:
                existing = updated.get(array_field)
                if not isinstance(existing, list):
                    existing = []
                updated[array_field] = existing + encode_value(items)
            updated["_updatedAt"] = datetime.now(UTC).isoformat()
            updated["_rev"] = uuid.uuid4().hex
            self._documents[patch.document_id] = updated
            return copy.deepcopy(updated)

    @staticmethod
    def _stamp(document: dict[str, Any], document_id: str, created: bool) -> dict[str, Any]:
        stamped = encode_value(document)
        now = datetime.now(UTC).isoformat()
        stamped["_id"] = document_id
        if created:
            stamped["_createdAt"] = now
        stamped["_updatedAt"] = now
        stamped["_rev"] = uuid.uuid4().hex
        return stamped
