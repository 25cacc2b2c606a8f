"""HTTP client for the hosted document store.

Speaks the store's query and mutation endpoints:

    POST https://{project}.api.sanity.io/v{version}/data/query/{dataset}
    POST https://{project}.api.sanity.io/v{version}/data/mutate/{dataset}

Queries are built from ``DocumentQuery`` so no raw query text is assembled
in the reconciliation engine. Transient network failures are retried with
tenacity, as are 429 and 5xx responses; other HTTP error statuses are
raised as ``DocumentStoreError`` straight away.

The client is synchronous. Event processing runs in a worker thread (see
``routes/webhooks.py``) so blocking calls never stall the event loop.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from apps.payment_webhook.store.patch import Patch, encode_value
from apps.payment_webhook.store.query import DocumentQuery
from libs.common.exceptions import DocumentStoreError

logger = logging.getLogger(__name__)


def _is_retryable_status(exc: BaseException) -> bool:
    """Rate limiting and server errors are worth another attempt; 4xx are not."""
    if not isinstance(exc, DocumentStoreError) or exc.status_code is None:
        return False
    return exc.status_code == 429 or exc.status_code >= 500


_transient_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    retry=(
        retry_if_exception_type((httpx.TimeoutException, httpx.ConnectError))
        | retry_if_exception(_is_retryable_status)
    ),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


class SanityDocumentStore:
    """Document store backed by the hosted content API.

    Example:
        >>> store = SanityDocumentStore(
        ...     project_id="abc123", dataset="production", token="sk...", api_version="2024-04-10"
        ... )
        >>> store.fetch(DocumentQuery(doc_types=("order",), any_of=(...,)))
    """

    def __init__(
        self,
        *,
        project_id: str,
        dataset: str,
        token: str,
        api_version: str = "2024-04-10",
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        version = api_version if api_version.startswith("v") else f"v{api_version}"
        self.base_url = f"https://{project_id}.api.sanity.io/{version}/data"
        self.dataset = dataset
        self.client = client or httpx.Client(
            timeout=timeout,
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
        )

    def close(self) -> None:
        self.client.close()

    # ------------------------------------------------------------------ reads

    def fetch(self, query: DocumentQuery) -> list[dict[str, Any]]:
        if query.is_empty:
            return []
        groq, params = query.to_groq()
        result = self._query(groq, params)
        if result is None:
            return []
        return result if isinstance(result, list) else [result]

    def get(self, document_id: str) -> dict[str, Any] | None:
        result = self._query("*[_id == $id][0]", {"id": document_id})
        return result if isinstance(result, dict) else None

    # ----------------------------------------------------------------- writes

    def create(self, document: dict[str, Any]) -> str:
        body = dict(document)
        body.setdefault("_id", str(uuid.uuid4()))
        results = self._mutate([{"create": encode_value(body)}])
        return str(results[0].get("id") or body["_id"]) if results else str(body["_id"])

    def create_or_replace(self, document: dict[str, Any]) -> str:
        if not document.get("_id"):
            raise DocumentStoreError("createOrReplace requires _id", status_code=400)
        self._mutate([{"createOrReplace": encode_value(document)}])
        return str(document["_id"])

    def patch(self, document_id: str) -> Patch:
        return Patch(store=self, document_id=document_id)

    def commit_patch(self, patch: Patch) -> dict[str, Any] | None:
        results = self._mutate(patch.to_mutations(), return_documents=True)
        for result in reversed(results):
            document = result.get("document")
            if isinstance(document, dict):
                return document
        return None

    # --------------------------------------------------------------- transport

    @_transient_retry
    def _query(self, groq: str, params: dict[str, Any]) -> Any:
        response = self.client.post(
            f"{self.base_url}/query/{self.dataset}",
            content=json.dumps({"query": groq, "params": encode_value(params)}),
        )
        payload = self._checked_json(response, "query")
        return payload.get("result")

    @_transient_retry
    def _mutate(
        self, mutations: list[dict[str, Any]], *, return_documents: bool = False
    ) -> list[dict[str, Any]]:
        response = self.client.post(
            f"{self.base_url}/mutate/{self.dataset}",
            params={
                "returnIds": "true",
                "returnDocuments": "true" if return_documents else "false",
                "visibility": "sync",
            },
            content=json.dumps({"mutations": mutations}),
        )
        payload = self._checked_json(response, "mutate")
        results = payload.get("results")
        return results if isinstance(results, list) else []

    @staticmethod
    def _checked_json(response: httpx.Response, operation: str) -> dict[str, Any]:
        if response.status_code >= 400:
            detail = response.text[:500]
            logger.error(
                "Document store %s failed",
                operation,
                extra={"status": response.status_code, "detail": detail},
            )
            raise DocumentStoreError(
                f"Document store {operation} returned HTTP {response.status_code}: {detail}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise DocumentStoreError(f"Document store {operation} returned invalid JSON") from exc
        return payload if isinstance(payload, dict) else {}
