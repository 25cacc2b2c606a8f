"""Tests for the hosted document store HTTP client."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from apps.payment_webhook.store.client import SanityDocumentStore
from apps.payment_webhook.store.query import DocumentQuery, FieldMatch
from libs.common.exceptions import DocumentStoreError


def _store(handler: Any) -> SanityDocumentStore:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return SanityDocumentStore(
        project_id="proj1", dataset="production", token="sk_test", client=client
    )


class TestSanityDocumentStore:
    def test_fetch_posts_rendered_query(self) -> None:
        seen: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"result": [{"_id": "order-1"}]})

        store = _store(handler)
        query = DocumentQuery(("order",), (FieldMatch("stripeSessionId", ("cs_1",)),))
        assert store.fetch(query) == [{"_id": "order-1"}]
        assert seen["url"] == "https://proj1.api.sanity.io/v2024-04-10/data/query/production"
        assert seen["body"]["params"] == {"types": ["order"], "v0": ["cs_1"]}

    def test_empty_query_makes_no_request(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        store = _store(handler)
        assert store.fetch(DocumentQuery(("order",), (FieldMatch("chargeId", ()),))) == []

    def test_commit_patch_returns_updated_document(self) -> None:
        seen: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = dict(request.url.params)
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={"results": [{"id": "order-1", "document": {"_id": "order-1", "x": 1}}]},
            )

        store = _store(handler)
        updated = store.patch("order-1").set({"x": 1}).commit()
        assert updated == {"_id": "order-1", "x": 1}
        assert seen["params"]["returnDocuments"] == "true"
        assert seen["body"]["mutations"] == [{"patch": {"id": "order-1", "set": {"x": 1}}}]

    def test_append_is_sent_as_separate_insert(self) -> None:
        seen: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"results": []})

        store = _store(handler)
        store.patch("order-1").set({"a": 1}).append("orderEvents", [{"_key": "k"}]).commit()
        mutations = seen["body"]["mutations"]
        assert len(mutations) == 2
        assert mutations[1]["patch"]["insert"] == {
            "after": "orderEvents[-1]",
            "items": [{"_key": "k"}],
        }

    def test_conflict_raises_with_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(409, text="Document already exists")

        store = _store(handler)
        with pytest.raises(DocumentStoreError) as exc_info:
            store.create({"_id": "order-1", "_type": "order"})
        assert exc_info.value.status_code == 409

    def test_invalid_json_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="not json")

        store = _store(handler)
        with pytest.raises(DocumentStoreError):
            store.get("order-1")

    def test_timeouts_are_retried(self) -> None:
        calls = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["count"] += 1
            if calls["count"] < 3:
                raise httpx.ConnectError("boom", request=request)
            return httpx.Response(200, json={"result": {"_id": "order-1"}})

        store = _store(handler)
        assert store.get("order-1") == {"_id": "order-1"}
        assert calls["count"] == 3

    def test_server_errors_are_retried(self) -> None:
        calls = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["count"] += 1
            if calls["count"] == 1:
                return httpx.Response(503, text="Service Unavailable")
            return httpx.Response(200, json={"result": {"_id": "order-1"}})

        store = _store(handler)
        assert store.get("order-1") == {"_id": "order-1"}
        assert calls["count"] == 2

    def test_rate_limit_raises_after_last_attempt(self) -> None:
        calls = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["count"] += 1
            return httpx.Response(429, text="Too Many Requests")

        store = _store(handler)
        with pytest.raises(DocumentStoreError) as exc_info:
            store.get("order-1")
        assert exc_info.value.status_code == 429
        assert calls["count"] == 3

    def test_client_errors_are_not_retried(self) -> None:
        calls = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["count"] += 1
            return httpx.Response(409, text="Document already exists")

        store = _store(handler)
        with pytest.raises(DocumentStoreError):
            store.create({"_id": "order-1", "_type": "order"})
        assert calls["count"] == 1
