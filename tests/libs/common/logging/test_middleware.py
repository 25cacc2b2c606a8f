"""Tests for the ASGI trace ID middleware.

Tests verify:
- Trace ID extraction from request headers
- Trace ID generation when missing
- Trace ID injection into response headers, including error responses
- Context cleanup after requests
"""

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from libs.common.logging.context import TRACE_ID_HEADER, clear_trace_id, get_trace_id
from libs.common.logging.middleware import add_trace_id_middleware


@pytest.fixture()
def client() -> TestClient:
    """FastAPI app with the middleware installed and an echo endpoint."""
    app = FastAPI()
    add_trace_id_middleware(app)

    @app.get("/test")
    async def echo_trace_id() -> dict:
        return {"trace_id": get_trace_id()}

    @app.post("/reject")
    async def reject() -> dict:
        raise HTTPException(status_code=400, detail="Webhook Error: bad signature")

    return TestClient(app)


class TestASGITraceIDMiddleware:
    def test_extracts_trace_id_from_header(self, client: TestClient) -> None:
        response = client.get("/test", headers={TRACE_ID_HEADER: "test-trace-123"})

        assert response.status_code == 200
        assert response.json()["trace_id"] == "test-trace-123"
        assert response.headers[TRACE_ID_HEADER] == "test-trace-123"

    def test_generates_trace_id_when_missing(self, client: TestClient) -> None:
        response = client.get("/test")

        trace_id = response.json()["trace_id"]
        assert len(trace_id) == 36  # UUID format
        assert response.headers[TRACE_ID_HEADER] == trace_id

    @pytest.mark.parametrize("raw", ["bad id with spaces", "x" * 129, 'inject"{}'])
    def test_malformed_trace_id_is_replaced(self, client: TestClient, raw: str) -> None:
        response = client.get("/test", headers={TRACE_ID_HEADER: raw})

        trace_id = response.json()["trace_id"]
        assert trace_id != raw
        assert len(trace_id) == 36
        assert response.headers[TRACE_ID_HEADER] == trace_id

    def test_error_responses_carry_trace_id(self, client: TestClient) -> None:
        response = client.post("/reject", headers={TRACE_ID_HEADER: "trace-err"})

        assert response.status_code == 400
        assert response.headers[TRACE_ID_HEADER] == "trace-err"

    def test_clears_trace_id_after_request(self, client: TestClient) -> None:
        clear_trace_id()
        client.get("/test", headers={TRACE_ID_HEADER: "test-789"})

        assert get_trace_id() is None

    def test_each_request_gets_its_own_id(self, client: TestClient) -> None:
        first = client.get("/test").headers[TRACE_ID_HEADER]
        second = client.get("/test").headers[TRACE_ID_HEADER]

        assert first != second
