"""ASGI middleware for trace ID extraction and injection.

Example:
    >>> from fastapi import FastAPI
    >>> from libs.common.logging.middleware import add_trace_id_middleware
    >>> app = FastAPI()
    >>> add_trace_id_middleware(app)
"""

import re
from collections.abc import Awaitable, Callable, MutableMapping
from typing import Any

from fastapi import FastAPI
from starlette.types import ASGIApp

from libs.common.logging.context import (
    TRACE_ID_HEADER,
    clear_trace_id,
    generate_trace_id,
    set_trace_id,
)

Message = MutableMapping[str, Any]

# Webhook senders control request headers; anything else is replaced
_VALID_TRACE_ID = re.compile(r"[A-Za-z0-9._:-]{1,128}")


def _inbound_trace_id(raw: bytes | None) -> str:
    """Return the caller's trace id when it is well formed, else a new one."""
    if raw:
        candidate = raw.decode("latin-1")
        if _VALID_TRACE_ID.fullmatch(candidate):
            return candidate
    return generate_trace_id()


class ASGITraceIDMiddleware:
    """ASGI middleware binding a trace ID to each HTTP request.

    The ID is read from the ``X-Trace-ID`` header when it is a short token of
    safe characters and generated otherwise. It is bound to the logging
    context for the lifetime of the request and echoed on the response,
    including error responses produced by exception handlers.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(
        self,
        scope: MutableMapping[str, Any],
        receive: Callable[[], Awaitable[Message]],
        send: Callable[[Message], Awaitable[None]],
    ) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        trace_id = _inbound_trace_id(headers.get(TRACE_ID_HEADER.lower().encode()))
        set_trace_id(trace_id)

        async def send_with_trace_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                response_headers = list(message.get("headers", []))
                response_headers.append((TRACE_ID_HEADER.lower().encode(), trace_id.encode()))
                message["headers"] = response_headers
            await send(message)

        try:
            await self.app(scope, receive, send_with_trace_id)
        finally:
            clear_trace_id()


def add_trace_id_middleware(app: FastAPI) -> None:
    """Install ASGITraceIDMiddleware on a FastAPI application."""
    app.add_middleware(ASGITraceIDMiddleware)
