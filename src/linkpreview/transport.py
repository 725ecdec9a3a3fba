"""Request correlation middleware and header helpers for the HTTP transport."""

from __future__ import annotations

import itertools
import time
from typing import TYPE_CHECKING

import structlog
from starlette.datastructures import Headers, MutableHeaders

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Message, Receive, Scope, Send

REQUEST_ID_HEADER = "x-request-id"

_request_counter = itertools.count()


def generate_request_id() -> str:
    """Return ``req-<unix millis>-<process-wide counter>``."""
    return f"req-{int(time.time() * 1000)}-{next(_request_counter)}"


def resolve_request_id(headers: Headers) -> str:
    incoming = headers.get(REQUEST_ID_HEADER, "").strip()
    return incoming or generate_request_id()


def read_bearer_token(headers: Headers) -> str | None:
    """Extract the token from ``Authorization: Bearer <token>``."""
    auth_header = headers.get("authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


class RequestContextMiddleware:
    """Pure ASGI middleware that assigns every HTTP request a correlation id.

    The id is taken from the incoming ``x-request-id`` header or generated,
    bound into structlog context vars for the lifetime of the request, stored
    as ``scope["state"]["request_id"]`` and echoed on the response.

    Implemented as pure ASGI (not BaseHTTPMiddleware) so the context vars are
    bound in the same task that runs the endpoint.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = resolve_request_id(Headers(scope=scope))
        scope.setdefault("state", {})["request_id"] = request_id

        async def send_with_request_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message)[REQUEST_ID_HEADER] = request_id
            await send(message)

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            await self.app(scope, receive, send_with_request_id)
