"""
ClipSync Backend — Request ID Middleware
=========================================

What:  Assigns a short correlation id to every HTTP request and exposes it to
       the logging system.
How:   The id lives in a ContextVar. RequestIDMiddleware sets it for HTTP
       requests (honouring a client-sent X-Request-ID), the /ws endpoint sets
       it once per connection, and RequestIDLogFilter copies it onto every
       log record as %(request_id)s.
When:  First middleware to run on every HTTP request.
"""

import logging
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# Coroutine-local: concurrent requests and connections never see each other's id
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


class RequestIDLogFilter(logging.Filter):
    """Adds `request_id` to every record ("-" outside a request)."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = request_id_var.get("") or "-"
        return True


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Behavior:
        1. Use the client's X-Request-ID header if present, else a new 8-char id
        2. Store it in request_id_var and request.state
        3. Echo it back in the X-Request-ID response header
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        request_id_var.set(rid)
        request.state.request_id = rid
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response
