"""
ClipSync Backend — Request Logging Middleware
==============================================

What:  One access log line per HTTP request: method, path, status, duration.
How:   Measures from middleware entry to response return; the level follows
       the status (5xx ERROR, 4xx WARNING, else INFO).
When:  Runs inside RequestIDMiddleware, so %(request_id)s is already set.

Request bodies are never logged: they carry clipboard contents.
WebSocket traffic bypasses this middleware; the /ws endpoint and the
gateway log connection lifecycle themselves.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("clipsync.access")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        start_time = time.perf_counter()
        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path

        # Health probes run every few seconds
        if path == "/health":
            return await call_next(request)

        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        status = response.status_code
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        logger.log(
            log_level,
            "%s %s %d %.1fms from %s",
            request.method,
            path,
            status,
            duration_ms,
            client_ip,
        )
        return response
