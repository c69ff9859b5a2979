# Middleware package init
"""
ClipSync Backend — Middleware Package
======================================

What:  Cross-cutting concerns applied to every HTTP request.

Middleware Chain:
    Request → [Request ID] → [Logging] → [GZip] → [CORS] → Route Handler

    1. Request ID: correlation id for every log line of the request
    2. Logging:    access line with status and duration
    3. GZip / CORS: FastAPI built-ins

WebSocket connections skip the HTTP-only middleware; /ws sets its own
correlation id per connection.
"""
