"""
ClipSync Backend — Custom Exception Hierarchy
==============================================

What:  Application-specific exceptions for each failure class of the sync core.
How:   Each exception carries a user-facing message and an optional context
       dict. Global handlers in main.py turn them into JSON error responses;
       the realtime dispatcher turns them into `clipboard.error` events.
Who:   Raised by services, the gateway and channels.

Exception Hierarchy:
    ClipSyncError (base)
    ├── ValidationError     → 400 Bad Request (malformed push, no side effects)
    ├── AuthError           → 401 Unauthorized / WS close 4401
    ├── NotFoundError       → 404 Not Found
    ├── PersistenceError    → 503 Service Unavailable (push aborted, caller retries)
    └── DeliveryError       → never leaves the broadcaster (one target failed)

Nothing here is fatal to the process: a PersistenceError ends one push,
a DeliveryError ends one send.
"""

from typing import Any, Dict, Optional


class ClipSyncError(Exception):
    """
    Base exception for all ClipSync application errors.

    Attributes:
        message:  User-facing error description (safe to return to clients)
        context:  Debug details (logged, never returned verbatim for 5xx)
    """

    code = "internal_error"

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(ClipSyncError):
    """
    Raised when a clipboard push or request fails validation.

    When:    Unknown content type, empty text/url payload, malformed URL,
             oversized payload, origin device mismatch.
    HTTP:    400 Bad Request

    Example response:
        {
            "error": "validation_error",
            "message": "A text clipboard item needs a non-empty payload",
            "details": {"field": "payloadRef"}
        }
    """

    code = "validation_error"

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class AuthError(ClipSyncError):
    """
    Raised when a credential cannot be resolved to a (user, device) pair.

    When:    Missing, unknown, expired or revoked token; inactive device.
    HTTP:    401 Unauthorized
    WS:      Connection refused before it ever becomes live (close code 4401).
    """

    code = "auth_error"

    def __init__(
        self,
        message: str = "Authentication failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class NotFoundError(ClipSyncError):
    """
    Raised when a requested resource does not exist (or is expired).

    HTTP:    404 Not Found
    """

    code = "not_found"

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class PersistenceError(ClipSyncError):
    """
    Raised when the Clipboard Store or the Sync Ledger cannot complete a write
    or read.

    HTTP:    503 Service Unavailable with Retry-After
    Effect:  Aborts the pipeline run for one push. No partial ledger rows are
             left behind; retrying the push is the caller's job.

    Security Note:
        The client only ever sees the generic message. Driver errors, SQL and
        constraint names stay in `context` and the server log.
    """

    code = "persistence_error"

    def __init__(
        self,
        message: str = "Could not save clipboard data. Please try again.",
        retry_after: int = 5,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after


class DeliveryError(ClipSyncError):
    """
    Raised by a channel when a realtime send to one connection fails.

    Caught per target by the broadcaster: it is logged, the target is reported
    as not delivered, and its sync record stays pending for catch-up.
    """

    code = "delivery_error"

    def __init__(
        self,
        message: str = "Realtime delivery failed",
        connection_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if connection_id:
            ctx["connection_id"] = connection_id
        super().__init__(message=message, context=ctx)
        self.connection_id = connection_id
