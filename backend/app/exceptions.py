"""
DoorCast Backend — Custom Exception Hierarchy
===============================================

What:  Application-specific exceptions for the ingestion, query and live paths.
Why:   Each failure class has a fixed HTTP meaning. Services raise them; the
       global handlers registered in main.py turn them into JSON responses.
How:   Each exception carries a user-safe message and an optional context
       dict that is logged but never returned for server errors.
Who:   Raised by services; caught by global handlers (or, for delivery
       failures, by the Broadcaster itself).

Exception Hierarchy:
    DoorCastError (base)
    ├── ValidationError          → 400 Bad Request (InvalidInput, never retried)
    ├── NotFoundError            → 404 Not Found
    ├── StoreError               → 500 Internal Server Error (StoreFailure)
    │   ├── DatabaseError        → metadata row could not be written/read
    │   └── FileStorageError     → payload blob could not be written/read
    ├── RateLimitExceededError   → 429 Too Many Requests
    └── SubscriberDeliveryError  → never leaves the Broadcaster

Propagation:
    Validation and store errors propagate synchronously to the HTTP caller
    of the triggering request. Delivery errors are local to one subscriber:
    they unregister it and are logged, nothing more.
"""

from typing import Any, Dict, Optional


class DoorCastError(Exception):
    """
    Base exception for all DoorCast application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged; only returned for 4xx errors)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(DoorCastError):
    """
    Raised when an upload or query fails validation (InvalidInput).

    When:    Missing payload for an image, unknown kind, extra fields, bad
             base64, oversized payload, disallowed content type, bad cursor,
             non-positive limit.
    HTTP:    400 Bad Request

    Raised before anything touches the store, so a rejected upload never
    leaves partial state behind.
    """

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


class NotFoundError(DoorCastError):
    """
    Raised when a requested event does not exist.

    A client-visible "not found", not an exceptional system condition:
    the global handler logs nothing above DEBUG for it.
    """

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


class StoreError(DoorCastError):
    """
    Raised when the durable store cannot complete a write or read (StoreFailure).

    HTTP:    500 Internal Server Error

    A failed commit never applies partially: the blob written for it is
    removed and no metadata row exists. The uploader may retry the whole
    request.
    """

    def __init__(
        self,
        message: str = "The event store is unavailable. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class DatabaseError(StoreError):
    """
    Raised when a metadata query, insert or delete fails.

    The response message is always generic; SQL and driver details are
    logged server-side only.
    """

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class FileStorageError(StoreError):
    """
    Raised when a payload blob cannot be written, read, or verified.

    When:    Disk full, permission denied, blob missing, checksum mismatch.
    """

    def __init__(
        self,
        message: str = "Payload storage operation failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class RateLimitExceededError(DoorCastError):
    """
    Raised when a client exceeds the per-IP request rate limit.

    HTTP:    429 Too Many Requests, with a Retry-After header.
    """

    def __init__(
        self,
        retry_after: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"Rate limit exceeded. Please wait {retry_after} seconds before making more requests."
        )
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after


class SubscriberDeliveryError(DoorCastError):
    """
    Raised when a notification cannot be handed to one subscriber.

    When:    The subscriber's channel is already closed, or its transport
             rejected a send.
    Handling: Local to the Broadcaster. The subscriber is unregistered and
             the error is logged; other subscribers and the uploader never
             see it.
    """

    def __init__(
        self,
        connection_id: str,
        reason: str = "delivery failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["connection_id"] = connection_id
        super().__init__(message=f"Subscriber {connection_id}: {reason}", context=ctx)
        self.connection_id = connection_id
        self.reason = reason
