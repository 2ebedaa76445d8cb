"""
DoorCast Backend — Request ID Middleware
==========================================

What:  Assigns a correlation ID to every HTTP request and echoes it back.
Why:   Upload, commit and broadcast log lines for one doorbell ring share
       the same ID, and error bodies carry it for support.
How:   Reuses a well-formed X-Request-ID from the client (devices can tag
       their own retries), otherwise generates a short one. Stored in a
       ContextVar for loggers and exception handlers.
When:  Runs before request logging so the access log line carries the ID.

WebSocket connections are not HTTP requests and pass through untouched;
they are correlated by their connection_id instead.
"""

import re
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# Coroutine-local: concurrent requests on one event loop each see their own ID
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Client IDs end up in log lines; anything else is replaced
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def new_request_id() -> str:
    return uuid.uuid4().hex[:8]


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Sets request_id_var and the X-Request-ID response header."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        supplied = request.headers.get("X-Request-ID", "")
        rid = supplied if _VALID_REQUEST_ID.match(supplied) else new_request_id()

        # Not reset afterwards: the catch-all 500 handler runs outside this middleware
        request_id_var.set(rid)
        request.state.request_id = rid
        response = await call_next(request)

        response.headers["X-Request-ID"] = rid
        return response
