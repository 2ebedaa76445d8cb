"""
DoorCast Backend — Request Logging Middleware
===============================================

What:  One access log line per HTTP request: method, path, status, duration,
       request size, request ID, client IP.
Why:   Upload latency is what a doorbell owner notices; this is where it
       shows up first.
How:   Times the downstream call and picks the log level from the status.
When:  Inside RequestIDMiddleware, so the request ID is already set.

What we log vs what we don't:
    Logged:     method, path, status, duration, declared body size, IP, request ID
    Not logged: bodies (images of people at the door), query strings
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from app.middleware.request_id import request_id_var

logger = logging.getLogger("doorcast.access")

# Probed every few seconds by orchestrators
_QUIET_PATHS = {"/health"}


def _status_level(status: int) -> int:
    if status >= 500:
        return logging.ERROR
    if status >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Access log for HTTP requests. WebSockets are logged by the live route."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in _QUIET_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        client_ip = request.client.host if request.client else "unknown"
        body_size = request.headers.get("content-length", "-")

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start_time) * 1000
        status = response.status_code
        rid = request_id_var.get("")
        logger.log(
            _status_level(status),
            "%s %s %d %.1fms in=%s [%s] from %s",
            request.method,
            path,
            status,
            duration_ms,
            body_size,
            rid,
            client_ip,
            extra={
                "request_id": rid,
                "method": request.method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "client_ip": client_ip,
            },
        )
        return response
