"""
DoorCast Backend — Rate Limiting Middleware
=============================================

What:  Per-IP sliding window rate limiter for the HTTP API.
Why:   A misbehaving device stuck in an upload loop must not fill the disk
       or flood every viewer with notifications.
How:   Keeps a deque of request timestamps per client IP; timestamps older
       than the window fall off the left end.
When:  Outermost custom middleware, so rejected requests cost almost nothing.

Algorithm: Sliding Window Log
    1. Drop timestamps older than now - window
    2. If the remaining count >= limit → 429 with Retry-After
    3. Otherwise record now and continue

Scope:
    In-memory, per process. The live WebSocket channel is not an HTTP
    request and is not counted.
"""

import logging
import time
from collections import deque
from typing import Deque, Dict

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from app.config import settings
from app.exceptions import RateLimitExceededError
from app.middleware.request_id import request_id_var

logger = logging.getLogger(__name__)

# Inactive IPs are swept after this many recorded requests
_SWEEP_EVERY = 1000


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    In-memory sliding window limiter.

    Configuration (from settings):
        rate_limit_requests: Max requests per window per IP
        rate_limit_window:   Window length in seconds
    """

    EXCLUDED_PATHS = {"/health", "/docs", "/openapi.json", "/redoc"}

    def __init__(self, app, **kwargs):
        super().__init__(app, **kwargs)
        self._requests: Dict[str, Deque[float]] = {}
        self._recorded = 0

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in self.EXCLUDED_PATHS:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        now = time.monotonic()
        window_start = now - settings.rate_limit_window

        timestamps = self._requests.setdefault(client_ip, deque())
        while timestamps and timestamps[0] <= window_start:
            timestamps.popleft()

        if len(timestamps) >= settings.rate_limit_requests:
            retry_after = int(timestamps[0] + settings.rate_limit_window - now) + 1
            logger.warning(
                "Rate limit exceeded for IP %s: %d requests in %ds window",
                client_ip,
                len(timestamps),
                settings.rate_limit_window,
            )
            return self._reject(RateLimitExceededError(retry_after=retry_after))

        timestamps.append(now)
        self._recorded += 1
        if self._recorded % _SWEEP_EVERY == 0:
            self._cleanup_inactive_ips(window_start)

        return await call_next(request)

    @staticmethod
    def _reject(exc: RateLimitExceededError) -> JSONResponse:
        # Responses from middleware bypass the app's exception handlers
        return JSONResponse(
            status_code=429,
            content={
                "error": "rate_limit_exceeded",
                "message": exc.message,
                "details": exc.context,
                "request_id": request_id_var.get(""),
            },
            headers={"Retry-After": str(exc.retry_after)},
        )

    def _cleanup_inactive_ips(self, window_start: float) -> None:
        inactive = [
            ip for ip, timestamps in self._requests.items()
            if not timestamps or timestamps[-1] <= window_start
        ]
        for ip in inactive:
            del self._requests[ip]
        if inactive:
            logger.debug("Cleaned up %d inactive IP entries", len(inactive))
