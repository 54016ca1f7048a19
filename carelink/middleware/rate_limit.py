"""
Per-client request rate limiting.
"""

import logging
import time
from typing import Callable, Dict, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from carelink.utils.error_responses import create_error_response

logger = logging.getLogger(__name__)

EXEMPT_PATHS = {"/health", "/docs", "/openapi.json", "/redoc"}


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Fixed-window rate limiting keyed by client IP.

    Each client may make ``max_requests`` requests per ``window_seconds``;
    the window starts with the client's first request.
    """

    def __init__(
        self,
        app,
        max_requests: int = 100,
        window_seconds: int = 900,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(app)
        self.max_requests = max(max_requests, 1)
        self.window_seconds = max(window_seconds, 1)
        self.enabled = enabled
        self._clock = clock
        # client id -> (window start, request count)
        self._windows: Dict[str, Tuple[float, int]] = {}

    @staticmethod
    def _get_client_id(request: Request) -> str:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    def _prune(self, now: float) -> None:
        for client_id, (started, _) in list(self._windows.items()):
            if now - started >= self.window_seconds:
                del self._windows[client_id]

    def _hit(self, client_id: str) -> Tuple[bool, int, float]:
        """Count a request. Returns (allowed, remaining, seconds until reset)."""
        now = self._clock()
        started, count = self._windows.get(client_id, (now, 0))
        if now - started >= self.window_seconds:
            started, count = now, 0
            if len(self._windows) > 10000:
                self._prune(now)

        reset_in = self.window_seconds - (now - started)
        if count >= self.max_requests:
            self._windows[client_id] = (started, count)
            return False, 0, reset_in

        count += 1
        self._windows[client_id] = (started, count)
        return True, self.max_requests - count, reset_in

    async def dispatch(self, request: Request, call_next):
        if not self.enabled or request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        client_id = self._get_client_id(request)
        allowed, remaining, reset_in = self._hit(client_id)

        if not allowed:
            logger.warning("Rate limit exceeded for %s at %s", client_id, request.url.path)
            return create_error_response(
                "Too many requests from this IP, please try again later.",
                status_code=429,
                correlation_id=getattr(request.state, "correlation_id", None),
                headers={
                    "Retry-After": str(int(reset_in) + 1),
                    "X-RateLimit-Limit": str(self.max_requests),
                    "X-RateLimit-Remaining": "0",
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response
