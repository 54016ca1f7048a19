"""
Security headers for JSON API responses.
"""

from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

DOCS_PATHS = ("/docs", "/redoc")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Adds the standard hardening headers to every response.

    The API only ever returns JSON, so the content security policy forbids
    everything except on the interactive documentation pages.
    """

    def __init__(
        self,
        app,
        enabled: bool = True,
        strict_transport_security: bool = True,
        hsts_max_age: int = 15552000,
    ):
        super().__init__(app)
        self.enabled = enabled
        self.strict_transport_security_enabled = strict_transport_security
        self.hsts_max_age = hsts_max_age

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        if not self.enabled:
            return response

        if self.strict_transport_security_enabled:
            response.headers["Strict-Transport-Security"] = (
                f"max-age={self.hsts_max_age}; includeSubDomains"
            )

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cross-Origin-Resource-Policy"] = "same-origin"
        response.headers["X-DNS-Prefetch-Control"] = "off"

        if not request.url.path.startswith(DOCS_PATHS):
            response.headers["Content-Security-Policy"] = (
                "default-src 'none'; frame-ancestors 'none'; base-uri 'none'"
            )

        # Auth responses carry tokens.
        if request.url.path.startswith("/auth"):
            response.headers["Cache-Control"] = "no-store"

        if "server" in response.headers:
            del response.headers["server"]

        return response
