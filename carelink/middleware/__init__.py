"""
Middleware components for the CareLink gateway.
"""

from .rate_limit import RateLimitMiddleware
from .security_headers import SecurityHeadersMiddleware

__all__ = [
    "RateLimitMiddleware",
    "SecurityHeadersMiddleware",
]
