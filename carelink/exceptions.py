"""
Domain exceptions for the CareLink gateway.

Each error carries the ``kind`` reported to clients and the HTTP status the
exception handlers in ``carelink.main`` render it with.
"""

from typing import Any, List, Optional


class CareLinkError(Exception):
    """Base exception for all gateway errors."""

    kind: str = "InternalError"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[List[Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class MissingCredential(CareLinkError):
    """No bearer credential was presented."""

    kind = "MissingCredential"
    status_code = 401


class InvalidCredential(CareLinkError):
    """The credential failed signature, format, or expiry checks."""

    kind = "InvalidCredential"
    status_code = 401


class Forbidden(CareLinkError):
    """The principal lacks the role, scope, or patient context a route needs."""

    kind = "Forbidden"
    status_code = 403


class ValidationFailed(CareLinkError):
    kind = "ValidationFailed"
    status_code = 400


class UntrustedIssuer(ValidationFailed):
    """The issuer is not on the configured allow-list."""

    kind = "UntrustedIssuer"


class InvalidLaunchState(ValidationFailed):
    """The callback presented an unknown, expired, or reused state value."""

    kind = "InvalidLaunchState"


class IdentityProviderError(CareLinkError):
    status_code = 502

    def __init__(self, message: str, issuer: Optional[str] = None):
        super().__init__(message)
        self.issuer = issuer


class DiscoveryFailed(IdentityProviderError):
    kind = "DiscoveryFailed"


class TokenExchangeFailed(IdentityProviderError):
    kind = "TokenExchangeFailed"


class ClaimValidationFailed(IdentityProviderError):
    kind = "ClaimValidationFailed"
    status_code = 401


class UpstreamUnavailable(CareLinkError):
    """The upstream server could not be reached."""

    kind = "UpstreamUnavailable"
    status_code = 502


class UpstreamTimeout(UpstreamUnavailable):
    kind = "UpstreamTimeout"
    status_code = 504


class UpstreamRejected(CareLinkError):
    """The upstream server answered with a non-2xx status."""

    kind = "UpstreamRejected"
    status_code = 502

    def __init__(self, message: str, upstream_status: int, body: Any = None):
        super().__init__(message)
        self.upstream_status = upstream_status
        self.body = body

    def __str__(self) -> str:  # pragma: no cover - simple representation
        return f"{self.kind}: {self.message}; status={self.upstream_status}"
