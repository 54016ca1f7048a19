"""Per-route authorization chain exposed as FastAPI dependencies.

A request moves through four stages before its handler runs:

1. the bearer credential is pulled from the ``Authorization`` header
   (``MissingCredential`` when absent);
2. the credential is verified by one of the schemes the route accepts
   (``InvalidCredential`` when none verifies; signature and expiry failures
   are reported identically);
3. the resulting ``Principal`` is checked against the route's ``AccessRule``
   with the pure functions in ``carelink.security.policy`` (``Forbidden``);
4. the principal is stored on ``request.state.principal`` and handed to the
   handler.

Routes describe what they need with an ``AccessRule`` and call
``require_access(rule)``; no handler inspects tokens itself.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from carelink.auth.smart import SUPPORTED_ALGORITHMS
from carelink.di import ServiceContainer, get_container
from carelink.exceptions import (
    CareLinkError,
    Forbidden,
    InvalidCredential,
    MissingCredential,
)
from carelink.security import policy
from carelink.security.principal import Principal
from carelink.security.session_tokens import ISSUER as SESSION_ISSUER
from carelink.security.session_tokens import TokenError

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

SESSION = "session"
SMART = "smart"


@dataclass(frozen=True)
class AccessRule:
    """What a route demands of its caller."""

    schemes: Tuple[str, ...] = (SESSION,)
    roles: Tuple[str, ...] = ()
    scope: Optional[str] = None
    patient_context: bool = False

    def __post_init__(self) -> None:
        unknown = set(self.schemes) - {SESSION, SMART}
        if unknown or not self.schemes:
            raise ValueError(f"Unsupported credential schemes: {sorted(unknown) or 'none'}")


def _may_be_id_token(token: str) -> bool:
    """Unverified peek: False for anything the SMART scheme could never accept.

    Non-JWT credentials, unparseable payloads, locally issued session tokens
    and unsigned tokens are settled without any upstream call.
    """
    try:
        header = jwt.get_unverified_header(token)
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return False
    if claims.get("iss") == SESSION_ISSUER:
        return False
    return header.get("alg") in SUPPORTED_ALGORITHMS


async def _verify(token: str, schemes: Tuple[str, ...], container: ServiceContainer) -> Principal:
    id_token_candidate = _may_be_id_token(token)
    for scheme in schemes:
        if scheme == SESSION:
            try:
                return container.token_codec.verify(token)
            except TokenError as exc:
                logger.info("Session token rejected: %s", exc.__class__.__name__)
        elif scheme == SMART and id_token_candidate:
            try:
                return await container.identity_gateway.validate_id_token(
                    container.settings.fhir_server_url, token
                )
            except CareLinkError as exc:
                logger.info("SMART token rejected: %s", exc.kind)
    raise InvalidCredential("Invalid or expired token")


def _enforce(rule: AccessRule, principal: Principal) -> None:
    if rule.roles and not policy.has_role(principal, rule.roles):
        raise Forbidden("Insufficient permissions")
    if rule.scope and not policy.has_scope(principal, rule.scope):
        raise Forbidden(f"Scope '{rule.scope}' required")
    if rule.patient_context and not policy.has_patient_context(principal):
        raise Forbidden("Patient context required")


def require_access(rule: AccessRule = AccessRule()):
    """Create a dependency that authenticates and authorizes per ``rule``."""

    async def _dependency(
        request: Request,
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
        container: ServiceContainer = Depends(get_container),
    ) -> Principal:
        if credentials is None or credentials.scheme.lower() != "bearer" or not credentials.credentials:
            raise MissingCredential("Access token required")

        principal = await _verify(credentials.credentials, rule.schemes, container)
        try:
            _enforce(rule, principal)
        except Forbidden:
            logger.warning(
                "Principal %s denied %s %s",
                principal.id,
                request.method,
                request.url.path,
            )
            raise

        request.state.principal = principal
        return principal

    return _dependency
