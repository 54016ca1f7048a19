"""Signed, time-bounded session credentials.

Tokens are compact JWTs signed with HS256 using the process-wide
``JWT_SECRET``. The verifier pins the algorithm: a token whose header names
any other algorithm (including ``none``) is rejected before its signature is
looked at. Expiry is checked here rather than by python-jose so that a token
is already expired at exactly ``iat + ttl``.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from jose import JWTError, jwt

from carelink.security.principal import Principal

SESSION_USE = "session"
REFRESH_USE = "refresh"
ISSUER = "carelink"


class TokenError(Exception):
    """Base class for codec failures. Never shown to clients as-is."""


class InvalidSignature(TokenError):
    pass


class Expired(TokenError):
    pass


class MalformedToken(InvalidSignature):
    """Unparseable, or issued for another use."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionTokenCodec:
    """Issue and verify session tokens carrying a ``Principal``."""

    def __init__(
        self,
        secret: str,
        *,
        algorithm: str = "HS256",
        default_ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not secret:
            raise ValueError("A signing secret is required")
        self._secret = secret
        self.algorithm = algorithm
        self.default_ttl = default_ttl
        self._clock = clock

    def __repr__(self) -> str:
        return f"SessionTokenCodec(algorithm={self.algorithm!r}, default_ttl={self.default_ttl!r})"

    def issue(
        self,
        principal: Principal,
        ttl: Optional[timedelta] = None,
        *,
        token_use: str = SESSION_USE,
    ) -> str:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl.total_seconds() <= 0:
            raise ValueError("ttl must be positive")

        issued_at = self._clock()
        payload = principal.to_claims()
        payload.update(
            {
                "iat": int(issued_at.timestamp()),
                "exp": int((issued_at + ttl).timestamp()),
                "iss": ISSUER,
                "token_use": token_use,
            }
        )
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def verify(self, token: str, *, token_use: str = SESSION_USE) -> Principal:
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise MalformedToken("Token header could not be parsed") from exc

        if header.get("alg") != self.algorithm:
            raise InvalidSignature(f"Unexpected signing algorithm: {header.get('alg')}")

        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                issuer=ISSUER,
                options={"verify_exp": False, "verify_aud": False},
            )
        except JWTError as exc:
            raise InvalidSignature("Token signature verification failed") from exc

        exp = claims.get("exp")
        if not isinstance(exp, (int, float)):
            raise MalformedToken("Token has no expiry")
        if self._clock().timestamp() >= float(exp):
            raise Expired("Token has expired")

        if claims.get("token_use", SESSION_USE) != token_use:
            raise MalformedToken(f"Token is not a {token_use} token")

        try:
            return Principal.from_claims(claims)
        except ValueError as exc:
            raise MalformedToken(str(exc)) from exc
