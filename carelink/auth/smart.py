"""SMART-on-FHIR identity provider gateway.

Handles the three upstream interactions of the SMART app launch:

* discovery of the issuer's ``.well-known`` metadata (cached per issuer),
* construction of the authorization redirect for an EHR launch,
* exchange of the authorization code and validation of the returned ID token.

ID tokens are verified with python-jose against the issuer's JWKS (or the
client secret for HMAC-signed tokens), pinned to the algorithms the issuer
advertises, and their claims are mapped through ``IdTokenClaims``.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
import urllib.parse
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Literal, Optional

import httpx
from jose import JWTError, jwt
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from carelink.auth.discovery import IssuerCache, ProviderMetadata
from carelink.auth.launch_state import LaunchStateStore
from carelink.config import Settings
from carelink.exceptions import (
    ClaimValidationFailed,
    DiscoveryFailed,
    InvalidLaunchState,
    TokenExchangeFailed,
    UntrustedIssuer,
    UpstreamTimeout,
)
from carelink.security.principal import Principal

logger = logging.getLogger(__name__)

SMART_SCOPE = (
    "launch patient/*.read observation/*.read careplan/*.read "
    "appointment/*.read medicationrequest/*.read condition/*.read"
)

WELL_KNOWN_PATHS = (
    "/.well-known/smart-configuration",
    "/.well-known/openid-configuration",
)

# Algorithms python-jose can verify; "none" is never accepted.
SUPPORTED_ALGORITHMS = {
    "RS256", "RS384", "RS512",
    "ES256", "ES384", "ES512",
    "HS256", "HS384", "HS512",
}


class IdTokenClaims(BaseModel):
    """Claims the gateway reads from an identity provider's ID token."""

    model_config = ConfigDict(extra="ignore")

    sub: str
    name: Optional[str] = None
    email: Optional[str] = None
    role: Literal["patient", "provider", "admin"] = "patient"
    fhir_patient_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("fhir_patient_id", "fhirPatientId")
    )
    scope: str = ""

    @field_validator("role", mode="before")
    @classmethod
    def default_role(cls, value: Any) -> Any:
        return value or "patient"

    @field_validator("scope", mode="before")
    @classmethod
    def normalize_scope(cls, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, (list, tuple)):
            return " ".join(str(item) for item in value)
        return value

    def to_principal(self) -> Principal:
        return Principal(
            id=self.sub,
            name=self.name,
            email=self.email,
            role=self.role,
            fhir_patient_id=self.fhir_patient_id,
            scopes=frozenset(self.scope.split()),
        )


@dataclass(frozen=True)
class LaunchRedirect:
    launch_url: str
    client_id: str
    scope: str
    state: str


@dataclass(frozen=True)
class ExchangeResult:
    principal: Principal
    access_token: Optional[str]
    refresh_token: Optional[str]


class SmartIdentityGateway:
    """Talks to SMART / OpenID Connect identity providers on behalf of the API."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        *,
        discovery_cache: Optional[IssuerCache] = None,
        jwks_cache: Optional[IssuerCache] = None,
        state_store: Optional[LaunchStateStore] = None,
        scope: str = SMART_SCOPE,
        discovery_attempts: int = 3,
        retry_backoff_seconds: float = 0.5,
        jwks_refresh_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.client_id = settings.smart_client_id
        self._client_secret = settings.smart_client_secret
        self.redirect_uri = settings.smart_redirect_uri
        self.timeout = settings.upstream_timeout_seconds
        self.scope = scope
        self.http = http_client
        self.discovery_cache = discovery_cache if discovery_cache is not None else IssuerCache()
        self.jwks_cache = jwks_cache if jwks_cache is not None else IssuerCache()
        self.state_store = state_store if state_store is not None else LaunchStateStore(
            settings.launch_state_ttl_seconds
        )
        self.discovery_attempts = max(discovery_attempts, 1)
        self.retry_backoff_seconds = retry_backoff_seconds
        self.trusted_issuers = settings.issuer_allow_list
        self.jwks_refresh_interval_seconds = jwks_refresh_interval_seconds
        self._clock = clock
        # issuer -> monotonic time of the last forced JWKS refetch
        self._jwks_refreshed_at: Dict[str, float] = {}

    def is_trusted_issuer(self, issuer_url: Optional[str]) -> bool:
        return bool(issuer_url) and issuer_url.rstrip("/") in self.trusted_issuers

    def _require_trusted(self, issuer_url: str) -> None:
        if not self.is_trusted_issuer(issuer_url):
            logger.warning("Rejected untrusted issuer %s", issuer_url)
            raise UntrustedIssuer("Issuer is not trusted by this gateway")

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def discover(self, issuer_url: str) -> ProviderMetadata:
        return await self.discovery_cache.get_or_populate(
            issuer_url, lambda: self._fetch_metadata(issuer_url)
        )

    async def _fetch_metadata(self, issuer_url: str) -> ProviderMetadata:
        base = issuer_url.rstrip("/")
        last_reason = "no discovery document found"
        for path in WELL_KNOWN_PATHS:
            url = f"{base}{path}"
            response = await self._get_with_retry(url, issuer_url)
            if response is None:
                continue
            if response.status_code >= 400:
                last_reason = f"{url} returned {response.status_code}"
                continue
            try:
                metadata = ProviderMetadata.model_validate(response.json())
            except (ValueError, ValidationError) as exc:
                last_reason = f"{url} returned an unusable document: {exc.__class__.__name__}"
                continue
            logger.info("Discovered SMART configuration for issuer %s", issuer_url)
            return metadata

        logger.warning("Discovery failed for issuer %s: %s", issuer_url, last_reason)
        raise DiscoveryFailed(f"Could not discover identity provider metadata: {last_reason}", issuer_url)

    async def _get_with_retry(self, url: str, issuer_url: str) -> Optional[httpx.Response]:
        """GET a discovery URL, retrying network errors and 5xx with backoff.

        Returns None when the document is definitively absent (4xx is returned
        as-is for the caller to skip). Raises ``UpstreamTimeout`` if every
        attempt timed out.
        """
        attempt = 1
        timed_out = False
        while True:
            try:
                response = await self.http.get(
                    url, headers={"Accept": "application/json"}, timeout=self.timeout
                )
                if response.status_code < 500:
                    return response
                reason = f"status {response.status_code}"
                timed_out = False
            except httpx.TimeoutException as exc:
                reason = f"timeout: {exc.__class__.__name__}"
                timed_out = True
            except httpx.RequestError as exc:
                reason = f"exception: {exc.__class__.__name__}"
                timed_out = False

            if attempt >= self.discovery_attempts:
                logger.warning(
                    "Discovery request to %s failed after %s attempts: %s",
                    url,
                    attempt,
                    reason,
                )
                if timed_out:
                    raise UpstreamTimeout(f"Identity provider at {issuer_url} timed out")
                return None

            backoff = self.retry_backoff_seconds * (2 ** (attempt - 1))
            sleep_time = backoff + random.uniform(0, backoff / 2)
            logger.info(
                "Retrying discovery %s (attempt %s/%s) after %.2fs due to %s",
                url,
                attempt + 1,
                self.discovery_attempts,
                sleep_time,
                reason,
            )
            attempt += 1
            await asyncio.sleep(sleep_time)

    # ------------------------------------------------------------------
    # Launch
    # ------------------------------------------------------------------

    async def build_launch_redirect(self, issuer_url: str, launch_token: str) -> LaunchRedirect:
        self._require_trusted(issuer_url)
        metadata = await self.discover(issuer_url)

        grant = self.state_store.record(
            issuer=issuer_url,
            launch=launch_token,
            client_id=self.client_id,
            redirect_uri=self.redirect_uri,
            scope=self.scope,
        )
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
            "launch": launch_token,
            "state": grant.state,
            "aud": issuer_url,
        }
        endpoint = metadata.authorization_endpoint
        separator = "&" if urllib.parse.urlparse(endpoint).query else "?"
        launch_url = f"{endpoint}{separator}{urllib.parse.urlencode(params)}"

        logger.info("Built SMART launch redirect for issuer %s", issuer_url)
        return LaunchRedirect(
            launch_url=launch_url,
            client_id=self.client_id,
            scope=self.scope,
            state=grant.state,
        )

    # ------------------------------------------------------------------
    # Code exchange
    # ------------------------------------------------------------------

    async def exchange_code(
        self, issuer_url: Optional[str], code: str, state: Optional[str]
    ) -> ExchangeResult:
        """Exchange an authorization code for tokens and the caller's principal.

        The ``state`` must belong to a pending launch; it is consumed whether or
        not the exchange succeeds. Never retried: authorization codes are
        single-use.
        """
        grant = self.state_store.consume(state)
        if grant is None:
            raise InvalidLaunchState("Invalid or expired state parameter")
        if issuer_url and issuer_url.rstrip("/") != grant.issuer.rstrip("/"):
            raise InvalidLaunchState("State does not belong to this issuer")

        issuer_url = grant.issuer
        self._require_trusted(issuer_url)
        metadata = await self.discover(issuer_url)

        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": grant.redirect_uri,
            "client_id": self.client_id,
        }
        auth = (self.client_id, self._client_secret) if self._client_secret else None

        try:
            response = await self.http.post(
                metadata.token_endpoint,
                data=data,
                auth=auth,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as exc:
            logger.warning("Token exchange with %s timed out", issuer_url)
            raise UpstreamTimeout(f"Identity provider at {issuer_url} timed out") from exc
        except httpx.RequestError as exc:
            logger.warning("Token exchange with %s failed: %s", issuer_url, exc.__class__.__name__)
            raise TokenExchangeFailed("Identity provider could not be reached", issuer_url) from exc

        if response.status_code >= 400:
            detail = _error_description(response)
            logger.warning(
                "Token exchange rejected by %s (%s): %s",
                issuer_url,
                response.status_code,
                detail,
            )
            raise TokenExchangeFailed(
                f"Authorization code exchange failed ({response.status_code}): {detail}",
                issuer_url,
            )

        try:
            token_set: Dict[str, Any] = response.json()
        except ValueError as exc:
            raise TokenExchangeFailed("Token endpoint returned a non-JSON body", issuer_url) from exc

        id_token = token_set.get("id_token")
        if not id_token:
            raise ClaimValidationFailed("Token response did not include an ID token", issuer_url)

        access_token = token_set.get("access_token")
        claims = await self._decode_id_token(issuer_url, metadata, id_token, access_token)

        # SMART launch context and granted scopes may come back beside the ID token.
        if not (claims.get("fhir_patient_id") or claims.get("fhirPatientId")):
            claims["fhir_patient_id"] = token_set.get("patient")
        if not claims.get("scope") and token_set.get("scope"):
            claims["scope"] = token_set["scope"]

        principal = _principal_from_claims(claims, issuer_url)
        logger.info("SMART login completed for principal %s via %s", principal.id, issuer_url)
        return ExchangeResult(
            principal=principal,
            access_token=access_token,
            refresh_token=token_set.get("refresh_token"),
        )

    # ------------------------------------------------------------------
    # ID token validation
    # ------------------------------------------------------------------

    async def validate_id_token(self, issuer_url: str, token: str) -> Principal:
        """Validate a bearer ID token issued by ``issuer_url``.

        The token is parsed before any upstream call, so malformed credentials
        never trigger discovery or JWKS traffic.
        """
        self._require_trusted(issuer_url)
        _id_token_header(token, issuer_url)
        metadata = await self.discover(issuer_url)
        claims = await self._decode_id_token(issuer_url, metadata, token, None)
        return _principal_from_claims(claims, issuer_url)

    async def _decode_id_token(
        self,
        issuer_url: str,
        metadata: ProviderMetadata,
        token: str,
        access_token: Optional[str],
    ) -> Dict[str, Any]:
        header = _id_token_header(token, issuer_url)
        algorithm = header["alg"]
        allowed = set(metadata.id_token_signing_alg_values_supported) & SUPPORTED_ALGORITHMS
        if algorithm not in allowed:
            raise ClaimValidationFailed(f"ID token algorithm {algorithm!r} is not accepted", issuer_url)

        if algorithm.startswith("HS"):
            if not self._client_secret:
                raise ClaimValidationFailed("HMAC-signed ID tokens need a client secret", issuer_url)
            key: Any = self._client_secret
        else:
            key = await self._signing_key(issuer_url, metadata, header.get("kid"))

        try:
            return jwt.decode(
                token,
                key,
                algorithms=[algorithm],
                audience=self.client_id or None,
                issuer=metadata.issuer or issuer_url,
                access_token=access_token,
                options={
                    "verify_aud": bool(self.client_id),
                    "verify_at_hash": access_token is not None,
                },
            )
        except JWTError as exc:
            logger.warning("ID token from %s failed validation: %s", issuer_url, exc.__class__.__name__)
            raise ClaimValidationFailed(f"ID token validation failed: {exc}", issuer_url) from exc

    async def _signing_key(
        self, issuer_url: str, metadata: ProviderMetadata, kid: Optional[str]
    ) -> Dict[str, Any]:
        keys = await self._jwks(issuer_url, metadata)
        key = _select_key(keys, kid)
        if key is None and self._may_refresh_jwks(issuer_url):
            # Key rotation: refetch before giving up, at most once per interval.
            self.jwks_cache.invalidate(issuer_url)
            keys = await self._jwks(issuer_url, metadata)
            key = _select_key(keys, kid)
        if key is None:
            raise ClaimValidationFailed("ID token signing key not recognized", issuer_url)
        return key

    def _may_refresh_jwks(self, issuer_url: str) -> bool:
        issuer = issuer_url.rstrip("/")
        now = self._clock()
        last = self._jwks_refreshed_at.get(issuer)
        if last is not None and now - last < self.jwks_refresh_interval_seconds:
            return False
        self._jwks_refreshed_at[issuer] = now
        return True

    async def _jwks(self, issuer_url: str, metadata: ProviderMetadata) -> List[Dict[str, Any]]:
        if not metadata.jwks_uri:
            raise ClaimValidationFailed("Issuer does not publish a JWKS", issuer_url)

        async def _load() -> List[Dict[str, Any]]:
            try:
                response = await self.http.get(metadata.jwks_uri, timeout=self.timeout)
            except httpx.TimeoutException as exc:
                raise UpstreamTimeout(f"Identity provider at {issuer_url} timed out") from exc
            except httpx.RequestError as exc:
                raise DiscoveryFailed("JWKS could not be fetched", issuer_url) from exc
            if response.status_code >= 400:
                raise DiscoveryFailed(f"JWKS request returned {response.status_code}", issuer_url)
            try:
                return list(response.json().get("keys", []))
            except (ValueError, AttributeError) as exc:
                raise DiscoveryFailed("JWKS document could not be parsed", issuer_url) from exc

        return await self.jwks_cache.get_or_populate(issuer_url, _load)


def _id_token_header(token: str, issuer_url: str) -> Dict[str, Any]:
    """Parse the header and payload without verifying; reject what can never verify."""
    try:
        header = jwt.get_unverified_header(token)
        jwt.get_unverified_claims(token)
    except JWTError as exc:
        raise ClaimValidationFailed("Malformed ID token", issuer_url) from exc

    algorithm = header.get("alg")
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ClaimValidationFailed(f"ID token algorithm {algorithm!r} is not accepted", issuer_url)
    return header


def _select_key(keys: List[Dict[str, Any]], kid: Optional[str]) -> Optional[Dict[str, Any]]:
    if kid:
        return next((key for key in keys if key.get("kid") == kid), None)
    return keys[0] if len(keys) == 1 else None


def _principal_from_claims(claims: Dict[str, Any], issuer_url: str) -> Principal:
    try:
        return IdTokenClaims.model_validate(claims).to_principal()
    except ValidationError as exc:
        fields = ", ".join(str(error["loc"][0]) for error in exc.errors() if error.get("loc"))
        raise ClaimValidationFailed(f"ID token claims are invalid: {fields}", issuer_url) from exc


def _error_description(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return "authorization denied"
    if isinstance(body, dict):
        return body.get("error_description") or body.get("error") or "authorization denied"
    return "authorization denied"
