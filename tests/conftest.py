import os

os.environ.setdefault("JWT_SECRET", "test-secret")

import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Tuple, Union

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jose import jwk, jwt

from carelink.config import Settings
from carelink.di import ServiceContainer
from carelink.main import create_app
from carelink.security.principal import Principal
from carelink.security.session_tokens import SessionTokenCodec

FHIR_BASE = "https://fhir.example.com/baseR4"
EHR_ISSUER = "https://ehr.example.com/fhir"
AUTHORIZE_URL = "https://ehr.example.com/auth/authorize"
TOKEN_URL = "https://ehr.example.com/auth/token"
JWKS_URL = "https://ehr.example.com/jwks"
CLIENT_ID = "carelink-client"


class UpstreamStub:
    """Mock-transport handler routing requests by method and URL (query ignored)."""

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], Union[httpx.Response, Callable]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, url: str, response) -> None:
        self.routes[(method, url)] = response

    def calls(self, method: str, url: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and _plain_url(r) == url]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.routes.get((request.method, _plain_url(request)))
        if response is None:
            return httpx.Response(404, json={"error": "not found"})
        if callable(response):
            return response(request)
        return response


def _plain_url(request: httpx.Request) -> str:
    return f"{request.url.scheme}://{request.url.host}{request.url.path}"


class RsaSigner:
    """Signs ID tokens the way an identity provider would."""

    def __init__(self, kid: str = "kid-1") -> None:
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.kid = kid
        self.private_pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
        public_pem = key.public_key().public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        public_jwk = jwk.construct(public_pem, "RS256").to_dict()
        public_jwk["kid"] = kid
        self.jwks = {"keys": [public_jwk]}

    def sign(self, claims: Dict[str, Any], issuer: str = EHR_ISSUER, **overrides) -> str:
        now = int(time.time())
        payload = {"iss": issuer, "aud": CLIENT_ID, "iat": now, "exp": now + 300}
        payload.update(claims)
        payload.update(overrides)
        return jwt.encode(payload, self.private_pem, algorithm="RS256", headers={"kid": self.kid})


def discovery_document(issuer: str = EHR_ISSUER) -> Dict[str, Any]:
    return {
        "issuer": issuer,
        "authorization_endpoint": AUTHORIZE_URL,
        "token_endpoint": TOKEN_URL,
        "jwks_uri": JWKS_URL,
        "id_token_signing_alg_values_supported": ["RS256"],
        "scopes_supported": ["launch", "patient/*.read"],
    }


@pytest.fixture(scope="session")
def anyio_backend():
    """Restrict anyio tests to the asyncio backend."""

    yield "asyncio"


@pytest.fixture(scope="session")
def signer():
    return RsaSigner()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="test-secret",
        fhir_server_url=FHIR_BASE,
        smart_client_id=CLIENT_ID,
        trusted_issuers=(EHR_ISSUER,),
        base_url="http://testserver",
        rate_limit_enabled=False,
    )


@pytest.fixture
def upstream():
    return UpstreamStub()


@pytest.fixture
def smart_upstream(upstream, signer):
    """Upstream with a discoverable SMART issuer publishing ``signer``'s keys."""
    upstream.add(
        "GET",
        f"{EHR_ISSUER}/.well-known/smart-configuration",
        httpx.Response(200, json=discovery_document()),
    )
    upstream.add("GET", JWKS_URL, httpx.Response(200, json=signer.jwks))
    return upstream


@pytest.fixture
def http_client(upstream):
    return httpx.AsyncClient(transport=httpx.MockTransport(upstream))


@pytest.fixture
def client(settings, http_client):
    container = ServiceContainer(settings, http_client=http_client)
    app = create_app(settings, container=container)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def make_token(client):
    """Issue a session token for an arbitrary principal."""

    def _make(**fields) -> str:
        fields.setdefault("id", "user-1")
        return client.app.state.container.token_codec.issue(Principal(**fields))

    return _make


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_header():
    return bearer


def expired_session_token() -> str:
    """A correctly signed session token whose hour-long lifetime ended a day ago."""
    two_days_ago = lambda: datetime.now(timezone.utc) - timedelta(days=2)
    codec = SessionTokenCodec("test-secret", clock=two_days_ago)
    principal = Principal(id="user-1", fhir_patient_id="pat-1", scopes={"patient/*.read"})
    return codec.issue(principal, timedelta(hours=1))


def flip_payload_byte(token: str) -> str:
    header, payload, signature = token.split(".")
    index = len(payload) // 2
    replacement = "A" if payload[index] != "A" else "B"
    return ".".join([header, payload[:index] + replacement + payload[index + 1:], signature])
