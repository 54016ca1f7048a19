"""
Tests for the SMART identity provider gateway against a mock transport.
"""

import urllib.parse

import httpx
import pytest
from jose import jwt

from carelink.auth.smart import IdTokenClaims, SmartIdentityGateway
from carelink.exceptions import (
    ClaimValidationFailed,
    DiscoveryFailed,
    InvalidLaunchState,
    TokenExchangeFailed,
    UntrustedIssuer,
    UpstreamTimeout,
)

from conftest import (
    AUTHORIZE_URL,
    CLIENT_ID,
    EHR_ISSUER,
    FHIR_BASE,
    JWKS_URL,
    TOKEN_URL,
    discovery_document,
)

SMART_CONFIG_URL = f"{EHR_ISSUER}/.well-known/smart-configuration"
OPENID_CONFIG_URL = f"{EHR_ISSUER}/.well-known/openid-configuration"


@pytest.fixture
def gateway(settings, http_client):
    return SmartIdentityGateway(settings, http_client, retry_backoff_seconds=0)


def query_of(url):
    return urllib.parse.parse_qs(urllib.parse.urlparse(url).query)


@pytest.mark.anyio
async def test_launch_redirect_targets_authorization_endpoint(gateway, smart_upstream):
    redirect = await gateway.build_launch_redirect(EHR_ISSUER, "launch-abc")

    assert redirect.launch_url.startswith(AUTHORIZE_URL + "?")
    params = query_of(redirect.launch_url)
    assert params["response_type"] == ["code"]
    assert params["client_id"] == [CLIENT_ID]
    assert params["redirect_uri"] == ["http://testserver/auth/smart/callback"]
    assert params["launch"] == ["launch-abc"]
    assert params["aud"] == [EHR_ISSUER]
    assert params["state"] == [redirect.state]
    assert "patient/*.read" in params["scope"][0].split()


@pytest.mark.anyio
async def test_discovery_is_cached_per_issuer(gateway, smart_upstream):
    first = await gateway.build_launch_redirect(EHR_ISSUER, "launch-1")
    second = await gateway.build_launch_redirect(EHR_ISSUER + "/", "launch-2")

    assert first.state != second.state
    assert len(smart_upstream.calls("GET", SMART_CONFIG_URL)) == 1


@pytest.mark.anyio
async def test_discovery_falls_back_to_openid_configuration(gateway, upstream):
    upstream.add("GET", OPENID_CONFIG_URL, httpx.Response(200, json=discovery_document()))

    metadata = await gateway.discover(EHR_ISSUER)

    assert metadata.token_endpoint == TOKEN_URL
    assert len(upstream.calls("GET", SMART_CONFIG_URL)) == 1


@pytest.mark.anyio
async def test_discovery_retries_server_errors(gateway, upstream):
    responses = [httpx.Response(503), httpx.Response(200, json=discovery_document())]
    upstream.add("GET", SMART_CONFIG_URL, lambda request: responses.pop(0))

    metadata = await gateway.discover(EHR_ISSUER)

    assert metadata.authorization_endpoint == AUTHORIZE_URL
    assert len(upstream.calls("GET", SMART_CONFIG_URL)) == 2


@pytest.mark.anyio
async def test_discovery_failure_is_reported(gateway, upstream):
    with pytest.raises(DiscoveryFailed) as exc_info:
        await gateway.build_launch_redirect(EHR_ISSUER, "launch-1")

    assert exc_info.value.issuer == EHR_ISSUER
    assert len(gateway.state_store) == 0


@pytest.mark.anyio
async def test_exchange_maps_id_token_to_principal(gateway, smart_upstream, signer):
    redirect = await gateway.build_launch_redirect(EHR_ISSUER, "launch-abc")
    id_token = signer.sign({"sub": "smart-user", "name": "Pat Smart", "email": "pat@example.com"})
    smart_upstream.add(
        "POST",
        TOKEN_URL,
        httpx.Response(
            200,
            json={
                "access_token": "upstream-access",
                "refresh_token": "upstream-refresh",
                "id_token": id_token,
                "patient": "pat-42",
                "scope": "launch patient/*.read observation/*.read",
            },
        ),
    )

    result = await gateway.exchange_code(None, "code-1", redirect.state)

    assert result.principal.id == "smart-user"
    assert result.principal.role == "patient"
    assert result.principal.fhir_patient_id == "pat-42"
    assert "observation/*.read" in result.principal.scopes
    assert result.access_token == "upstream-access"
    assert result.refresh_token == "upstream-refresh"

    token_request = smart_upstream.calls("POST", TOKEN_URL)[0]
    form = urllib.parse.parse_qs(token_request.content.decode())
    assert form["grant_type"] == ["authorization_code"]
    assert form["code"] == ["code-1"]
    assert form["redirect_uri"] == ["http://testserver/auth/smart/callback"]


@pytest.mark.anyio
async def test_exchange_rejects_unknown_and_reused_state(gateway, smart_upstream, signer):
    with pytest.raises(InvalidLaunchState):
        await gateway.exchange_code(None, "code-1", "forged-state")

    redirect = await gateway.build_launch_redirect(EHR_ISSUER, "launch-abc")
    smart_upstream.add(
        "POST", TOKEN_URL, httpx.Response(200, json={"id_token": signer.sign({"sub": "u"})})
    )
    await gateway.exchange_code(None, "code-1", redirect.state)

    with pytest.raises(InvalidLaunchState):
        await gateway.exchange_code(None, "code-1", redirect.state)


@pytest.mark.anyio
async def test_exchange_rejects_state_from_other_issuer(gateway, smart_upstream):
    redirect = await gateway.build_launch_redirect(EHR_ISSUER, "launch-abc")

    with pytest.raises(InvalidLaunchState):
        await gateway.exchange_code("https://other.example.com", "code-1", redirect.state)


@pytest.mark.anyio
async def test_rejected_code_exchange_surfaces_provider_error(gateway, smart_upstream):
    redirect = await gateway.build_launch_redirect(EHR_ISSUER, "launch-abc")
    smart_upstream.add(
        "POST",
        TOKEN_URL,
        httpx.Response(400, json={"error": "invalid_grant", "error_description": "Code expired"}),
    )

    with pytest.raises(TokenExchangeFailed) as exc_info:
        await gateway.exchange_code(None, "stale-code", redirect.state)

    assert "Code expired" in exc_info.value.message
    assert len(smart_upstream.calls("POST", TOKEN_URL)) == 1


@pytest.mark.anyio
async def test_token_endpoint_timeout(gateway, smart_upstream):
    redirect = await gateway.build_launch_redirect(EHR_ISSUER, "launch-abc")

    def time_out(request):
        raise httpx.ReadTimeout("timed out", request=request)

    smart_upstream.add("POST", TOKEN_URL, time_out)

    with pytest.raises(UpstreamTimeout):
        await gateway.exchange_code(None, "code-1", redirect.state)


@pytest.mark.anyio
async def test_missing_id_token_is_rejected(gateway, smart_upstream):
    redirect = await gateway.build_launch_redirect(EHR_ISSUER, "launch-abc")
    smart_upstream.add("POST", TOKEN_URL, httpx.Response(200, json={"access_token": "a"}))

    with pytest.raises(ClaimValidationFailed):
        await gateway.exchange_code(None, "code-1", redirect.state)


@pytest.mark.anyio
async def test_id_token_for_other_audience_is_rejected(gateway, smart_upstream, signer):
    token = signer.sign({"sub": "u"}, aud="someone-else")

    with pytest.raises(ClaimValidationFailed):
        await gateway.validate_id_token(EHR_ISSUER, token)


@pytest.mark.anyio
async def test_id_token_from_other_issuer_is_rejected(gateway, smart_upstream, signer):
    token = signer.sign({"sub": "u"}, issuer="https://evil.example.com")

    with pytest.raises(ClaimValidationFailed):
        await gateway.validate_id_token(EHR_ISSUER, token)


@pytest.mark.anyio
async def test_expired_id_token_is_rejected(gateway, smart_upstream, signer):
    token = signer.sign({"sub": "u"}, exp=1000)

    with pytest.raises(ClaimValidationFailed):
        await gateway.validate_id_token(EHR_ISSUER, token)


@pytest.mark.anyio
async def test_unadvertised_algorithm_is_rejected(gateway, smart_upstream):
    token = jwt.encode({"sub": "u", "aud": CLIENT_ID, "iss": EHR_ISSUER}, "secret", algorithm="HS256")

    with pytest.raises(ClaimValidationFailed):
        await gateway.validate_id_token(EHR_ISSUER, token)


@pytest.mark.anyio
async def test_valid_id_token_carries_role_and_scopes(gateway, smart_upstream, signer):
    token = signer.sign(
        {"sub": "dr-1", "role": "provider", "scope": "patient/*.read", "fhirPatientId": "pat-9"}
    )

    principal = await gateway.validate_id_token(EHR_ISSUER, token)

    assert principal.role == "provider"
    assert principal.scopes == frozenset({"patient/*.read"})
    assert principal.fhir_patient_id == "pat-9"


def test_claims_default_to_patient_role():
    claims = IdTokenClaims.model_validate({"sub": "u", "role": None, "scope": ["a", "b"]})

    assert claims.role == "patient"
    assert claims.to_principal().scopes == frozenset({"a", "b"})


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.mark.anyio
async def test_launch_rejects_untrusted_issuer(gateway, upstream):
    with pytest.raises(UntrustedIssuer):
        await gateway.build_launch_redirect("https://evil.example.com/fhir", "launch-abc")

    assert upstream.requests == []
    assert len(gateway.state_store) == 0


@pytest.mark.anyio
async def test_exchange_rechecks_issuer_of_stored_launch(gateway, upstream):
    grant = gateway.state_store.record(
        issuer="https://evil.example.com/fhir",
        launch="launch-abc",
        client_id=CLIENT_ID,
        redirect_uri=gateway.redirect_uri,
        scope=gateway.scope,
    )

    with pytest.raises(UntrustedIssuer):
        await gateway.exchange_code(None, "code-1", grant.state)

    assert upstream.requests == []
    assert gateway.state_store.consume(grant.state) is None


@pytest.mark.anyio
async def test_malformed_id_token_never_reaches_the_provider(gateway, upstream):
    for token in ("garbage", "a.b.c", "", "Zm9v.YmFy.YmF6"):
        with pytest.raises(ClaimValidationFailed):
            await gateway.validate_id_token(FHIR_BASE, token)

    assert upstream.requests == []


@pytest.mark.anyio
async def test_id_token_for_untrusted_issuer_is_rejected_locally(gateway, upstream, signer):
    token = signer.sign({"sub": "u"}, issuer="https://evil.example.com/fhir")

    with pytest.raises(UntrustedIssuer):
        await gateway.validate_id_token("https://evil.example.com/fhir", token)

    assert upstream.requests == []


@pytest.mark.anyio
async def test_unknown_kid_refetches_jwks_at_most_once_per_interval(settings, http_client, smart_upstream, signer):
    clock = FakeClock()
    gateway = SmartIdentityGateway(
        settings,
        http_client,
        retry_backoff_seconds=0,
        jwks_refresh_interval_seconds=60,
        clock=clock,
    )

    def with_kid(kid):
        claims = {"sub": "u", "iss": EHR_ISSUER, "aud": CLIENT_ID}
        return jwt.encode(claims, signer.private_pem, algorithm="RS256", headers={"kid": kid})

    for index in range(5):
        with pytest.raises(ClaimValidationFailed):
            await gateway.validate_id_token(EHR_ISSUER, with_kid(f"random-{index}"))

    # One initial fetch plus one forced refresh.
    assert len(smart_upstream.calls("GET", JWKS_URL)) == 2

    clock.now += 61
    with pytest.raises(ClaimValidationFailed):
        await gateway.validate_id_token(EHR_ISSUER, with_kid("random-late"))

    assert len(smart_upstream.calls("GET", JWKS_URL)) == 3

    principal = await gateway.validate_id_token(EHR_ISSUER, signer.sign({"sub": "u"}))
    assert principal.id == "u"
    assert len(smart_upstream.calls("GET", JWKS_URL)) == 3
