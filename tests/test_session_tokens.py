"""
Tests for session token issue and verification.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt
from jose.utils import base64url_decode, base64url_encode

from carelink.security.principal import Principal
from carelink.security.session_tokens import (
    REFRESH_USE,
    Expired,
    InvalidSignature,
    MalformedToken,
    SessionTokenCodec,
)

SECRET = "unit-test-secret"
START = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def codec(clock):
    return SessionTokenCodec(SECRET, clock=clock)


@pytest.fixture
def principal():
    return Principal(
        id="user-7",
        name="Sam Provider",
        email="sam@example.com",
        role="provider",
        fhir_patient_id="pat-7",
        scopes={"patient/*.read", "observation/*.read"},
    )


def test_verify_returns_issued_principal(codec, principal):
    assert codec.verify(codec.issue(principal)) == principal


def test_token_expires_exactly_at_ttl(codec, clock, principal):
    token = codec.issue(principal, timedelta(hours=1))

    clock.now = START + timedelta(minutes=59, seconds=59)
    assert codec.verify(token).id == "user-7"

    clock.now = START + timedelta(hours=1)
    with pytest.raises(Expired):
        codec.verify(token)


def test_non_positive_ttl_is_rejected(codec, principal):
    with pytest.raises(ValueError):
        codec.issue(principal, timedelta(0))


def test_tampered_payload_fails_signature(codec, principal):
    header, payload, signature = codec.issue(principal).split(".")
    claims = json.loads(base64url_decode(payload.encode()))
    claims["role"] = "admin"
    forged_payload = base64url_encode(json.dumps(claims).encode()).decode()

    with pytest.raises(InvalidSignature):
        codec.verify(f"{header}.{forged_payload}.{signature}")


def test_token_signed_with_other_secret_is_rejected(codec, principal):
    other = SessionTokenCodec("another-secret", clock=lambda: START)

    with pytest.raises(InvalidSignature):
        codec.verify(other.issue(principal))


def test_unsigned_token_is_rejected(codec, principal):
    header = base64url_encode(json.dumps({"alg": "none", "typ": "JWT"}).encode()).decode()
    claims = dict(principal.to_claims(), iss="carelink", exp=int(START.timestamp()) + 3600)
    payload = base64url_encode(json.dumps(claims).encode()).decode()

    with pytest.raises(InvalidSignature):
        codec.verify(f"{header}.{payload}.")


def test_other_hmac_algorithm_is_rejected(codec, principal):
    claims = dict(principal.to_claims(), iss="carelink", exp=int(START.timestamp()) + 3600)
    token = jwt.encode(claims, SECRET, algorithm="HS512")

    with pytest.raises(InvalidSignature):
        codec.verify(token)


def test_garbage_is_malformed(codec):
    with pytest.raises(MalformedToken):
        codec.verify("not-a-token")


def test_refresh_and_session_tokens_are_not_interchangeable(codec, principal):
    refresh_token = codec.issue(principal, timedelta(days=7), token_use=REFRESH_USE)
    session_token = codec.issue(principal)

    assert codec.verify(refresh_token, token_use=REFRESH_USE) == principal
    with pytest.raises(MalformedToken):
        codec.verify(refresh_token)
    with pytest.raises(MalformedToken):
        codec.verify(session_token, token_use=REFRESH_USE)


def test_codec_requires_secret():
    with pytest.raises(ValueError):
        SessionTokenCodec("")
