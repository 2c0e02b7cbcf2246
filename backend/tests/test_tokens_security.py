"""
ID token verification (RS256 via the realm JWKS).

Focus:
- valid tokens pass, and claims are returned
- wrong nonce, audience, issuer, kid or an expired token are rejected with a code
"""

from __future__ import annotations

import time

import httpx
import pytest

from identity_access.oidc import OIDCClient, OIDCConfig
from identity_access.tokens import IDTokenVerificationError, JWKSCache, unverified_expiry, verify_id_token

from identity_fakes import RSASigner, make_jwt

CFG = OIDCConfig(
    base_url="http://kc:8080",
    realm="interviewai",
    client_id="interviewai-web",
    redirect_uri="http://app.local/auth/callback",
)


@pytest.fixture(scope="module")
def signer() -> RSASigner:
    return RSASigner()


@pytest.fixture
def client(signer: RSASigner) -> OIDCClient:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=signer.jwks))
    return OIDCClient(CFG, http=httpx.AsyncClient(transport=transport))


def _claims(**overrides) -> dict:
    now = int(time.time())
    claims = {
        "iss": CFG.issuer,
        "aud": CFG.client_id,
        "sub": "kc-user-1",
        "email": "ada@example.com",
        "iat": now,
        "exp": now + 300,
        "nonce": "n-1",
    }
    claims.update(overrides)
    return claims


@pytest.mark.anyio
async def test_valid_token_returns_claims(signer, client):
    claims = await verify_id_token(id_token=signer.sign(_claims()), client=client, nonce="n-1", cache=JWKSCache())
    assert claims["sub"] == "kc-user-1"


@pytest.mark.anyio
@pytest.mark.parametrize(
    "overrides, nonce, code",
    [
        ({}, "other", "nonce_mismatch"),
        ({"aud": "someone-else"}, "n-1", "invalid_id_token"),
        ({"iss": "http://evil/realms/interviewai"}, "n-1", "invalid_id_token"),
        ({"exp": int(time.time()) - 60}, "n-1", "id_token_expired"),
        ({"iat": int(time.time()) + 600}, "n-1", "invalid_id_token"),
    ],
)
async def test_invalid_tokens_are_rejected(signer, client, overrides, nonce, code):
    token = signer.sign(_claims(**overrides))
    with pytest.raises(IDTokenVerificationError) as exc:
        await verify_id_token(id_token=token, client=client, nonce=nonce, cache=JWKSCache())
    assert exc.value.code == code


@pytest.mark.anyio
async def test_unknown_kid_is_rejected(signer, client):
    token = signer.sign(_claims(), kid="rotated-away")
    with pytest.raises(IDTokenVerificationError) as exc:
        await verify_id_token(id_token=token, client=client, cache=JWKSCache())
    assert exc.value.code == "unknown_kid"


@pytest.mark.anyio
async def test_token_signed_by_other_key_is_rejected(client):
    stranger = RSASigner()  # same kid, different key
    with pytest.raises(IDTokenVerificationError) as exc:
        await verify_id_token(id_token=stranger.sign(_claims()), client=client, cache=JWKSCache())
    assert exc.value.code == "invalid_id_token"


@pytest.mark.anyio
async def test_hs256_token_is_rejected(client):
    with pytest.raises(IDTokenVerificationError):
        await verify_id_token(id_token=make_jwt(_claims()), client=client, cache=JWKSCache())


@pytest.mark.anyio
async def test_jwks_is_cached(signer):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url)
        return httpx.Response(200, json=signer.jwks)

    client = OIDCClient(CFG, http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    cache = JWKSCache(ttl_seconds=60)
    for _ in range(3):
        await verify_id_token(id_token=signer.sign(_claims()), client=client, cache=cache)
    assert len(calls) == 1


@pytest.mark.anyio
async def test_jwks_outage_is_a_verification_error(signer):
    client = OIDCClient(CFG, http=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503))))
    with pytest.raises(IDTokenVerificationError) as exc:
        await verify_id_token(id_token=signer.sign(_claims()), client=client, cache=JWKSCache())
    assert exc.value.code == "jwks_fetch_failed"


def test_unverified_expiry_reads_exp_claim():
    assert unverified_expiry(make_jwt({"exp": 1_900_000_000})) == 1_900_000_000
    assert unverified_expiry(make_jwt({"sub": "x"})) is None
    assert unverified_expiry("not-a-jwt") is None
