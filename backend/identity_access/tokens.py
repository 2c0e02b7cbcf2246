"""
JWT helpers for the identity_access bounded context.

Why: Keep cryptographic validation of ID tokens outside the provider state
machine so it can be unit tested independently.

Security: Validates the ID token signature with the realm's JWKS (RS256 only),
ensures issuer, audience and expiration are respected. `unverified_expiry`
only reads the ``exp`` claim of tokens we just received from the provider over
TLS; it is used to clamp lifetimes, never to authorize.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple
import time

from jose import jwt
from jose.exceptions import JOSEError

from .errors import IdentityAccessError, ProviderUnavailable
from .oidc import OIDCClient, OIDCConfig


class IDTokenVerificationError(IdentityAccessError):
    """Raised when the ID token fails verification."""


@dataclass
class _CacheEntry:
    jwks: Dict[str, object]
    expires_at: float


class JWKSCache:
    """Very small in-memory cache for JWKS responses."""

    def __init__(self, ttl_seconds: int = 300):
        self.ttl_seconds = ttl_seconds
        self._entries: Dict[Tuple[str, str], _CacheEntry] = {}

    async def get(self, client: OIDCClient) -> Dict[str, object]:
        key = (client.cfg.base_url, client.cfg.realm)
        now = time.time()
        entry = self._entries.get(key)
        if entry and entry.expires_at > now:
            return entry.jwks
        try:
            jwks = await client.fetch_jwks()
        except ProviderUnavailable as exc:
            raise IDTokenVerificationError(exc.code) from exc
        self._entries[key] = _CacheEntry(jwks=jwks, expires_at=now + self.ttl_seconds)
        return jwks


JWKS_CACHE = JWKSCache()

MAX_CLOCK_SKEW_SECONDS = 5  # Allow minimal skew between servers


async def verify_id_token(
    *,
    id_token: str,
    client: OIDCClient,
    nonce: Optional[str] = None,
    cache: JWKSCache | None = None,
) -> Dict[str, object]:
    """Validate an ID token using the realm JWKS and return its claims.

    Raises
    ------
    IDTokenVerificationError:
        When the token is invalid (signature, issuer, audience, expiry, kid, nonce).
    """
    cfg: OIDCConfig = client.cfg
    cache = cache or JWKS_CACHE
    jwks = await cache.get(client)
    try:
        header = jwt.get_unverified_header(id_token)
    except JOSEError as exc:
        raise IDTokenVerificationError("invalid_id_token") from exc
    kid = header.get("kid")
    if not kid:
        raise IDTokenVerificationError("missing_kid")
    key_dict = _find_key(jwks, kid)
    if not key_dict:
        raise IDTokenVerificationError("unknown_kid")

    try:
        claims = jwt.decode(
            id_token,
            key_dict,
            algorithms=["RS256"],
            audience=cfg.client_id,
            issuer=cfg.issuer,
            options={
                "verify_signature": True,
                "verify_aud": True,
                "verify_exp": False,
                "verify_iat": False,
                "verify_nbf": False,
                "verify_at_hash": False,
            },
        )
    except JOSEError as exc:
        raise IDTokenVerificationError("invalid_id_token") from exc

    _validate_temporal_claims(claims)
    if nonce is not None and claims.get("nonce") != nonce:
        raise IDTokenVerificationError("nonce_mismatch")
    return claims


def unverified_expiry(token: str) -> Optional[int]:
    """Return the ``exp`` claim of a JWT as epoch seconds, or None."""
    try:
        claims = jwt.get_unverified_claims(token)
    except JOSEError:
        return None
    exp = claims.get("exp")
    if isinstance(exp, (int, float)):
        return int(exp)
    return None


def _find_key(jwks: Dict[str, object], kid: str) -> Dict[str, object] | None:
    keys = jwks.get("keys")
    if not isinstance(keys, list):
        return None
    for key in keys:
        if isinstance(key, dict) and key.get("kid") == kid:
            return key
    return None


def _validate_temporal_claims(claims: Dict[str, object]) -> None:
    now = time.time()
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        raise IDTokenVerificationError("invalid_id_token")
    if exp + MAX_CLOCK_SKEW_SECONDS < now:
        raise IDTokenVerificationError("id_token_expired")

    iat = claims.get("iat")
    if isinstance(iat, (int, float)) and iat - MAX_CLOCK_SKEW_SECONDS > now:
        raise IDTokenVerificationError("invalid_id_token")

    nbf = claims.get("nbf")
    if isinstance(nbf, (int, float)) and nbf - MAX_CLOCK_SKEW_SECONDS > now:
        raise IDTokenVerificationError("invalid_id_token")
