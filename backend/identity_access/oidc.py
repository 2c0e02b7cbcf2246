"""
Minimal async OIDC client for the Keycloak primary identity provider.

Why: Keep provider protocol details (PKCE, token endpoint grants, logout) out
of the session bridge and the provider state machine so they can be unit
tested with a mocked transport.

Security: Uses PKCE (S256). Callers keep state & code_verifier server-side
(see `stores.StateStore`). Tokens are never logged.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional
import base64
import hashlib
import os
from urllib.parse import urlencode

import httpx

from .errors import ProviderUnavailable

DEFAULT_HTTP_TIMEOUT = 5.0

TOKEN_EXCHANGE_GRANT = "urn:ietf:params:oauth:grant-type:token-exchange"
ACCESS_TOKEN_TYPE = "urn:ietf:params:oauth:token-type:access_token"


@dataclass(frozen=True)
class OIDCConfig:
    base_url: str  # internal base URL (server-to-server), e.g., http://keycloak:8080
    realm: str  # e.g., interviewai
    client_id: str  # e.g., interviewai-web
    redirect_uri: str  # e.g., http://localhost:5173/auth/callback
    public_base_url: str | None = None  # browser-facing URL

    @property
    def issuer(self) -> str:
        return f"{self.base_url}/realms/{self.realm}"

    @property
    def auth_endpoint(self) -> str:
        base = self.public_base_url or self.base_url
        return f"{base}/realms/{self.realm}/protocol/openid-connect/auth"

    @property
    def token_endpoint(self) -> str:
        # Token exchange happens server-side; use internal base URL
        return f"{self.issuer}/protocol/openid-connect/token"

    @property
    def logout_endpoint(self) -> str:
        return f"{self.issuer}/protocol/openid-connect/logout"

    @property
    def certs_endpoint(self) -> str:
        return f"{self.issuer}/protocol/openid-connect/certs"


class OIDCClient:
    """Talks to the realm's token and logout endpoints.

    Parameters
    ----------
    config:
        Realm/client coordinates.
    http:
        Optional shared `httpx.AsyncClient` (tests pass one with a MockTransport).
    timeout:
        Per-request timeout in seconds; every IdP call is bounded.
    """

    def __init__(self, config: OIDCConfig, *, http: httpx.AsyncClient | None = None, timeout: float = DEFAULT_HTTP_TIMEOUT):
        self.cfg = config
        self._http = http
        self._timeout = timeout

    @staticmethod
    def generate_code_verifier(length: int = 64) -> str:
        """Generate a high-entropy URL-safe code_verifier (RFC 7636: 43-128 chars)."""
        return base64.urlsafe_b64encode(os.urandom(length)).decode("ascii").rstrip("=")

    @staticmethod
    def code_challenge_s256(code_verifier: str) -> str:
        digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
        return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")

    def build_authorization_url(self, *, state: str, code_challenge: str, nonce: Optional[str] = None) -> str:
        """Return the authorization URL for the configured realm/client."""
        params = {
            "response_type": "code",
            "client_id": self.cfg.client_id,
            "redirect_uri": self.cfg.redirect_uri,
            "scope": "openid email profile",
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        if nonce:
            params["nonce"] = nonce
        return f"{self.cfg.auth_endpoint}?{urlencode(params)}"

    async def _post_form(self, url: str, data: Dict[str, str], *, failure_code: str) -> httpx.Response:
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        try:
            if self._http is not None:
                return await self._http.post(url, data=data, headers=headers, timeout=self._timeout)
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                return await client.post(url, data=data, headers=headers)
        except httpx.HTTPError as exc:
            raise ProviderUnavailable(failure_code) from exc

    async def _token_request(self, data: Dict[str, str], *, failure_code: str) -> Dict[str, object]:
        resp = await self._post_form(self.cfg.token_endpoint, data, failure_code=failure_code)
        if resp.status_code != 200:
            raise ProviderUnavailable(failure_code)
        try:
            body = resp.json()
        except ValueError as exc:
            raise ProviderUnavailable(failure_code) from exc
        if not isinstance(body, dict) or "access_token" not in body:
            raise ProviderUnavailable(failure_code)
        return body

    async def exchange_code_for_tokens(self, *, code: str, code_verifier: str) -> Dict[str, object]:
        """Exchange an authorization code; raises ProviderUnavailable on failure."""
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.cfg.client_id,
            "redirect_uri": self.cfg.redirect_uri,
            "code_verifier": code_verifier,
        }
        return await self._token_request(data, failure_code="code_exchange_failed")

    async def refresh_tokens(self, *, refresh_token: str) -> Dict[str, object]:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.cfg.client_id,
        }
        return await self._token_request(data, failure_code="refresh_failed")

    async def exchange_token(self, *, subject_token: str, audience: str) -> Dict[str, object]:
        """Request a token scoped to ``audience`` (RFC 8693 token exchange).

        This is how a backing-store credential is derived from the provider
        session: Keycloak signs a short-lived access token for the audience
        client, which the backing store is configured to trust.
        """
        data = {
            "grant_type": TOKEN_EXCHANGE_GRANT,
            "client_id": self.cfg.client_id,
            "subject_token": subject_token,
            "subject_token_type": ACCESS_TOKEN_TYPE,
            "requested_token_type": ACCESS_TOKEN_TYPE,
            "audience": audience,
        }
        return await self._token_request(data, failure_code="token_exchange_failed")

    async def end_session(self, *, refresh_token: str) -> None:
        """Revoke the provider session. Non-2xx answers raise ProviderUnavailable."""
        data = {"client_id": self.cfg.client_id, "refresh_token": refresh_token}
        resp = await self._post_form(self.cfg.logout_endpoint, data, failure_code="logout_failed")
        if resp.status_code not in (200, 204):
            raise ProviderUnavailable("logout_failed")

    async def fetch_jwks(self) -> Dict[str, object]:
        try:
            if self._http is not None:
                resp = await self._http.get(self.cfg.certs_endpoint, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.get(self.cfg.certs_endpoint)
        except httpx.HTTPError as exc:
            raise ProviderUnavailable("jwks_fetch_failed") from exc
        if resp.status_code != 200:
            raise ProviderUnavailable("jwks_fetch_failed")
        try:
            jwks = resp.json()
        except ValueError as exc:
            raise ProviderUnavailable("jwks_invalid") from exc
        if not isinstance(jwks, dict) or "keys" not in jwks:
            raise ProviderUnavailable("jwks_invalid")
        return jwks
