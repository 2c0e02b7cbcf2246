"""
Keycloak-backed primary identity provider.

Why: The core needs a provider with an explicit loaded/authenticated state,
scoped token issuance for the backing store, and sign-out. This class keeps
that state machine; protocol details live in `oidc.OIDCClient`.

Flow:
    1. `authorization_url()` creates PKCE state + nonce and returns the IdP URL.
    2. `complete_login(state, code)` exchanges the code, verifies the ID token
       and installs the session.
    3. `get_token(template)` issues a token for the backing store audience.
    4. `sign_out()` / `expire_if_needed()` drop the session.

Security: Tokens stay in memory on this object and are never logged.
"""
from __future__ import annotations

import logging
import secrets
import time
from typing import Dict, Optional

from .domain import ExternalIdentity, mask_email
from .errors import ProviderUnavailable
from .oidc import OIDCClient
from .providers import ChangeNotifier, PrimaryState
from .stores import StateStore
from .tokens import IDTokenVerificationError, JWKSCache, verify_id_token

logger = logging.getLogger("interviewai.identity.primary")


def identity_from_claims(claims: Dict[str, object]) -> ExternalIdentity:
    """Build an ExternalIdentity from verified ID token claims."""
    given = str(claims.get("given_name") or "").strip()
    family = str(claims.get("family_name") or "").strip()
    if given and family:
        name = f"{given} {family}"
    else:
        name = str(claims.get("name") or claims.get("preferred_username") or "").strip()
    picture = claims.get("picture")
    return ExternalIdentity(
        external_id=str(claims["sub"]),
        display_name=name,
        email=str(claims.get("email") or ""),
        avatar_url=str(picture) if picture else None,
        raw=dict(claims),
    )


class KeycloakPrimaryProvider(ChangeNotifier):
    def __init__(
        self,
        client: OIDCClient,
        *,
        state_store: StateStore | None = None,
        jwks_cache: JWKSCache | None = None,
    ) -> None:
        super().__init__()
        self._client = client
        self._states = state_store or StateStore()
        self._jwks = jwks_cache
        self._loaded = False
        self._tokens: Dict[str, object] | None = None
        self._identity: ExternalIdentity | None = None
        self._session_id: Optional[str] = None
        self._expires_at: Optional[int] = None

    # --- observation -------------------------------------------------------

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def user_id(self) -> Optional[str]:
        return self._identity.external_id if self._identity else None

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    def state(self) -> PrimaryState:
        return PrimaryState(
            is_loaded=self._loaded,
            user_id=self.user_id,
            session_id=self._session_id,
            identity=self._identity,
            expires_at=self._expires_at,
        )

    # --- lifecycle ---------------------------------------------------------

    def mark_loaded(self) -> None:
        """Finish initial load (no persisted provider session is restored)."""
        if not self._loaded:
            self._loaded = True
            self._notify()

    def authorization_url(self, *, redirect: Optional[str] = None) -> str:
        code_verifier = OIDCClient.generate_code_verifier()
        nonce = secrets.token_urlsafe(16)
        rec = self._states.create(code_verifier=code_verifier, redirect=redirect, nonce=nonce)
        return self._client.build_authorization_url(
            state=rec.state,
            code_challenge=OIDCClient.code_challenge_s256(code_verifier),
            nonce=nonce,
        )

    async def complete_login(self, *, state: str, code: str) -> Optional[str]:
        """Finish the redirect flow; returns the stored in-app redirect.

        Raises
        ------
        ProviderUnavailable:
            Unknown/expired state, failed code exchange or invalid ID token.
        """
        rec = self._states.pop_valid(state)
        if rec is None:
            raise ProviderUnavailable("invalid_state")
        tokens = await self._client.exchange_code_for_tokens(code=code, code_verifier=rec.code_verifier)
        id_token = tokens.get("id_token")
        if not isinstance(id_token, str):
            raise ProviderUnavailable("id_token_missing")
        try:
            claims = await verify_id_token(id_token=id_token, client=self._client, nonce=rec.nonce, cache=self._jwks)
        except IDTokenVerificationError as exc:
            raise ProviderUnavailable(exc.code) from exc
        self._install(tokens, claims)
        return rec.redirect

    def _install(self, tokens: Dict[str, object], claims: Dict[str, object]) -> None:
        identity = identity_from_claims(claims)
        expires_in = tokens.get("expires_in")
        exp = claims.get("exp")
        expires_at = None
        if isinstance(expires_in, (int, float)):
            expires_at = int(time.time()) + int(expires_in)
        elif isinstance(exp, (int, float)):
            expires_at = int(exp)
        self._tokens = tokens
        self._identity = identity
        self._session_id = str(claims.get("sid") or claims.get("session_state") or "") or None
        self._expires_at = expires_at
        self._loaded = True
        logger.info("Primary session established for %s", mask_email(identity.email))
        self._notify()

    def _clear(self) -> bool:
        had_session = self._identity is not None
        self._tokens = None
        self._identity = None
        self._session_id = None
        self._expires_at = None
        return had_session

    async def sign_out(self) -> None:
        refresh = self._tokens.get("refresh_token") if self._tokens else None
        cleared = self._clear()
        if isinstance(refresh, str):
            try:
                await self._client.end_session(refresh_token=refresh)
            except ProviderUnavailable as exc:
                # Local sign-out already happened; the IdP session times out on its own.
                logger.warning("Provider logout failed: %s", exc.code)
        if cleared:
            self._notify()

    def expire_if_needed(self, now: Optional[float] = None) -> bool:
        """Drop the session once its declared expiry has passed."""
        if self._expires_at is None or self._identity is None:
            return False
        current = time.time() if now is None else now
        if current < self._expires_at:
            return False
        logger.info("Primary session expired")
        self._clear()
        self._notify()
        return True

    async def refresh_if_needed(self, now: Optional[float] = None, *, leeway: float = 60.0) -> bool:
        """Renew the session with the refresh token when it expires within ``leeway``.

        Returns True when the session was renewed. A rejected refresh drops the
        session, the same as expiry.
        """
        if self._expires_at is None or self._identity is None or not self._tokens:
            return False
        current = time.time() if now is None else now
        if current + leeway < self._expires_at:
            return False
        refresh = self._tokens.get("refresh_token")
        if not isinstance(refresh, str):
            return False
        try:
            tokens = await self._client.refresh_tokens(refresh_token=refresh)
        except ProviderUnavailable as exc:
            logger.warning("Primary session refresh failed: %s", exc.code)
            if self._clear():
                self._notify()
            return False
        if self._identity is None:
            # Signed out while the refresh was in flight.
            return False
        merged = dict(self._tokens or {})
        merged.update(tokens)
        self._tokens = merged
        expires_in = tokens.get("expires_in")
        if isinstance(expires_in, (int, float)):
            self._expires_at = int(current) + int(expires_in)
        logger.info("Primary session refreshed")
        self._notify()
        return True

    # --- tokens ------------------------------------------------------------

    async def get_token(self, template: str) -> Optional[str]:
        """Return a token scoped to ``template`` (the backing-store audience).

        Returns None when signed out; raises ProviderUnavailable on exchange errors.
        """
        if not self._tokens or self._identity is None:
            return None
        access = self._tokens.get("access_token")
        if not isinstance(access, str):
            return None
        body = await self._client.exchange_token(subject_token=access, audience=template)
        token = body.get("access_token")
        return token if isinstance(token, str) else None


__all__ = ["KeycloakPrimaryProvider", "identity_from_claims"]
