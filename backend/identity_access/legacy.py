"""
Secondary identity provider: the legacy email/password credential store.

Credentials are checked by database functions in the backing store
(`authenticate_user`, `register_manual_user`); the resulting session is kept
in client-local state under `manual_session`. Profile ids issued by the legacy
store are already internal ids.

Errors from `login`/`register` are raised to the caller as `LegacyAuthError`.
Passwords are never logged; emails are masked.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Optional

from postgrest.exceptions import APIError

from .domain import ALLOWED_ROLES, ROLE_STUDENT, Profile, Provenance, mask_email
from .errors import LegacyAuthError
from .local_state import MANUAL_SESSION_KEY, LocalStateStore
from .providers import ChangeNotifier, SecondaryState

logger = logging.getLogger("interviewai.identity.legacy")

# Marker token of the legacy session; it authorizes nothing server-side.
LEGACY_ACCESS_TOKEN = "manual_session_token"


def _profile_from_user(user: Mapping[str, Any], fallback_id: Optional[str]) -> Optional[Profile]:
    row = dict(user)
    row.setdefault("id", fallback_id)
    if not row.get("id"):
        return None
    row.setdefault("auth_provider", Provenance.LEGACY.value)
    return Profile.from_row(row)


class LegacyCredentialProvider(ChangeNotifier):
    """Legacy login provider.

    Parameters
    ----------
    client:
        Async backing-store client exposing ``rpc(name, params).execute()``.
    local_state:
        Client-local store that persists the legacy session across restarts.
    """

    def __init__(self, client: Any, local_state: LocalStateStore):
        super().__init__()
        self._client = client
        self._local = local_state
        self._loaded = False
        self._user: Optional[dict] = None
        self._session: Optional[dict] = None
        self._profile: Optional[Profile] = None

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None

    @property
    def user(self) -> Optional[dict]:
        return self._user

    @property
    def session(self) -> Optional[dict]:
        return self._session

    @property
    def profile(self) -> Optional[Profile]:
        return self._profile

    def state(self) -> SecondaryState:
        return SecondaryState(
            is_loaded=self._loaded,
            is_authenticated=self.is_authenticated,
            user=self._user,
            session=self._session,
            profile=self._profile,
        )

    def restore(self) -> None:
        """Load a persisted session; a corrupt entry is dropped."""
        raw = self._local.get(MANUAL_SESSION_KEY)
        if raw:
            try:
                data = json.loads(raw)
                user = data["user"]
                if not isinstance(user, dict):
                    raise ValueError("user is not an object")
                self._install(data, user)
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning("Dropping unreadable legacy session: %s", exc.__class__.__name__)
                self._local.remove(MANUAL_SESSION_KEY)
                self._user = self._session = self._profile = None
        self._loaded = True
        self._notify()

    def _install(self, session: dict, user: dict) -> None:
        self._session = session
        self._user = user
        self._profile = _profile_from_user(user, session.get("id"))

    async def login(self, email: str, password: str) -> None:
        try:
            result = await self._client.rpc(
                "authenticate_user", {"user_email": email, "user_password": password}
            ).execute()
        except APIError as exc:
            logger.warning("Legacy login failed for %s: %s", mask_email(email), exc.code)
            raise LegacyAuthError("login_failed", exc.message or "Invalid email or password") from exc
        rows = list(getattr(result, "data", None) or [])
        if not rows:
            logger.info("Legacy login rejected for %s", mask_email(email))
            raise LegacyAuthError("invalid_credentials", "Invalid credentials")
        first = rows[0]
        user = first.get("user_data") if isinstance(first, dict) else None
        if not isinstance(user, dict):
            raise LegacyAuthError("invalid_credentials", "Invalid credentials")
        session = {"user": user, "access_token": LEGACY_ACCESS_TOKEN, "id": first.get("user_id")}
        self._local.set(MANUAL_SESSION_KEY, json.dumps(session))
        self._install(session, user)
        self._loaded = True
        logger.info("Legacy session established for %s", mask_email(email))
        self._notify()

    async def register(self, name: str, email: str, password: str, role: Optional[str] = None) -> None:
        """Create a legacy account. Does not sign in; callers log in afterwards."""
        effective_role = role or ROLE_STUDENT
        if effective_role not in ALLOWED_ROLES:
            raise LegacyAuthError("invalid_role", f"unsupported role: {effective_role}")
        try:
            await self._client.rpc(
                "register_manual_user",
                {
                    "user_email": email,
                    "user_password": password,
                    "user_full_name": name,
                    "user_role": effective_role,
                },
            ).execute()
        except APIError as exc:
            logger.warning("Legacy registration failed for %s: %s", mask_email(email), exc.code)
            raise LegacyAuthError("registration_failed", exc.message or "Failed to create account") from exc
        logger.info("Legacy account created for %s", mask_email(email))

    async def logout(self) -> None:
        self._local.remove(MANUAL_SESSION_KEY)
        changed = self._session is not None
        self._user = self._session = self._profile = None
        if changed:
            self._notify()


__all__ = ["LEGACY_ACCESS_TOKEN", "LegacyCredentialProvider"]
