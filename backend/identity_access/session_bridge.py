"""
Session Bridge: keeps the backing store's session in step with the primary
provider.

Why: Row-level security in the backing store needs a session derived from the
provider session. The bridge is the only writer of that session.

Behavior:
- Provider authenticated: request a token for the backing-store template and
  install it with ``auth.set_session``.
- Provider signed out, expired or absent: ``auth.sign_out`` and forget the
  bridged session.
- Unchanged provider session (same session key and expiry): no-op. A refreshed
  provider session is exchanged again.
- Any token exchange error, timeout or empty token: nothing is installed and the
  backing store is left signed out.

Concurrency: calls are serialized by a lock and tagged with a generation; a
call superseded by a newer trigger does not install anything.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time
from typing import Callable, Hashable, Optional

from .errors import IdentityAccessError
from .ports import BackingStoreAuth
from .providers import PrimaryProvider, PrimaryState
from .tokens import unverified_expiry

logger = logging.getLogger("interviewai.identity.session_bridge")

# The backing store refreshes via the provider, never via its own refresh token.
REFRESH_TOKEN_PLACEHOLDER = "placeholder"


@dataclass(frozen=True)
class BridgedSession:
    access_token: str
    refresh_token: str
    expires_at: Optional[int]
    provider_session_key: Hashable
    provider_expires_at: Optional[int] = None


def _min_expiry(*candidates: Optional[int]) -> Optional[int]:
    values = [c for c in candidates if c is not None]
    return min(values) if values else None


class SessionBridge:
    def __init__(
        self,
        primary: PrimaryProvider,
        store_auth: BackingStoreAuth,
        *,
        template: str = "supabase",
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._primary = primary
        self._auth = store_auth
        self._template = template
        self._timeout = timeout
        self._clock = clock
        self._lock = asyncio.Lock()
        self._generation = 0
        self._current: Optional[BridgedSession] = None
        # Unknown at startup: the backing store may hold a persisted session.
        self._signed_out = False
        self._closed = False

    @property
    def current(self) -> Optional[BridgedSession]:
        return self._current

    @property
    def generation(self) -> int:
        return self._generation

    def is_bridged(self, now: Optional[float] = None) -> bool:
        if self._current is None:
            return False
        current = self._clock() if now is None else now
        return self._current.expires_at is None or current < self._current.expires_at

    async def sync(self, state: Optional[PrimaryState] = None) -> bool:
        """Reconcile the backing-store session with the provider state.

        Returns True when a valid bridged session exists afterwards.
        """
        self._generation += 1
        generation = self._generation
        async with self._lock:
            if self._closed:
                return False
            if generation != self._generation:
                # A newer trigger is queued behind the lock and will reconcile.
                return self.is_bridged()
            snapshot = state if state is not None else self._primary.state()
            return await self._reconcile(snapshot, generation)

    async def _reconcile(self, state: PrimaryState, generation: int) -> bool:
        key = state.session_key() if state.is_authenticated else None
        if key is None:
            await self._teardown()
            return False

        now = self._clock()
        if state.expires_at is not None and now >= state.expires_at:
            logger.info("Provider session expired; clearing backing-store session")
            await self._teardown()
            return False

        current = self._current
        if (
            current is not None
            and current.provider_session_key == key
            and current.provider_expires_at == state.expires_at
            and self.is_bridged(now)
        ):
            return True

        try:
            token = await asyncio.wait_for(self._primary.get_token(self._template), self._timeout)
        except asyncio.TimeoutError:
            logger.warning("Token exchange timed out after %.1fs", self._timeout)
            await self._teardown()
            return False
        except IdentityAccessError as exc:
            logger.warning("Token exchange failed: %s", exc.code)
            await self._teardown()
            return False
        except Exception as exc:
            logger.warning("Token exchange failed: %s", exc.__class__.__name__)
            await self._teardown()
            return False

        if generation != self._generation:
            logger.debug("Discarding token for superseded generation %d", generation)
            return self.is_bridged()
        if not token:
            logger.warning("Token exchange returned no token")
            await self._teardown()
            return False

        session = BridgedSession(
            access_token=token,
            refresh_token=REFRESH_TOKEN_PLACEHOLDER,
            expires_at=_min_expiry(unverified_expiry(token), state.expires_at),
            provider_session_key=key,
            provider_expires_at=state.expires_at,
        )
        try:
            await asyncio.wait_for(
                self._auth.set_session(session.access_token, session.refresh_token), self._timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Installing backing-store session timed out")
            await self._teardown()
            return False
        except Exception as exc:
            logger.warning("Installing backing-store session failed: %s", exc.__class__.__name__)
            await self._teardown()
            return False

        self._current = session
        self._signed_out = False
        logger.info("Backing-store session bridged (generation %d)", generation)
        return True

    async def _teardown(self) -> None:
        had_session = self._current is not None
        self._current = None
        if self._signed_out and not had_session:
            return
        try:
            await asyncio.wait_for(self._auth.sign_out(), self._timeout)
        except asyncio.TimeoutError:
            logger.warning("Backing-store sign-out timed out")
        except Exception as exc:
            logger.warning("Backing-store sign-out failed: %s", exc.__class__.__name__)
        self._signed_out = True
        if had_session:
            logger.info("Backing-store session cleared")

    async def teardown(self) -> None:
        """Invalidate the bridged session regardless of provider state."""
        self._generation += 1
        async with self._lock:
            await self._teardown()

    async def close(self) -> None:
        await self.teardown()
        self._closed = True


__all__ = ["BridgedSession", "REFRESH_TOKEN_PLACEHOLDER", "SessionBridge"]
