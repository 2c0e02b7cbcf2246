"""
Provider-facing state snapshots and change notification.

Both identity providers expose an immutable snapshot via `state()` and notify
listeners synchronously whenever that snapshot changes. Listeners must not
block; the identity core schedules its async pipeline from them.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, List, Mapping, Optional, Protocol

from .domain import ExternalIdentity, Profile
from .ports import Listener, Unsubscribe

logger = logging.getLogger("interviewai.identity.providers")


@dataclass(frozen=True)
class PrimaryState:
    is_loaded: bool = False
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    identity: Optional[ExternalIdentity] = None
    expires_at: Optional[int] = None  # epoch seconds

    @property
    def is_authenticated(self) -> bool:
        return self.is_loaded and bool(self.user_id)

    def session_key(self) -> Optional[tuple[str, str]]:
        """Identity of the provider session used for de-duplication."""
        if not self.user_id:
            return None
        return (self.user_id, self.session_id or "")


@dataclass(frozen=True)
class SecondaryState:
    is_loaded: bool = False
    is_authenticated: bool = False
    user: Optional[Mapping[str, Any]] = None
    session: Optional[Mapping[str, Any]] = None
    profile: Optional[Profile] = None


class PrimaryProvider(Protocol):
    is_loaded: bool
    user_id: Optional[str]
    session_id: Optional[str]

    def state(self) -> PrimaryState: ...

    async def sign_out(self) -> None: ...

    async def get_token(self, template: str) -> Optional[str]: ...

    def subscribe(self, listener: Listener) -> Unsubscribe: ...


class SecondaryProvider(Protocol):
    def state(self) -> SecondaryState: ...

    async def login(self, email: str, password: str) -> None: ...

    async def register(self, name: str, email: str, password: str, role: Optional[str]) -> None: ...

    async def logout(self) -> None: ...

    def subscribe(self, listener: Listener) -> Unsubscribe: ...


class ChangeNotifier:
    """Small listener registry shared by providers and the aggregator."""

    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Unsubscribe:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                # A broken listener must not stop the others from observing the change.
                logger.exception("State listener failed")


__all__ = [
    "ChangeNotifier",
    "PrimaryProvider",
    "PrimaryState",
    "SecondaryProvider",
    "SecondaryState",
]
