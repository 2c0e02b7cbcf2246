"""
Ports used by the identity core.

Keep these small and framework-agnostic so tests can supply simple fakes.
"""
from __future__ import annotations

from typing import Any, Callable, Optional, Protocol

from .domain import Profile, SubscriptionRecord


class ProfileStore(Protocol):
    """Row access to the `profiles` table keyed by mapped id.

    Contract:
        `get` raises `RecordNotFound` on a miss and any other exception on a
        lookup failure; `insert` raises `DuplicateRecord` when the id exists.
    """

    async def get(self, mapped_id: str) -> Profile: ...

    async def insert(self, profile: Profile) -> Profile: ...


class SubscriptionStore(Protocol):
    """Read access to `user_subscriptions`."""

    async def latest_for(self, mapped_id: str) -> Optional[SubscriptionRecord]: ...


class BackingStoreAuth(Protocol):
    """The backing store's session surface (e.g. `supabase_client.auth`)."""

    async def set_session(self, access_token: str, refresh_token: str) -> Any: ...

    async def sign_out(self) -> Any: ...


Listener = Callable[[], None]
Unsubscribe = Callable[[], None]


__all__ = ["BackingStoreAuth", "Listener", "ProfileStore", "SubscriptionStore", "Unsubscribe"]
