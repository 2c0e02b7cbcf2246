"""
Supabase-backed record stores for profiles and subscriptions.

The adapters are duck-typed against the async supabase client so tests can
hand in a small fake. The client is expected to expose
`.table(name)` returning a PostgREST query builder offering
`select/eq/order/limit/insert` and an awaitable `execute()` whose result
carries `.data`.

Security:
- The client is created with the anon key; every query runs under the
  bridged session, so row-level security decides what a user can read.
- Only the Session Bridge calls `client.auth.set_session` / `sign_out`.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from postgrest.exceptions import APIError
from supabase import AsyncClient, acreate_client

from .config import IdentitySettings
from .domain import Profile, SubscriptionRecord
from .errors import DuplicateRecord, RecordNotFound

logger = logging.getLogger("interviewai.identity.stores")

PROFILES_TABLE = "profiles"
SUBSCRIPTIONS_TABLE = "user_subscriptions"

# PostgREST "no rows" code for .single(); Postgres unique_violation.
NOT_FOUND_CODE = "PGRST116"
UNIQUE_VIOLATION_CODE = "23505"


async def create_backing_client(settings: IdentitySettings) -> AsyncClient:
    """Create the process-wide async Supabase client from settings."""
    if not settings.supabase_url or not settings.supabase_anon_key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_ANON_KEY are required for the supabase backend")
    return await acreate_client(settings.supabase_url, settings.supabase_anon_key)


def _rows(result: Any) -> list[dict]:
    data = getattr(result, "data", None)
    if data is None and isinstance(result, dict):
        data = result.get("data")
    if isinstance(data, dict):
        return [data]
    return list(data or [])


class SupabaseProfileStore:
    def __init__(self, client: Any, table: str = PROFILES_TABLE):
        self._client = client
        self._table = table

    async def get(self, mapped_id: str) -> Profile:
        try:
            result = await self._client.table(self._table).select("*").eq("id", mapped_id).limit(1).execute()
        except APIError as exc:
            if exc.code == NOT_FOUND_CODE:
                raise RecordNotFound() from exc
            raise
        rows = _rows(result)
        if not rows:
            raise RecordNotFound()
        return Profile.from_row(rows[0])

    async def insert(self, profile: Profile) -> Profile:
        try:
            result = await self._client.table(self._table).insert(profile.to_row()).execute()
        except APIError as exc:
            if exc.code == UNIQUE_VIOLATION_CODE:
                raise DuplicateRecord() from exc
            raise
        rows = _rows(result)
        return Profile.from_row(rows[0]) if rows else profile


class SupabaseSubscriptionStore:
    def __init__(self, client: Any, table: str = SUBSCRIPTIONS_TABLE):
        self._client = client
        self._table = table

    async def latest_for(self, mapped_id: str) -> Optional[SubscriptionRecord]:
        result = await (
            self._client.table(self._table)
            .select("*")
            .eq("user_id", mapped_id)
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        rows = _rows(result)
        if not rows:
            return None
        return SubscriptionRecord.from_row(rows[0])


__all__ = ["SupabaseProfileStore", "SupabaseSubscriptionStore", "create_backing_client"]
