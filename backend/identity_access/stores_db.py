"""
Postgres-backed record stores (psycopg 3) for server-side use.

Why: Operator tooling (profile backfills) and server deployments talk to the
database directly instead of going through PostgREST. Same contract as the
Supabase adapters so the synchronizer and the gate do not care.

Security:
- Use a service-role DSN only for tooling; application traffic should go
  through a limited login role so row-level security applies.
- Table identifiers are validated before they are composed into SQL.

Design: each call opens a short-lived connection; the blocking driver runs in
a worker thread via `asyncio.to_thread`.
"""
from __future__ import annotations

import asyncio
import os
import re
from typing import Any, Optional, Sequence

import psycopg

from .domain import Profile, SubscriptionRecord
from .errors import DuplicateRecord, RecordNotFound

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}(?:\.[A-Za-z_][A-Za-z0-9_]{0,62})?$")

_PROFILE_COLUMNS = "id::text, full_name, avatar_url, email, role::text, auth_provider, created_at"
_SUBSCRIPTION_COLUMNS = (
    "user_id::text, plan_type, status, current_period_start, current_period_end, created_at"
)


def _resolve_dsn(dsn: str | None) -> str:
    resolved = dsn or os.getenv("DATABASE_URL") or os.getenv("SUPABASE_DB_URL", "")
    if not resolved:
        raise RuntimeError("No database DSN provided for the Postgres record stores")
    return resolved


def _validated_table(table: str) -> str:
    if not _TABLE_NAME.match(table or ""):
        raise ValueError("Invalid table name")
    return table


def _profile_from_tuple(row: Sequence[Any]) -> Profile:
    return Profile.from_row(
        {
            "id": row[0],
            "full_name": row[1],
            "avatar_url": row[2],
            "email": row[3],
            "role": row[4],
            "auth_provider": row[5],
            "created_at": row[6],
        }
    )


class DBProfileStore:
    """Postgres-backed `profiles` access.

    Parameters
    ----------
    dsn:
        Psycopg3 connection string. Falls back to DATABASE_URL / SUPABASE_DB_URL.
    table:
        Table name, optionally schema-qualified. Defaults to `public.profiles`.
    """

    def __init__(self, dsn: str | None = None, table: str = "public.profiles") -> None:
        self._dsn = _resolve_dsn(dsn)
        self._table = _validated_table(table)

    def _get_sync(self, mapped_id: str) -> Profile:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(f"select {_PROFILE_COLUMNS} from {self._table} where id = %s", (mapped_id,))
                row = cur.fetchone()
        if not row:
            raise RecordNotFound()
        return _profile_from_tuple(row)

    def _insert_sync(self, profile: Profile) -> Profile:
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"insert into {self._table} (id, full_name, avatar_url, email, role, auth_provider) "
                    f"values (%s, %s, %s, %s, %s, %s) on conflict (id) do nothing "
                    f"returning {_PROFILE_COLUMNS}",
                    (
                        profile.id,
                        profile.full_name,
                        profile.avatar_url,
                        profile.email,
                        profile.role,
                        profile.provenance,
                    ),
                )
                row = cur.fetchone()
        if not row:
            raise DuplicateRecord()
        return _profile_from_tuple(row)

    async def get(self, mapped_id: str) -> Profile:
        return await asyncio.to_thread(self._get_sync, mapped_id)

    async def insert(self, profile: Profile) -> Profile:
        return await asyncio.to_thread(self._insert_sync, profile)


class DBSubscriptionStore:
    def __init__(self, dsn: str | None = None, table: str = "public.user_subscriptions") -> None:
        self._dsn = _resolve_dsn(dsn)
        self._table = _validated_table(table)

    def _latest_sync(self, mapped_id: str) -> Optional[SubscriptionRecord]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"select {_SUBSCRIPTION_COLUMNS} from {self._table} "
                    f"where user_id = %s order by created_at desc limit 1",
                    (mapped_id,),
                )
                row = cur.fetchone()
        if not row:
            return None
        return SubscriptionRecord.from_row(
            {
                "user_id": row[0],
                "plan_type": row[1],
                "status": row[2],
                "current_period_start": row[3],
                "current_period_end": row[4],
                "created_at": row[5],
            }
        )

    async def latest_for(self, mapped_id: str) -> Optional[SubscriptionRecord]:
        return await asyncio.to_thread(self._latest_sync, mapped_id)


__all__ = ["DBProfileStore", "DBSubscriptionStore"]
