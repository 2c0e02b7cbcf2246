"""
In-memory stores for development and tests: StateStore, ProfileStore,
SubscriptionStore.

Why: Keep login state (PKCE code_verifier, nonce) server-side and offer record
stores with the same contract as the Supabase and Postgres adapters, so the
core can run without a database.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional
import secrets
import time

from .domain import Profile, SubscriptionRecord
from .errors import DuplicateRecord, RecordNotFound


def _now() -> int:
    return int(time.time())


@dataclass
class StateRecord:
    state: str
    code_verifier: str
    redirect: Optional[str]
    expires_at: int
    nonce: Optional[str] = None


class StateStore:
    def __init__(self):
        self._data: Dict[str, StateRecord] = {}

    def create(
        self,
        *,
        code_verifier: str,
        ttl_seconds: int = 900,
        redirect: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> StateRecord:
        state = secrets.token_urlsafe(24)
        rec = StateRecord(state=state, code_verifier=code_verifier, redirect=redirect, expires_at=_now() + ttl_seconds, nonce=nonce)
        self._data[state] = rec
        return rec

    def pop_valid(self, state: str) -> Optional[StateRecord]:
        rec = self._data.pop(state, None)
        if not rec:
            return None
        if rec.expires_at < _now():
            return None
        return rec


class InMemoryProfileStore:
    def __init__(self, profiles: Iterable[Profile] = ()):
        self._rows: Dict[str, Profile] = {p.id: p for p in profiles}
        self.inserts = 0

    async def get(self, mapped_id: str) -> Profile:
        try:
            return self._rows[mapped_id]
        except KeyError:
            raise RecordNotFound() from None

    async def insert(self, profile: Profile) -> Profile:
        if profile.id in self._rows:
            raise DuplicateRecord()
        if profile.created_at is None:
            profile = replace(profile, created_at=datetime.now(timezone.utc))
        self._rows[profile.id] = profile
        self.inserts += 1
        return profile

    def all(self) -> List[Profile]:
        return list(self._rows.values())


class InMemorySubscriptionStore:
    def __init__(self, records: Iterable[SubscriptionRecord] = ()):
        self._records: List[SubscriptionRecord] = list(records)

    def add(self, record: SubscriptionRecord) -> None:
        self._records.append(record)

    async def latest_for(self, mapped_id: str) -> Optional[SubscriptionRecord]:
        mine = [r for r in self._records if r.user_id == mapped_id]
        if not mine:
            return None
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        # Insertion order breaks ties for records without created_at.
        return max(enumerate(mine), key=lambda pair: (_aware(pair[1].created_at) or epoch, pair[0]))[1]


def _aware(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is not None and ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts
