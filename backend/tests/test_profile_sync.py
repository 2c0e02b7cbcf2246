"""
Profile Synchronizer: create-if-absent semantics.
"""

from __future__ import annotations

import asyncio

import pytest

from identity_access.domain import ROLE_ADMIN, ROLE_STUDENT, Profile, ProfileCandidate, Provenance
from identity_access.errors import DuplicateRecord, RecordNotFound
from identity_access.mapping import map_external_id
from identity_access.profile_sync import ProfileSynchronizer
from identity_access.stores import InMemoryProfileStore

from identity_fakes import SlowProfileStore

MAPPED = map_external_id("user_sync")


def _candidate(**overrides) -> ProfileCandidate:
    values = dict(full_name="Ada Lovelace", role=ROLE_STUDENT, provenance=Provenance.PRIMARY, email="ada@example.com")
    values.update(overrides)
    return ProfileCandidate(**values)


@pytest.mark.anyio
async def test_miss_inserts_profile_from_candidate():
    store = InMemoryProfileStore()
    sync = ProfileSynchronizer(store, timeout=0.5)

    profile = await sync.sync(MAPPED, _candidate())

    assert profile is not None
    assert profile.id == MAPPED
    assert profile.full_name == "Ada Lovelace"
    assert profile.role == ROLE_STUDENT
    assert profile.provenance == "clerk"
    assert profile.created_at is not None
    assert store.inserts == 1
    assert sync.created == 1


@pytest.mark.anyio
async def test_hit_never_overwrites_existing_fields():
    existing = Profile(id=MAPPED, full_name="Original", role=ROLE_ADMIN, provenance="manual")
    store = InMemoryProfileStore([existing])
    sync = ProfileSynchronizer(store, timeout=0.5)

    profile = await sync.sync(MAPPED, _candidate(full_name="Changed", role=ROLE_STUDENT))

    assert profile == existing
    assert store.inserts == 0


@pytest.mark.anyio
async def test_repeated_sync_creates_exactly_one_record():
    store = InMemoryProfileStore()
    sync = ProfileSynchronizer(store, timeout=0.5)

    for _ in range(3):
        await sync.sync(MAPPED, _candidate())

    assert store.inserts == 1
    assert len(store.all()) == 1


@pytest.mark.anyio
async def test_concurrent_calls_for_same_id_are_coalesced():
    store = InMemoryProfileStore()
    sync = ProfileSynchronizer(store, timeout=0.5)

    results = await asyncio.gather(*(sync.sync(MAPPED, _candidate()) for _ in range(10)))

    assert store.inserts == 1
    assert len({r.id for r in results if r is not None}) == 1
    assert all(r is not None for r in results)


class _FailingLookupStore(InMemoryProfileStore):
    async def get(self, mapped_id: str) -> Profile:
        raise ConnectionError("db down")


@pytest.mark.anyio
async def test_lookup_error_aborts_without_insert():
    store = _FailingLookupStore()
    sync = ProfileSynchronizer(store, timeout=0.5)

    assert await sync.sync(MAPPED, _candidate()) is None
    assert store.inserts == 0
    assert sync.last_error is not None
    assert sync.last_error.code == "lookup_failed"


class _RacingStore:
    """First lookup misses, insert loses the race, second lookup finds the winner."""

    def __init__(self, winner: Profile):
        self.winner = winner
        self.lookups = 0

    async def get(self, mapped_id: str) -> Profile:
        self.lookups += 1
        if self.lookups == 1:
            raise RecordNotFound()
        return self.winner

    async def insert(self, profile: Profile) -> Profile:
        raise DuplicateRecord()


@pytest.mark.anyio
async def test_duplicate_insert_race_rereads_existing_row():
    winner = Profile(id=MAPPED, full_name="Winner", role=ROLE_STUDENT, provenance="clerk")
    store = _RacingStore(winner)
    sync = ProfileSynchronizer(store, timeout=0.5)

    assert await sync.sync(MAPPED, _candidate()) == winner
    assert store.lookups == 2


@pytest.mark.anyio
async def test_lookup_timeout_fails_without_insert():
    sync = ProfileSynchronizer(SlowProfileStore(delay=1.0), timeout=0.05)

    assert await sync.sync(MAPPED, _candidate()) is None
    assert sync.last_error.code == "lookup_timeout"


@pytest.mark.anyio
async def test_unknown_candidate_role_is_stored_as_none():
    store = InMemoryProfileStore()
    sync = ProfileSynchronizer(store, timeout=0.5)

    profile = await sync.sync(MAPPED, _candidate(role="superuser"))

    assert profile.role == "none"
