"""
Profile Synchronizer: create-if-absent for the internal identity record.

Rules:
- Hit: return the stored profile unchanged; fields are never overwritten.
- Miss (`RecordNotFound`): insert a profile built from the candidate.
- Duplicate on insert (a concurrent writer won): re-read and return that row.
- Any other lookup failure: no insert, the failure is logged as a
  `ProfileConflict` and the result is None (degraded mode).

Concurrent calls for the same mapped id share one in-flight operation.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from .domain import ALLOWED_ROLES, ROLE_NONE, Profile, ProfileCandidate
from .errors import DuplicateRecord, ProfileConflict, RecordNotFound
from .ports import ProfileStore

logger = logging.getLogger("interviewai.identity.profile_sync")


class ProfileSynchronizer:
    def __init__(self, store: ProfileStore, *, timeout: float = 10.0):
        self._store = store
        self._timeout = timeout
        self._inflight: Dict[str, asyncio.Future] = {}
        self.last_error: Optional[ProfileConflict] = None
        self.created = 0

    async def sync(self, mapped_id: str, candidate: ProfileCandidate) -> Optional[Profile]:
        """Ensure a profile exists for ``mapped_id``; returns it or None on failure."""
        task = self._inflight.get(mapped_id)
        if task is None:
            task = asyncio.ensure_future(self._ensure(mapped_id, candidate))
            self._inflight[mapped_id] = task

            def _forget(done: asyncio.Future, key: str = mapped_id) -> None:
                if self._inflight.get(key) is done:
                    del self._inflight[key]

            task.add_done_callback(_forget)
        # Shielded so one cancelled caller does not abort the shared operation.
        return await asyncio.shield(task)

    def _conflict(self, code: str, mapped_id: str, exc: BaseException | None = None) -> None:
        self.last_error = ProfileConflict(code)
        logger.warning(
            "Profile sync aborted for %s: %s%s",
            mapped_id,
            code,
            f" ({exc.__class__.__name__})" if exc is not None else "",
        )

    async def _lookup(self, mapped_id: str) -> Profile:
        return await asyncio.wait_for(self._store.get(mapped_id), self._timeout)

    async def _ensure(self, mapped_id: str, candidate: ProfileCandidate) -> Optional[Profile]:
        try:
            return await self._lookup(mapped_id)
        except RecordNotFound:
            pass
        except asyncio.TimeoutError:
            self._conflict("lookup_timeout", mapped_id)
            return None
        except Exception as exc:
            self._conflict("lookup_failed", mapped_id, exc)
            return None

        role = candidate.role if candidate.role in ALLOWED_ROLES else ROLE_NONE
        profile = Profile(
            id=mapped_id,
            full_name=candidate.full_name,
            role=role,
            provenance=candidate.provenance.value,
            email=candidate.email,
            avatar_url=candidate.avatar_url,
        )
        try:
            created = await asyncio.wait_for(self._store.insert(profile), self._timeout)
        except DuplicateRecord:
            logger.info("Profile %s created concurrently; re-reading", mapped_id)
            try:
                return await self._lookup(mapped_id)
            except asyncio.TimeoutError:
                self._conflict("reread_timeout", mapped_id)
                return None
            except Exception as exc:
                self._conflict("reread_failed", mapped_id, exc)
                return None
        except asyncio.TimeoutError:
            self._conflict("insert_timeout", mapped_id)
            return None
        except Exception as exc:
            self._conflict("insert_failed", mapped_id, exc)
            return None
        logger.info("Profile created for %s (provenance=%s)", mapped_id, profile.provenance)
        self.created += 1
        self.last_error = None
        return created


__all__ = ["ProfileSynchronizer"]
