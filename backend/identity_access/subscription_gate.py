"""
Subscription Gate: premium entitlement for the current mapped id.

Entitled means the most recently created subscription record is active, its
period has not ended and its tier is premium. Fetch failures and timeouts are
NOT_ENTITLED. A fetch that finishes after the mapped id changed is discarded.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Callable, Iterable, Optional, Set, TypeVar

from .aggregator import AuthContextAggregator
from .domain import Readiness, SubscriptionRecord
from .errors import SubscriptionFetchFailure
from .ports import SubscriptionStore, Unsubscribe

logger = logging.getLogger("interviewai.identity.subscription_gate")

DEFAULT_PREMIUM_TIERS = frozenset({"pro", "enterprise"})
STATUS_ACTIVE = "active"

T = TypeVar("T")


class GateState(str, Enum):
    LOADING = "loading"
    ENTITLED = "entitled"
    NOT_ENTITLED = "not_entitled"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(ts: datetime) -> datetime:
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


def _is_current(record: Optional[SubscriptionRecord], now: datetime) -> bool:
    if record is None or record.status != STATUS_ACTIVE or record.period_end is None:
        return False
    return _aware(now) < _aware(record.period_end)


def compute_entitlement(
    record: Optional[SubscriptionRecord],
    now: datetime,
    tiers: Iterable[str] = DEFAULT_PREMIUM_TIERS,
) -> bool:
    """Pure entitlement rule: active AND now < period_end AND tier is premium."""
    if record is None or not _is_current(record, now):
        return False
    return record.plan_tier in {t.lower() for t in tiers}


class SubscriptionGate:
    def __init__(
        self,
        store: SubscriptionStore,
        *,
        timeout: float = 10.0,
        tiers: Iterable[str] = DEFAULT_PREMIUM_TIERS,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._timeout = timeout
        self._tiers = frozenset(t.lower() for t in tiers)
        self._clock = clock
        self._generation = 0
        self._mapped_id: Optional[str] = None
        self._record: Optional[SubscriptionRecord] = None
        self._state = GateState.LOADING
        self._tasks: Set[asyncio.Task] = set()
        self.last_error: Optional[SubscriptionFetchFailure] = None

    @property
    def state(self) -> GateState:
        return self._state

    @property
    def record(self) -> Optional[SubscriptionRecord]:
        return self._record

    @property
    def mapped_id(self) -> Optional[str]:
        return self._mapped_id

    async def set_mapped_id(self, mapped_id: Optional[str]) -> GateState:
        if mapped_id == self._mapped_id and self._state is not GateState.LOADING:
            return self._state
        return await self._fetch(mapped_id, self._begin(mapped_id))

    def mark_loading(self) -> None:
        """Invalidate in-flight fetches and show the spinner state."""
        self._generation += 1
        self._mapped_id = None
        self._record = None
        self._state = GateState.LOADING

    def _begin(self, mapped_id: Optional[str]) -> int:
        """Switch to ``mapped_id`` and supersede every earlier fetch."""
        self._generation += 1
        self._mapped_id = mapped_id
        self._record = None
        self._state = GateState.LOADING if mapped_id is not None else GateState.NOT_ENTITLED
        return self._generation

    async def _fetch(self, mapped_id: Optional[str], generation: int) -> GateState:
        if mapped_id is None:
            return self._state

        record: Optional[SubscriptionRecord] = None
        failure: Optional[SubscriptionFetchFailure] = None
        try:
            record = await asyncio.wait_for(self._store.latest_for(mapped_id), self._timeout)
        except asyncio.TimeoutError:
            failure = SubscriptionFetchFailure("fetch_timeout")
        except Exception as exc:
            failure = SubscriptionFetchFailure("fetch_failed", exc.__class__.__name__)

        if generation != self._generation:
            logger.debug("Discarding subscription result for superseded id %s", mapped_id)
            return self._state

        if failure is not None:
            logger.warning("Subscription fetch failed for %s: %s", mapped_id, failure.code)
            self.last_error = failure
            self._record = None
            self._state = GateState.NOT_ENTITLED
            return self._state

        self.last_error = None
        self._record = record
        entitled = compute_entitlement(record, self._clock(), self._tiers)
        self._state = GateState.ENTITLED if entitled else GateState.NOT_ENTITLED
        return self._state

    # --- predicates over the fetched record ---------------------------------

    def is_entitled(self) -> bool:
        return self._state is GateState.ENTITLED

    def has_active_plan(self, plan_tier: str) -> bool:
        record = self._record
        if record is None or not _is_current(record, self._clock()):
            return False
        return record.plan_tier == plan_tier.lower()

    def has_any_active_plan(self) -> bool:
        return _is_current(self._record, self._clock())

    def render(self, content: Callable[[], T], upgrade_prompt: Callable[[], T], spinner: Callable[[], T]) -> T:
        if self._state is GateState.LOADING:
            return spinner()
        if self._state is GateState.ENTITLED:
            return content()
        return upgrade_prompt()

    # --- reactive binding ---------------------------------------------------

    def bind(self, aggregator: AuthContextAggregator) -> Unsubscribe:
        """Follow the aggregator's mapped id; must be called inside a running loop."""

        def _on_change() -> None:
            try:
                snapshot = aggregator.snapshot()
            except Exception as exc:
                logger.warning("Auth snapshot unavailable for gate: %s", exc.__class__.__name__)
                self._begin(None)
                return
            if snapshot.readiness is Readiness.LOADING:
                self.mark_loading()
                return
            self._follow(snapshot.mapped_id)

        unsubscribe = aggregator.subscribe(_on_change)
        _on_change()
        return unsubscribe

    def _follow(self, mapped_id: Optional[str]) -> None:
        # A non-None id in LOADING always has a fetch in flight for it.
        if mapped_id == self._mapped_id and (self._state is not GateState.LOADING or mapped_id is not None):
            return
        generation = self._begin(mapped_id)
        if mapped_id is None:
            return
        task = asyncio.get_running_loop().create_task(self._fetch(mapped_id, generation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def settle(self) -> None:
        """Wait for scheduled refreshes (tests and shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))


__all__ = ["DEFAULT_PREMIUM_TIERS", "GateState", "SubscriptionGate", "compute_entitlement"]
