"""
Identity core: composition root and reactive pipeline.

Pipeline on every primary-provider change:
    bridge.sync -> map_external_id -> profile sync -> aggregator.set_profile

Each run captures a pipeline generation; results of a superseded run are
dropped. Provider listeners are synchronous, so the pipeline runs as tracked
tasks; `settle()` waits for them.

Usage:
    core = await build_identity_core(load_settings(), backing_client=client)
    await core.start()
    decision = core.guard("admin").evaluate()
    gate = core.subscription_gate()
    ...
    await core.close()
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, List, Optional, Set

import httpx

from .aggregator import AuthContextAggregator
from .config import IdentitySettings, ensure_secure_config_on_startup, load_settings
from .domain import ProfileCandidate, Provenance, display_name_for, resolve_role
from .errors import DeterministicMappingFailure
from .guard import AccessControlGuard
from .legacy import LegacyCredentialProvider
from .local_state import ElevatedAccessMarker, LocalStateStore
from .mapping import map_external_id
from .oidc import OIDCClient, OIDCConfig
from .ports import ProfileStore, SubscriptionStore, Unsubscribe
from .primary import KeycloakPrimaryProvider
from .profile_sync import ProfileSynchronizer
from .providers import PrimaryState
from .session_bridge import SessionBridge
from .stores import InMemoryProfileStore, InMemorySubscriptionStore
from .subscription_gate import SubscriptionGate

logger = logging.getLogger("interviewai.identity.core")


class IdentityCore:
    def __init__(
        self,
        *,
        settings: IdentitySettings,
        primary: KeycloakPrimaryProvider,
        secondary: LegacyCredentialProvider,
        bridge: SessionBridge,
        synchronizer: ProfileSynchronizer,
        aggregator: AuthContextAggregator,
        marker: ElevatedAccessMarker,
        subscriptions: SubscriptionStore,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self.primary = primary
        self.secondary = secondary
        self.bridge = bridge
        self.synchronizer = synchronizer
        self.aggregator = aggregator
        self.marker = marker
        self.subscriptions = subscriptions
        self._http = http
        self._pipeline_generation = 0
        self._tasks: Set[asyncio.Task] = set()
        self._gates: List[SubscriptionGate] = []
        self._unsubscribers: List[Unsubscribe] = []
        self._started = False

    # --- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Restore persisted state, finish loading and run the first reconcile."""
        if self._started:
            return
        self._started = True
        self._unsubscribers.append(self.primary.subscribe(self._on_primary_change))
        self.secondary.restore()
        self.primary.mark_loaded()
        if self._pipeline_generation == 0:
            self._on_primary_change()
        await self.settle()

    async def settle(self) -> None:
        """Wait until scheduled pipeline runs and gate refreshes have finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
        for gate in self._gates:
            await gate.settle()

    async def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self._pipeline_generation += 1
        await self.settle()
        await self.bridge.close()
        self.aggregator.close()
        if self._http is not None:
            await self._http.aclose()
        self._started = False

    # --- pipeline ----------------------------------------------------------

    def _on_primary_change(self) -> None:
        self._pipeline_generation += 1
        generation = self._pipeline_generation
        state = self.primary.state()
        task = asyncio.get_running_loop().create_task(self._run_pipeline(state, generation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_pipeline(self, state: PrimaryState, generation: int) -> None:
        bridged = await self.bridge.sync(state)
        if generation != self._pipeline_generation:
            return
        if not bridged or not state.is_authenticated or state.identity is None:
            self.aggregator.clear_profile()
            return

        try:
            mapped_id = map_external_id(state.identity.external_id)
        except DeterministicMappingFailure as exc:
            logger.error("Cannot map primary identity: %s", exc.code)
            self.aggregator.clear_profile()
            raise

        identity = state.identity
        candidate = ProfileCandidate(
            full_name=display_name_for(identity),
            role=resolve_role(identity.email, operator_email=self.settings.operator_email),
            provenance=Provenance.PRIMARY,
            email=identity.email or None,
            avatar_url=identity.avatar_url,
        )
        profile = await self.synchronizer.sync(mapped_id, candidate)
        if generation != self._pipeline_generation:
            return
        self.aggregator.set_profile(mapped_id, profile)

    def check_expiry(self, now: Optional[float] = None) -> bool:
        """Expire the primary session if due; the pipeline then tears down the bridge."""
        return self.primary.expire_if_needed(time.time() if now is None else now)

    async def renew_if_needed(self, now: Optional[float] = None) -> bool:
        """Refresh the primary session ahead of expiry; the pipeline re-bridges it."""
        renewed = await self.primary.refresh_if_needed(time.time() if now is None else now)
        await self.settle()
        return renewed

    # --- consumers ---------------------------------------------------------

    def guard(self, required_role: Optional[str] = None, **kwargs: Any) -> AccessControlGuard:
        return AccessControlGuard(self.aggregator, self.marker, required_role=required_role, **kwargs)

    def subscription_gate(self) -> SubscriptionGate:
        """Create a gate bound to the aggregator; call from within the running loop."""
        gate = SubscriptionGate(
            self.subscriptions,
            timeout=self.settings.call_timeout_seconds,
            tiers=self.settings.premium_tiers,
        )
        self._unsubscribers.append(gate.bind(self.aggregator))
        self._gates.append(gate)
        return gate


def _record_stores(settings: IdentitySettings, backing_client: Any) -> tuple[ProfileStore, SubscriptionStore]:
    if settings.record_store_backend == "supabase":
        from .stores_supabase import SupabaseProfileStore, SupabaseSubscriptionStore

        return SupabaseProfileStore(backing_client), SupabaseSubscriptionStore(backing_client)
    if settings.record_store_backend == "db":
        from .stores_db import DBProfileStore, DBSubscriptionStore

        return DBProfileStore(settings.database_url or None), DBSubscriptionStore(settings.database_url or None)
    return InMemoryProfileStore(), InMemorySubscriptionStore()


async def build_identity_core(
    settings: IdentitySettings | None = None,
    *,
    backing_client: Any = None,
    http: httpx.AsyncClient | None = None,
    local_state: LocalStateStore | None = None,
) -> IdentityCore:
    """Wire all components from settings.

    ``backing_client`` defaults to an async Supabase client created from the
    settings; tests pass a fake exposing ``auth``, ``rpc`` and ``table``.
    """
    settings = settings or load_settings()
    ensure_secure_config_on_startup(settings)
    if backing_client is None:
        from .stores_supabase import create_backing_client

        backing_client = await create_backing_client(settings)

    owned_http = None
    if http is None:
        owned_http = http = httpx.AsyncClient(timeout=settings.call_timeout_seconds)
    oidc = OIDCClient(
        OIDCConfig(
            base_url=settings.kc_base_url,
            realm=settings.kc_realm,
            client_id=settings.kc_client_id,
            redirect_uri=settings.redirect_uri,
            public_base_url=settings.kc_public_base_url,
        ),
        http=http,
        timeout=settings.call_timeout_seconds,
    )
    state = local_state or LocalStateStore(settings.local_state_path)
    primary = KeycloakPrimaryProvider(oidc)
    secondary = LegacyCredentialProvider(backing_client, state)
    profiles, subscriptions = _record_stores(settings, backing_client)
    return IdentityCore(
        settings=settings,
        primary=primary,
        secondary=secondary,
        bridge=SessionBridge(
            primary,
            backing_client.auth,
            template=settings.backing_token_template,
            timeout=settings.call_timeout_seconds,
        ),
        synchronizer=ProfileSynchronizer(profiles, timeout=settings.call_timeout_seconds),
        aggregator=AuthContextAggregator(primary, secondary, operator_email=settings.operator_email),
        marker=ElevatedAccessMarker(state, enabled=settings.elevated_marker_enabled),
        subscriptions=subscriptions,
        http=owned_http,
    )


__all__ = ["IdentityCore", "build_identity_core"]
