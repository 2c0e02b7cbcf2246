"""
Auth Context Aggregator: one observation surface over both providers.

Precedence (resolved once per observation):
    primary loaded and identity present  -> Primary
    otherwise secondary authenticated    -> Secondary
    otherwise                            -> NoIdentity

Readiness stays "loading" until both providers have finished loading.
Roles come from the profile record when it carries one, otherwise from the
operator-email rule; the same procedure applies to both providers.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Optional, Union

from .domain import (
    DEFAULT_OPERATOR_EMAIL,
    ROLE_ADMIN,
    ROLE_NONE,
    ROLE_STUDENT,
    ExternalIdentity,
    Profile,
    Readiness,
    resolve_role,
)
from .mapping import map_external_id
from .ports import Unsubscribe
from .providers import ChangeNotifier, PrimaryProvider, PrimaryState, SecondaryProvider, SecondaryState

logger = logging.getLogger("interviewai.identity.aggregator")

PROVIDER_PRIMARY = "primary"
PROVIDER_SECONDARY = "secondary"


@dataclass(frozen=True)
class Primary:
    state: PrimaryState


@dataclass(frozen=True)
class Secondary:
    state: SecondaryState


@dataclass(frozen=True)
class NoIdentity:
    pass


ActiveIdentity = Union[Primary, Secondary, NoIdentity]


def resolve_active(primary: PrimaryState, secondary: SecondaryState) -> ActiveIdentity:
    if primary.is_loaded and primary.user_id:
        return Primary(primary)
    if secondary.is_authenticated:
        return Secondary(secondary)
    return NoIdentity()


@dataclass(frozen=True)
class AuthSnapshot:
    readiness: Readiness
    provider: Optional[str] = None
    identity: Optional[ExternalIdentity] = None
    mapped_id: Optional[str] = None
    profile: Optional[Profile] = None
    role: str = ROLE_NONE
    generation: int = 0

    @property
    def is_authenticated(self) -> bool:
        return self.readiness is Readiness.AUTHENTICATED

    def is_admin(self) -> bool:
        return self.is_authenticated and self.role == ROLE_ADMIN

    def is_student(self) -> bool:
        return self.is_authenticated and self.role == ROLE_STUDENT


def _secondary_identity(state: SecondaryState) -> tuple[Optional[str], ExternalIdentity]:
    user = dict(state.user or {})
    profile = state.profile
    session = state.session or {}
    mapped_id = (profile.id if profile else None) or user.get("id") or session.get("id")
    identity = ExternalIdentity(
        external_id=str(mapped_id or ""),
        display_name=str(user.get("full_name") or (profile.full_name if profile else "") or ""),
        email=str(user.get("email") or (profile.email if profile else "") or ""),
        avatar_url=user.get("avatar_url") or (profile.avatar_url if profile else None),
        raw=user,
    )
    return (str(mapped_id) if mapped_id else None), identity


def _role_for(profile: Optional[Profile], email: str, operator_email: str) -> str:
    if profile is not None and profile.role != ROLE_NONE:
        return profile.role
    return resolve_role(email, operator_email=operator_email)


class AuthContextAggregator(ChangeNotifier):
    def __init__(
        self,
        primary: PrimaryProvider,
        secondary: SecondaryProvider,
        *,
        operator_email: str = DEFAULT_OPERATOR_EMAIL,
    ) -> None:
        super().__init__()
        self._primary = primary
        self._secondary = secondary
        self._operator_email = operator_email
        self._generation = 0
        self._primary_profile: Optional[Profile] = None
        self._unsubscribers: list[Unsubscribe] = [
            primary.subscribe(self._on_provider_change),
            secondary.subscribe(self._on_provider_change),
        ]

    @property
    def generation(self) -> int:
        return self._generation

    def _on_provider_change(self) -> None:
        self._generation += 1
        self._notify()

    def active(self) -> ActiveIdentity:
        return resolve_active(self._primary.state(), self._secondary.state())

    def snapshot(self) -> AuthSnapshot:
        """Return the current unified view.

        Raises
        ------
        DeterministicMappingFailure:
            When the primary identity cannot be mapped.
        """
        primary = self._primary.state()
        secondary = self._secondary.state()
        if not primary.is_loaded or not secondary.is_loaded:
            return AuthSnapshot(readiness=Readiness.LOADING, generation=self._generation)

        active = resolve_active(primary, secondary)
        if isinstance(active, Primary):
            identity = active.state.identity or ExternalIdentity(external_id=active.state.user_id or "")
            mapped_id = map_external_id(identity.external_id)
            profile = self._primary_profile
            if profile is not None and profile.id != mapped_id:
                profile = None
            return AuthSnapshot(
                readiness=Readiness.AUTHENTICATED,
                provider=PROVIDER_PRIMARY,
                identity=identity,
                mapped_id=mapped_id,
                profile=profile,
                role=_role_for(profile, identity.email, self._operator_email),
                generation=self._generation,
            )
        if isinstance(active, Secondary):
            mapped_id, identity = _secondary_identity(active.state)
            profile = active.state.profile
            return AuthSnapshot(
                readiness=Readiness.AUTHENTICATED,
                provider=PROVIDER_SECONDARY,
                identity=identity,
                mapped_id=mapped_id,
                profile=profile,
                role=_role_for(profile, identity.email, self._operator_email),
                generation=self._generation,
            )
        return AuthSnapshot(readiness=Readiness.UNAUTHENTICATED, generation=self._generation)

    # --- convenience accessors ---------------------------------------------

    def mapped_id(self) -> Optional[str]:
        return self.snapshot().mapped_id

    def is_admin(self) -> bool:
        return self.snapshot().is_admin()

    def is_student(self) -> bool:
        return self.snapshot().is_student()

    def set_profile(self, mapped_id: str, profile: Optional[Profile]) -> None:
        """Attach the synchronized profile for the primary identity ``mapped_id``."""
        if profile is not None and profile.id != mapped_id:
            logger.warning("Ignoring profile for mismatched id %s", profile.id)
            return
        if profile == self._primary_profile:
            return
        self._primary_profile = profile
        self._generation += 1
        self._notify()

    def clear_profile(self) -> None:
        if self._primary_profile is not None:
            self._primary_profile = None
            self._generation += 1
            self._notify()

    # --- delegating actions ------------------------------------------------

    async def login(self, email: str, password: str) -> None:
        await self._secondary.login(email, password)

    async def register(self, name: str, email: str, password: str, role: Optional[str] = None) -> None:
        await self._secondary.register(name, email, password, role)

    async def logout(self) -> None:
        active = self.active()
        if isinstance(active, Primary):
            await self._primary.sign_out()
        elif isinstance(active, Secondary):
            await self._secondary.logout()

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []


__all__ = [
    "ActiveIdentity",
    "AuthContextAggregator",
    "AuthSnapshot",
    "NoIdentity",
    "PROVIDER_PRIMARY",
    "PROVIDER_SECONDARY",
    "Primary",
    "Secondary",
    "resolve_active",
]
