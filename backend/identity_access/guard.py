"""
Access Control Guard for protected boundaries (route level).

States:
    LOADING  readiness is loading; only a placeholder, never content or redirect.
    DENIED   redirect to the sign-in path (no identity, no marker) or to the
             landing path (authenticated, role not satisfied).
    GRANTED  content may be produced.

Role satisfaction: admin satisfies every role and a present Elevated-Access
Marker counts as admin. The guard has no terminal state; `watch` re-evaluates
on every aggregator change. Evaluation errors resolve to DENIED -> sign-in.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
from typing import Callable, Optional, TypeVar, Union

from .aggregator import AuthContextAggregator, AuthSnapshot
from .domain import ALLOWED_ROLES, ROLE_ADMIN, ROLE_NONE, Readiness
from .local_state import ElevatedAccessMarker
from .ports import Unsubscribe

logger = logging.getLogger("interviewai.identity.guard")

DEFAULT_SIGN_IN_PATH = "/login"
DEFAULT_LANDING_PATH = "/dashboard"

T = TypeVar("T")


class GuardState(str, Enum):
    LOADING = "loading"
    DENIED = "denied"
    GRANTED = "granted"


@dataclass(frozen=True)
class GuardDecision:
    state: GuardState
    redirect_to: Optional[str] = None


@dataclass(frozen=True)
class Redirect:
    path: str


def role_satisfied(role: str, required_role: str, *, marker_present: bool = False) -> bool:
    if marker_present or role == ROLE_ADMIN:
        return True
    return role == required_role and role != ROLE_NONE


class AccessControlGuard:
    def __init__(
        self,
        aggregator: AuthContextAggregator,
        marker: ElevatedAccessMarker,
        *,
        required_role: Optional[str] = None,
        sign_in_path: str = DEFAULT_SIGN_IN_PATH,
        landing_path: str = DEFAULT_LANDING_PATH,
    ) -> None:
        if required_role is not None and required_role not in ALLOWED_ROLES:
            raise ValueError(f"unknown role: {required_role}")
        self._aggregator = aggregator
        self._marker = marker
        self.required_role = required_role
        self.sign_in_path = sign_in_path
        self.landing_path = landing_path

    def _decide(self, snapshot: AuthSnapshot, marker_present: bool) -> GuardDecision:
        if snapshot.readiness is Readiness.LOADING:
            return GuardDecision(GuardState.LOADING)
        if not snapshot.is_authenticated and not marker_present:
            return GuardDecision(GuardState.DENIED, self.sign_in_path)
        if self.required_role is None:
            return GuardDecision(GuardState.GRANTED)
        if role_satisfied(snapshot.role, self.required_role, marker_present=marker_present):
            return GuardDecision(GuardState.GRANTED)
        return GuardDecision(GuardState.DENIED, self.landing_path)

    def evaluate(self) -> GuardDecision:
        try:
            snapshot = self._aggregator.snapshot()
            marker_present = self._marker.is_present()
            return self._decide(snapshot, marker_present)
        except Exception as exc:
            logger.warning("Guard evaluation failed, denying: %s", exc.__class__.__name__)
            return GuardDecision(GuardState.DENIED, self.sign_in_path)

    def render(self, content: Callable[[], T], placeholder: Callable[[], T]) -> Union[T, Redirect]:
        """Produce content, placeholder or a redirect for the current decision.

        ``content`` is only called when access is granted.
        """
        decision = self.evaluate()
        if decision.state is GuardState.LOADING:
            return placeholder()
        if decision.state is GuardState.DENIED:
            return Redirect(decision.redirect_to or self.sign_in_path)
        return content()

    def watch(self, callback: Callable[[GuardDecision], None]) -> Unsubscribe:
        """Call ``callback`` with a fresh decision now and on every auth change."""
        callback(self.evaluate())
        return self._aggregator.subscribe(lambda: callback(self.evaluate()))


__all__ = [
    "AccessControlGuard",
    "DEFAULT_LANDING_PATH",
    "DEFAULT_SIGN_IN_PATH",
    "GuardDecision",
    "GuardState",
    "Redirect",
    "role_satisfied",
]
