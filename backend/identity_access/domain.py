"""
Identity domain constants, value types and the role rule.

Why:
- Centralize roles, readiness states and provenance tags so the providers,
  the aggregator and the guard never drift apart.
- Keep the value types immutable; records are owned by the stores, the core
  only passes snapshots around.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

ROLE_STUDENT = "student"
ROLE_ADMIN = "admin"
ROLE_NONE = "none"

# Keep roles minimal and explicit. Immutable to prevent accidental mutation.
ALLOWED_ROLES = frozenset({ROLE_STUDENT, ROLE_ADMIN, ROLE_NONE})

DEFAULT_OPERATOR_EMAIL = "admin@interview.ai"


class Readiness(str, Enum):
    LOADING = "loading"
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"


class Provenance(str, Enum):
    """Which provider created an internal identity record."""

    PRIMARY = "clerk"
    LEGACY = "manual"


@dataclass(frozen=True)
class ExternalIdentity:
    """Identity as reported by an upstream provider. Read-only."""

    external_id: str
    display_name: str = ""
    email: str = ""
    avatar_url: Optional[str] = None
    raw: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProfileCandidate:
    """Fields used when a profile has to be created for a mapped id."""

    full_name: str
    role: str
    provenance: Provenance
    email: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass(frozen=True)
class Profile:
    id: str
    full_name: str
    role: str
    provenance: str
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Profile":
        """Build a profile from a `profiles` row (Supabase or Postgres)."""
        role = str(row.get("role") or ROLE_NONE)
        if role not in ALLOWED_ROLES:
            role = ROLE_NONE
        return cls(
            id=str(row["id"]),
            full_name=str(row.get("full_name") or ""),
            role=role,
            provenance=str(row.get("auth_provider") or ""),
            email=row.get("email"),
            avatar_url=row.get("avatar_url"),
            created_at=parse_timestamp(row.get("created_at")),
        )

    def to_row(self) -> dict[str, Any]:
        row: dict[str, Any] = {
            "id": self.id,
            "full_name": self.full_name,
            "role": self.role,
            "auth_provider": self.provenance,
        }
        if self.email:
            row["email"] = self.email
        if self.avatar_url:
            row["avatar_url"] = self.avatar_url
        if self.created_at:
            row["created_at"] = self.created_at.isoformat()
        return row


@dataclass(frozen=True)
class SubscriptionRecord:
    user_id: str
    plan_tier: str
    status: str
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SubscriptionRecord":
        """Build a record from a `user_subscriptions` row."""
        return cls(
            user_id=str(row["user_id"]),
            plan_tier=str(row.get("plan_type") or "").lower(),
            status=str(row.get("status") or "").lower(),
            period_start=parse_timestamp(row.get("current_period_start")),
            period_end=parse_timestamp(row.get("current_period_end")),
            created_at=parse_timestamp(row.get("created_at")),
        )


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings (including a trailing ``Z``) or pass datetimes through."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def resolve_role(email: str | None, *, operator_email: str = DEFAULT_OPERATOR_EMAIL) -> str:
    """Return the role for an authentication event.

    Exact match against the operator email yields admin, everything else is a
    student. No case folding: the operator address is matched as configured.
    """
    if email and operator_email and email == operator_email:
        return ROLE_ADMIN
    return ROLE_STUDENT


def display_name_for(identity: ExternalIdentity) -> str:
    """Prefer the provider's display name, fall back to the email local part."""
    name = (identity.display_name or "").strip()
    if name:
        return name
    email = identity.email or ""
    return email.split("@", 1)[0] if email else identity.external_id


def mask_email(email: str | None) -> str:
    """Mask email for logs to reduce PII exposure."""
    if not email:
        return "***"
    local, _, domain = email.partition("@")
    return f"{local[:2]}***@{domain}"


__all__ = [
    "ALLOWED_ROLES",
    "DEFAULT_OPERATOR_EMAIL",
    "ExternalIdentity",
    "Profile",
    "ProfileCandidate",
    "Provenance",
    "ROLE_ADMIN",
    "ROLE_NONE",
    "ROLE_STUDENT",
    "Readiness",
    "SubscriptionRecord",
    "display_name_for",
    "mask_email",
    "parse_timestamp",
    "resolve_role",
]
