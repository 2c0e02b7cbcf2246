"""
Configuration and startup security checks for the identity core.

Why: Collaborator endpoints, the operator email and the premium tiers differ
per deployment. Everything is read from the environment once, into an
immutable settings object that is injected into the components.

Permissions: The caller needs no special privileges. `ensure_secure_config_on_startup`
only reads the settings and raises `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import sys

from .domain import DEFAULT_OPERATOR_EMAIL

logger = logging.getLogger("interviewai.identity.config")

DEFAULT_TIMEOUT_SECONDS = 10.0
MAX_TIMEOUT_SECONDS = 60.0
RECORD_STORE_BACKENDS = frozenset({"memory", "supabase", "db"})


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out via IDENTITY_ENABLE_DOTENV (default true).
    """
    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("IDENTITY_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


def _is_prod_like(env: str) -> bool:
    return (env or "").lower() in {"prod", "production", "stage", "staging"}


def _parse_bool_env(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _parse_timeout_env(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    if value <= 0:
        return default
    return min(value, MAX_TIMEOUT_SECONDS)


def _parse_tiers(raw: str | None) -> frozenset[str]:
    """Parse a comma-separated tier list like "pro, enterprise"."""
    items = [part.strip().lower() for part in (raw or "").split(",")]
    return frozenset(item for item in items if item)


@dataclass(frozen=True)
class IdentitySettings:
    environment: str = "dev"
    kc_base_url: str = "http://localhost:8080"
    kc_public_base_url: str | None = None
    kc_realm: str = "interviewai"
    kc_client_id: str = "interviewai-web"
    redirect_uri: str = "http://localhost:5173/auth/callback"
    supabase_url: str = ""
    supabase_anon_key: str = ""
    backing_token_template: str = "supabase"
    operator_email: str = DEFAULT_OPERATOR_EMAIL
    premium_tiers: frozenset[str] = frozenset({"pro", "enterprise"})
    call_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    local_state_path: str | None = None
    record_store_backend: str = "memory"
    database_url: str = ""
    elevated_marker_enabled: bool = True

    @property
    def is_prod_like(self) -> bool:
        return _is_prod_like(self.environment)


def load_settings() -> IdentitySettings:
    """Build settings from the environment (and `.env` outside of tests)."""
    if _should_load_dotenv():
        from dotenv import load_dotenv

        load_dotenv()

    base_url = os.getenv("KC_BASE_URL", "http://localhost:8080")
    backend = (os.getenv("RECORD_STORE_BACKEND") or "memory").strip().lower()
    if backend not in RECORD_STORE_BACKENDS:
        raise ValueError(f"unknown RECORD_STORE_BACKEND: {backend}")
    tiers = _parse_tiers(os.getenv("PREMIUM_PLAN_TIERS")) or frozenset({"pro", "enterprise"})
    return IdentitySettings(
        environment=os.getenv("APP_ENV", "dev").lower(),
        kc_base_url=base_url,
        kc_public_base_url=os.getenv("KC_PUBLIC_BASE_URL", base_url),
        kc_realm=os.getenv("KC_REALM", "interviewai"),
        kc_client_id=os.getenv("KC_CLIENT_ID", "interviewai-web"),
        redirect_uri=os.getenv("REDIRECT_URI", "http://localhost:5173/auth/callback"),
        supabase_url=(os.getenv("SUPABASE_URL") or "").strip(),
        supabase_anon_key=(os.getenv("SUPABASE_ANON_KEY") or "").strip(),
        backing_token_template=os.getenv("BACKING_TOKEN_TEMPLATE", "supabase"),
        operator_email=os.getenv("OPERATOR_ADMIN_EMAIL", DEFAULT_OPERATOR_EMAIL),
        premium_tiers=tiers,
        call_timeout_seconds=_parse_timeout_env("IDENTITY_CALL_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS),
        local_state_path=os.getenv("LOCAL_STATE_PATH") or None,
        record_store_backend=backend,
        database_url=(os.getenv("DATABASE_URL") or "").strip(),
        elevated_marker_enabled=_parse_bool_env("ELEVATED_MARKER_ENABLED", True),
    )


def ensure_secure_config_on_startup(settings: IdentitySettings) -> None:
    """Fail fast on insecure production configuration.

    Checks (prod/stage only):
    - Keycloak endpoints must use HTTPS.
    - Supabase URL and anon key must be set for the backing store.
    - Record stores must not be in-memory.
    - A `db` record store requires DATABASE_URL without `sslmode=disable`.

    The Elevated-Access Marker is client-trusted; when it stays enabled in
    production a warning is logged instead of refusing to start.
    """
    if not settings.is_prod_like:
        return

    for name, value in (("KC_BASE_URL", settings.kc_base_url), ("KC_PUBLIC_BASE_URL", settings.kc_public_base_url or "")):
        if value.strip().lower().startswith("http://"):
            raise SystemExit(f"Refusing to start: {name} must use https in production (got http).")

    if not settings.supabase_url or not settings.supabase_anon_key:
        raise SystemExit("Refusing to start: SUPABASE_URL and SUPABASE_ANON_KEY are required in production.")

    if settings.record_store_backend == "memory":
        raise SystemExit("Refusing to start: RECORD_STORE_BACKEND=memory is not allowed in production/staging.")

    if settings.record_store_backend == "db":
        if not settings.database_url:
            raise SystemExit("Refusing to start: RECORD_STORE_BACKEND=db requires DATABASE_URL.")
        if "sslmode=disable" in settings.database_url:
            raise SystemExit(
                "Refusing to start: DATABASE_URL contains sslmode=disable in production. Use sslmode=require or verify TLS."
            )

    if settings.elevated_marker_enabled:
        logger.warning(
            "Elevated-access marker is enabled in %s; it grants admin-equivalent access without server verification",
            settings.environment,
        )


__all__ = ["IdentitySettings", "ensure_secure_config_on_startup", "load_settings"]
