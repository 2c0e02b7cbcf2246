"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend to avoid sandbox restrictions
that can affect the Trio backend (e.g., socketpair permission errors), and
keep the identity core importable as `identity_access` across tests.
"""
import sys
from pathlib import Path

import pytest

# Ensure modules in backend/ and the shared test fakes are importable
REPO_ROOT = Path(__file__).resolve().parents[2]
BACKEND_DIR = REPO_ROOT / "backend"
TESTS_DIR = BACKEND_DIR / "tests"
for p in (str(REPO_ROOT), str(BACKEND_DIR), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _clear_identity_env(monkeypatch: pytest.MonkeyPatch):
    """Start every test from a dev environment without identity overrides."""
    for name in (
        "APP_ENV",
        "KC_BASE_URL",
        "KC_PUBLIC_BASE_URL",
        "KC_REALM",
        "KC_CLIENT_ID",
        "REDIRECT_URI",
        "SUPABASE_URL",
        "SUPABASE_ANON_KEY",
        "BACKING_TOKEN_TEMPLATE",
        "OPERATOR_ADMIN_EMAIL",
        "PREMIUM_PLAN_TIERS",
        "IDENTITY_CALL_TIMEOUT_SECONDS",
        "LOCAL_STATE_PATH",
        "RECORD_STORE_BACKEND",
        "DATABASE_URL",
        "SUPABASE_DB_URL",
        "ELEVATED_MARKER_ENABLED",
    ):
        monkeypatch.delenv(name, raising=False)
    yield
