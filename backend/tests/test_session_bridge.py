"""
Session Bridge behavior.

Focus:
- installs the exchanged token as the backing-store session, once per provider session
- tears down on sign-out, expiry, exchange failure, timeout and empty token
- rapid triggers: only the newest provider session is installed
- bridged expiry never exceeds the provider's expiry
"""

from __future__ import annotations

import asyncio
import time

import pytest

from identity_access.errors import ProviderUnavailable
from identity_access.providers import PrimaryState
from identity_access.session_bridge import REFRESH_TOKEN_PLACEHOLDER, SessionBridge

from identity_fakes import FakeAuth, FakePrimary, make_jwt


def _bridge(primary: FakePrimary, auth: FakeAuth, **kwargs) -> SessionBridge:
    kwargs.setdefault("timeout", 0.5)
    return SessionBridge(primary, auth, template="supabase", **kwargs)


@pytest.mark.anyio
async def test_sync_installs_session_for_authenticated_provider():
    primary, auth = FakePrimary(), FakeAuth()
    bridge = _bridge(primary, auth)
    primary.sign_in("user_1")

    assert await bridge.sync() is True
    assert auth.sessions == [(primary.token, REFRESH_TOKEN_PLACEHOLDER)]
    assert primary.templates == ["supabase"]
    assert bridge.current is not None
    assert bridge.is_bridged()


@pytest.mark.anyio
async def test_unchanged_provider_session_is_a_noop():
    primary, auth = FakePrimary(), FakeAuth()
    bridge = _bridge(primary, auth)
    primary.sign_in("user_1")

    for _ in range(5):
        assert await bridge.sync() is True

    assert len(auth.sessions) == 1
    assert len(primary.templates) == 1


@pytest.mark.anyio
async def test_new_provider_session_is_bridged_again():
    primary, auth = FakePrimary(), FakeAuth()
    bridge = _bridge(primary, auth)
    primary.sign_in("user_1", session_id="s1")
    await bridge.sync()
    primary.sign_in("user_1", session_id="s2")
    await bridge.sync()

    assert len(auth.sessions) == 2
    assert bridge.current.provider_session_key == ("user_1", "s2")


@pytest.mark.anyio
async def test_sign_out_tears_down_backing_session():
    primary, auth = FakePrimary(), FakeAuth()
    bridge = _bridge(primary, auth)
    primary.sign_in("user_1")
    await bridge.sync()

    await primary.sign_out()
    assert await bridge.sync() is False
    assert auth.sign_outs == 1
    assert bridge.current is None

    # Already signed out: repeated triggers do not hit the backing store again.
    await bridge.sync()
    assert auth.sign_outs == 1


@pytest.mark.anyio
async def test_signed_out_provider_signs_backing_store_out_once_at_startup():
    primary, auth = FakePrimary(), FakeAuth()
    bridge = _bridge(primary, auth)
    primary.mark_loaded()

    assert await bridge.sync() is False
    assert await bridge.sync() is False
    assert auth.sign_outs == 1
    assert auth.sessions == []


@pytest.mark.anyio
async def test_token_exchange_failure_leaves_backing_store_signed_out():
    primary, auth = FakePrimary(), FakeAuth()
    primary.token_error = ProviderUnavailable("token_exchange_failed")
    bridge = _bridge(primary, auth)
    primary.sign_in("user_1")

    assert await bridge.sync() is False
    assert auth.sessions == []
    assert auth.sign_outs == 1
    assert bridge.current is None


@pytest.mark.anyio
async def test_token_exchange_timeout_fails_closed():
    primary, auth = FakePrimary(), FakeAuth()
    primary.token_delay = 1.0
    bridge = _bridge(primary, auth, timeout=0.05)
    primary.sign_in("user_1")

    assert await bridge.sync() is False
    assert auth.sessions == []
    assert bridge.current is None


@pytest.mark.anyio
async def test_empty_token_installs_nothing():
    primary, auth = FakePrimary(), FakeAuth()
    primary.token = None
    bridge = _bridge(primary, auth)
    primary.sign_in("user_1")

    assert await bridge.sync() is False
    assert auth.sessions == []


@pytest.mark.anyio
async def test_rejected_set_session_is_torn_down():
    primary, auth = FakePrimary(), FakeAuth(fail_set_session=True)
    bridge = _bridge(primary, auth)
    primary.sign_in("user_1")

    assert await bridge.sync() is False
    assert bridge.current is None
    assert auth.sign_outs == 1


@pytest.mark.anyio
async def test_bridged_expiry_is_clamped_to_provider_expiry():
    now = 1_700_000_000
    primary, auth = FakePrimary(), FakeAuth()
    primary.token = make_jwt({"exp": now + 3600})
    bridge = _bridge(primary, auth, clock=lambda: now)
    primary.sign_in("user_1", expires_at=now + 60)

    assert await bridge.sync() is True
    assert bridge.current.expires_at == now + 60
    assert bridge.is_bridged(now + 59)
    assert not bridge.is_bridged(now + 60)


@pytest.mark.anyio
async def test_token_expiry_wins_when_shorter_than_provider_expiry():
    now = 1_700_000_000
    primary, auth = FakePrimary(), FakeAuth()
    primary.token = make_jwt({"exp": now + 30})
    bridge = _bridge(primary, auth, clock=lambda: now)
    primary.sign_in("user_1", expires_at=now + 600)

    await bridge.sync()
    assert bridge.current.expires_at == now + 30


@pytest.mark.anyio
async def test_expired_provider_session_is_not_bridged():
    now = time.time()
    primary, auth = FakePrimary(), FakeAuth()
    bridge = _bridge(primary, auth)
    primary.sign_in("user_1", expires_at=int(now) - 1)

    assert await bridge.sync() is False
    assert auth.sessions == []
    assert primary.templates == []


@pytest.mark.anyio
async def test_rapid_triggers_install_only_the_newest_session():
    primary, auth = FakePrimary(), FakeAuth()
    bridge = _bridge(primary, auth)
    token_a = make_jwt({"sub": "a", "exp": int(time.time()) + 3600})
    token_b = make_jwt({"sub": "b", "exp": int(time.time()) + 3600})
    primary.responses.extend([(0.05, token_a), (0.0, token_b)])
    state_a = PrimaryState(is_loaded=True, user_id="user_a", session_id="sa")
    state_b = PrimaryState(is_loaded=True, user_id="user_b", session_id="sb")

    await asyncio.gather(bridge.sync(state_a), bridge.sync(state_b))

    assert [access for access, _ in auth.sessions] == [token_b]
    assert bridge.current.provider_session_key == ("user_b", "sb")


@pytest.mark.anyio
async def test_close_tears_down_and_stops_bridging():
    primary, auth = FakePrimary(), FakeAuth()
    bridge = _bridge(primary, auth)
    primary.sign_in("user_1")
    await bridge.sync()

    await bridge.close()
    assert bridge.current is None
    assert auth.sign_outs == 1
    assert await bridge.sync() is False
    assert len(auth.sessions) == 1


@pytest.mark.anyio
async def test_unexpected_token_error_tears_down_previous_session():
    primary, auth = FakePrimary(), FakeAuth()
    bridge = _bridge(primary, auth)
    primary.sign_in("user_1", session_id="s1")
    assert await bridge.sync() is True

    primary.token_error = RuntimeError("boom")
    primary.sign_in("user_1", session_id="s2")

    assert await bridge.sync() is False
    assert bridge.current is None
    assert bridge.is_bridged() is False
    assert auth.sign_outs == 1
    assert len(auth.sessions) == 1


@pytest.mark.anyio
async def test_refreshed_provider_expiry_is_exchanged_again():
    primary, auth = FakePrimary(), FakeAuth()
    bridge = _bridge(primary, auth)
    first_exp = int(time.time()) + 60
    primary.sign_in("user_1", expires_at=first_exp)
    await bridge.sync()

    primary.sign_in("user_1", expires_at=first_exp + 600)
    assert await bridge.sync() is True

    assert len(auth.sessions) == 2
    assert bridge.current.provider_expires_at == first_exp + 600
    assert bridge.current.expires_at == first_exp + 600
