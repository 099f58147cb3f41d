import pytest

from tiris_portal.session_data import SessionState

from conftest import USER_PAYLOAD, auth_payload, ok


def test_sessions_are_reused_by_id(services):
    first = services.get_or_create_session(None)

    assert services.get_or_create_session(first.session_id) is first
    assert services.get_or_create_session("unknown-id").session_id != first.session_id
    assert len(services.sessions) == 2


@pytest.mark.asyncio
async def test_reload_keeps_tokens_and_restores_once(backend, services):
    backend.add("POST", "/auth/signin", ok(auth_payload()))
    backend.add("GET", "/users/me", ok(USER_PAYLOAD))
    browser = services.get_or_create_session(None)
    await browser.ensure_restored()
    await browser.manager.sign_in_with_email_password("alice@example.com", "secret")
    old_manager = browser.manager

    browser.reload()
    await browser.ensure_restored()
    await browser.ensure_restored()

    assert browser.manager is not old_manager
    assert browser.manager.state is SessionState.AUTHENTICATED
    assert len(backend.calls("GET", "/users/me")) == 1


@pytest.mark.asyncio
async def test_refresh_all_only_touches_expiring_sessions(backend, services, clock):
    backend.add("POST", "/auth/signin", ok(auth_payload(expires_in=3600)), ok(auth_payload(expires_in=7200)))
    backend.add("POST", "/auth/refresh", ok({"access_token": "access-2", "expires_in": 3600}))
    backend.add("GET", "/users/me", ok(USER_PAYLOAD))
    short_lived = services.get_or_create_session(None)
    long_lived = services.get_or_create_session(None)
    anonymous = services.get_or_create_session(None)
    await short_lived.manager.sign_in_with_email_password("alice@example.com", "secret")
    await long_lived.manager.sign_in_with_email_password("alice@example.com", "secret")

    clock.advance(3_600_000 - 30_000)
    refreshed = await services.refresh_all()

    assert refreshed == 1
    assert short_lived.local_storage["access_token"] == "access-2"
    assert long_lived.local_storage["access_token"] == "access-1"
    assert not anonymous.manager.is_authenticated


@pytest.mark.asyncio
async def test_idle_sessions_are_dropped_by_the_refresh_sweep(services, clock):
    max_age_ms = services.settings.SESSION_MAX_AGE_SECONDS * 1000
    abandoned = [services.get_or_create_session(None) for _ in range(5)]
    active = services.get_or_create_session(None)

    clock.advance(max_age_ms - 1_000)
    assert services.get_or_create_session(active.session_id) is active
    clock.advance(2_000)
    await services.refresh_all()

    assert list(services.sessions) == [active.session_id]
    assert services.get_or_create_session(abandoned[0].session_id) is not abandoned[0]


def test_prune_keeps_sessions_within_cookie_lifetime(services, clock):
    browser = services.get_or_create_session(None)
    clock.advance(services.settings.SESSION_MAX_AGE_SECONDS * 1000)

    assert services.prune_idle_sessions() == 0
    assert services.sessions == {browser.session_id: browser}
