import pytest
from jose import jwt

from tiris_portal.errors import BackendError
from tiris_portal.session_data import AuthProvider, OAuthHandshakeState, TokenBundle
from tiris_portal.token_store import (
    ACCESS_TOKEN_KEY,
    EXPIRES_AT_KEY,
    REFRESH_TOKEN_KEY,
    HandshakeStore,
    TokenStore,
    expiry_from_access_token,
)

from conftest import NOW_MS, FakeClock


def test_save_tokens_computes_expiry_from_expires_in():
    storage = {}
    store = TokenStore(storage, clock=FakeClock())

    bundle = store.save_tokens("access", "refresh", 3600)

    assert bundle.expires_at_ms == NOW_MS + 3_600_000
    assert storage[EXPIRES_AT_KEY] == str(NOW_MS + 3_600_000)
    assert store.load() == bundle


def test_missing_expires_in_falls_back_to_jwt_exp_claim():
    token = jwt.encode({"sub": "user-1", "exp": 1_700_000_900}, "secret", algorithm="HS256")
    store = TokenStore({}, clock=FakeClock())

    bundle = store.save_tokens(token, "refresh", None)

    assert bundle.expires_at_ms == 1_700_000_900_000
    assert expiry_from_access_token("not-a-jwt") is None


def test_missing_expiry_everywhere_is_rejected():
    store = TokenStore({}, clock=FakeClock())
    with pytest.raises(BackendError):
        store.save_tokens("opaque-token", "refresh", None)


def test_empty_storage_has_no_bundle():
    assert TokenStore({}).load() is None


@pytest.mark.parametrize("storage", [
    {ACCESS_TOKEN_KEY: "access"},
    {ACCESS_TOKEN_KEY: "access", REFRESH_TOKEN_KEY: "refresh"},
    {ACCESS_TOKEN_KEY: "access", REFRESH_TOKEN_KEY: "refresh", EXPIRES_AT_KEY: "soon"},
    {REFRESH_TOKEN_KEY: "refresh", EXPIRES_AT_KEY: "123"},
])
def test_partial_bundle_is_cleared(storage):
    store = TokenStore(storage)

    assert store.load() is None
    assert storage == {}


def test_expiry_margin_boundary():
    clock = FakeClock()
    store = TokenStore({}, clock=clock)
    store.save(TokenBundle(access_token="a", refresh_token="r", expires_at_ms=NOW_MS + 60_000))

    assert store.is_expiring(60_000)
    clock.now_ms -= 1
    assert not store.is_expiring(60_000)


def test_no_bundle_counts_as_expiring():
    assert TokenStore({}).is_expiring(60_000)


def test_clear_removes_all_three_keys():
    storage = {"unrelated": "kept"}
    store = TokenStore(storage, clock=FakeClock())
    store.save_tokens("access", "refresh", 60)

    store.clear()

    assert storage == {"unrelated": "kept"}


def test_handshake_is_single_use():
    handshakes = HandshakeStore({})
    handshakes.begin(OAuthHandshakeState(
        provider=AuthProvider.WECHAT,
        csrf_state="csrf-1",
        redirect_target="/tradings",
        mode="popup",
    ))

    assert handshakes.peek().csrf_state == "csrf-1"
    consumed = handshakes.consume()
    assert consumed.provider is AuthProvider.WECHAT
    assert consumed.redirect_target == "/tradings"
    assert consumed.mode == "popup"
    assert handshakes.consume() is None


def test_remembered_redirect_survives_until_consumed():
    storage = {}
    handshakes = HandshakeStore(storage)
    handshakes.remember_redirect("/dashboard")

    assert handshakes.peek() is None
    assert handshakes.remembered_redirect() == "/dashboard"
