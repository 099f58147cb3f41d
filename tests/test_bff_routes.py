import json

import httpx

from tiris_portal.main import SESSION_COOKIE_NAME
from tiris_portal.token_store import REDIRECT_AFTER_LOGIN_KEY

from conftest import BFF_ORIGIN, USER_PAYLOAD, auth_payload, fail, ok

AUTH_URL = "https://accounts.google.com/o/oauth2/auth?client_id=tiris"
TRADING = {
    "id": "t-1",
    "name": "BTC grid",
    "type": "paper",
    "status": "active",
    "created_at": "2024-01-01T00:00:00Z",
    "info": {"market_symbol": "BTC/USDT", "initial_funds": 1000},
}


def browser_of(client, services):
    return services.sessions[client.cookies[SESSION_COOKIE_NAME]]


def sign_in(client, backend):
    backend.add("POST", "/auth/signin", ok(auth_payload()))
    response = client.post("/api/bff/signin", json={"email": "alice@example.com", "password": "secret"})
    assert response.status_code == 200
    return response


def test_landing_page_for_anonymous_visitor(client):
    response = client.get("/")

    assert response.status_code == 200
    assert "You are not signed in." in response.text
    assert "/login/google" in response.text
    assert SESSION_COOKIE_NAME in response.cookies
    assert "Max-Age=14400" in response.headers["set-cookie"]


def test_dashboard_remembers_target_and_sends_anonymous_visitor_home(client, services):
    response = client.get("/dashboard", follow_redirects=False)

    assert response.status_code == 302
    assert response.headers["location"] == "/"
    assert browser_of(client, services).session_storage[REDIRECT_AFTER_LOGIN_KEY] == "/dashboard"


def test_redirect_login_round_trip(client, backend, services):
    backend.add("POST", "/auth/login", ok({"auth_url": AUTH_URL, "state": "csrf-1"}))
    backend.add("POST", "/auth/callback", ok(auth_payload()))
    backend.add("GET", "/users/me", ok(USER_PAYLOAD))

    response = client.get("/login/google", follow_redirects=False)
    assert response.status_code == 302
    assert response.headers["location"] == AUTH_URL

    response = client.get("/auth/callback?code=code-1&state=csrf-1", follow_redirects=False)
    assert response.status_code == 302
    assert response.headers["location"] == "/dashboard"
    exchange = json.loads(backend.calls("POST", "/auth/callback")[0].content)
    assert exchange["redirect_uri"] == f"{BFF_ORIGIN}/auth/callback"

    # The in-memory session was dropped; the next request restores it from stored tokens.
    response = client.get("/api/bff/userinfo")
    assert response.status_code == 200
    assert response.json()["user"]["email"] == "alice@example.com"
    assert len(backend.calls("GET", "/users/me")) == 1

    response = client.get("/dashboard")
    assert response.status_code == 200
    assert "Alice Trader" in response.text


def test_callback_with_forged_state_is_rejected(client, backend):
    backend.add("POST", "/auth/login", ok({"auth_url": AUTH_URL, "state": "csrf-1"}))
    backend.add("POST", "/auth/callback", ok(auth_payload()))
    client.get("/login/google", follow_redirects=False)

    response = client.get("/auth/callback?code=code-1&state=forged", follow_redirects=False)

    assert response.status_code == 302
    assert response.headers["location"] == "/?error=state_mismatch"
    assert backend.calls("POST", "/auth/callback") == []
    assert client.get("/api/bff/userinfo").status_code == 401


def test_callback_with_provider_error(client, backend):
    backend.add("POST", "/auth/login", ok({"auth_url": AUTH_URL, "state": "csrf-1"}))
    client.get("/login/wechat", follow_redirects=False)

    response = client.get("/auth/callback?error=access_denied", follow_redirects=False)

    assert response.headers["location"] == "/?error=provider_error"


def test_popup_login_round_trip(client, backend):
    backend.add("POST", "/auth/login", ok({"auth_url": AUTH_URL, "state": "csrf-1"}))
    backend.add("POST", "/auth/callback", ok(auth_payload()))

    response = client.post("/api/bff/oauth/popup/google")
    assert response.json() == {"auth_url": AUTH_URL}

    # The popup's callback page only forwards the result to its opener.
    response = client.get("/auth/callback?code=code-1&state=csrf-1")
    assert response.status_code == 200
    assert "OAUTH_CALLBACK" in response.text
    assert "postMessage" in response.text
    assert backend.calls("POST", "/auth/callback") == []

    response = client.post(
        "/api/bff/oauth/exchange",
        json={"type": "OAUTH_CALLBACK", "code": "code-1", "state": "csrf-1"},
        headers={"Origin": BFF_ORIGIN},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["user"]["display_name"] == "Alice Trader"
    assert body["redirect_target"] == "/dashboard"
    assert body["just_signed_in"] is True


def test_exchange_from_foreign_origin_is_rejected(client, backend):
    backend.add("POST", "/auth/login", ok({"auth_url": AUTH_URL, "state": "csrf-1"}))
    client.post("/api/bff/oauth/popup/google")

    response = client.post(
        "/api/bff/oauth/exchange",
        json={"type": "OAUTH_CALLBACK", "code": "code-1", "state": "csrf-1"},
        headers={"Origin": "https://evil.example"},
    )

    assert response.status_code == 400
    assert response.json()["error"]["kind"] == "validation"


def test_unknown_provider_is_rejected(client):
    response = client.get("/login/github", follow_redirects=False)

    assert response.status_code == 400
    assert response.json()["error"]["kind"] == "invalid_provider"


def test_email_sign_in_and_logout(client, backend):
    sign_in(client, backend)
    backend.add("POST", "/auth/logout", httpx.Response(204))

    assert client.get("/api/bff/userinfo").json()["user"]["email"] == "alice@example.com"

    response = client.get("/logout", follow_redirects=False)
    assert response.status_code == 302
    assert len(backend.calls("POST", "/auth/logout")) == 1
    assert client.get("/api/bff/userinfo").status_code == 401


def test_failed_sign_in_maps_to_unauthorized(client, backend):
    backend.add("POST", "/auth/signin", fail(401, "INVALID_CREDENTIALS", "Wrong password"))

    response = client.post("/api/bff/signin", json={"email": "alice@example.com", "password": "wrong"})

    assert response.status_code == 401
    error = response.json()["error"]
    assert error["kind"] == "unauthorized"
    assert error["code"] == "INVALID_CREDENTIALS"


def test_refresh_without_tokens_is_session_expired(client):
    response = client.post("/api/bff/refresh")

    assert response.status_code == 401
    assert response.json()["error"]["kind"] == "session_expired"


def test_list_tradings_with_metrics(client, backend):
    sign_in(client, backend)
    backend.add("GET", "/tradings", ok({"tradings": [TRADING]}))
    backend.add("GET", "/tradings/t-1/equity-curve", ok({"data_points": [{
        "timestamp": "2024-01-01T00:00:00Z",
        "quote_balance": 500,
        "stock_balance": 0.01,
        "stock_price": 60000,
    }]}))

    response = client.get("/api/bff/tradings?with_metrics=true")

    assert response.status_code == 200
    trading = response.json()["tradings"][0]
    assert trading["name"] == "BTC grid"
    assert trading["metrics"]["current_equity"] == 1100
    assert backend.calls("GET", "/tradings")[0].headers["Authorization"] == "Bearer access-1"


def test_equity_curve_warmup_is_passed_through(client, backend):
    sign_in(client, backend)
    backend.add("GET", "/tradings/t-1", ok(TRADING))
    backend.add("GET", "/tradings/t-1/equity-curve", httpx.Response(202, headers={"Retry-After": "3"}))

    response = client.get("/api/bff/tradings/t-1/equity-curve?timeframe=1h")

    assert response.status_code == 202
    assert response.json()["retry_after_ms"] == 3000
    assert response.headers["Retry-After"] == "3"


def test_equity_curve_and_metrics(client, backend):
    sign_in(client, backend)
    backend.add("GET", "/tradings/t-1", ok(TRADING))
    backend.add("GET", "/tradings/t-1/equity-curve", ok({
        "initial_balance": 1000,
        "data_points": [
            {"timestamp": "2023-11-10T00:00:00Z", "equity": 1000, "stock_price": 100},
            {"timestamp": "2023-11-11T00:00:00Z", "equity": 1100, "stock_price": 110},
        ],
    }))
    backend.add("GET", "/trading-logs", ok({"trading_logs": []}))

    response = client.get("/api/bff/tradings/t-1/equity-curve?timeframe=1d")
    assert response.status_code == 200
    body = response.json()
    assert len(body["curve"]["points"]) == 2
    assert body["effective_stock_price"] == 110
    assert body["warmup"]["active"] is False

    response = client.get("/api/bff/tradings/t-1/metrics?timeframe=1d")
    assert response.status_code == 200
    assert response.json()["metrics"]["total_roi"] == 10.0
    assert len(backend.calls("GET", "/tradings/t-1/equity-curve")) == 1


def test_trading_and_binding_crud(client, backend):
    sign_in(client, backend)
    backend.add("POST", "/tradings", ok(TRADING, status_code=201))
    backend.add("DELETE", "/tradings/t-1", ok(None))
    backend.add("GET", "/exchange-bindings", ok({"exchange_bindings": [
        {"id": "b-1", "name": "Binance", "exchange_type": "binance", "status": "active"},
    ]}))
    backend.add("POST", "/exchange-bindings", ok({"id": "b-2", "name": "OKX", "exchange_type": "okx"}))
    backend.add("DELETE", "/exchange-bindings/b-1", ok(None))

    assert client.post("/api/bff/tradings", json={"name": "BTC grid"}).json()["id"] == "t-1"
    assert client.delete("/api/bff/tradings/t-1").status_code == 204
    assert client.get("/api/bff/exchange-bindings").json()["exchange_bindings"][0]["exchange_type"] == "binance"
    assert client.post("/api/bff/exchange-bindings", json={"name": "OKX"}).status_code == 201
    assert client.delete("/api/bff/exchange-bindings/b-1").status_code == 204


def test_trading_routes_require_sign_in(client):
    response = client.get("/api/bff/tradings")

    assert response.status_code == 401
    assert response.json()["error"]["kind"] == "unauthorized"
