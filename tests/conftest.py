"""
Shared pytest fixtures for the TIRIS portal test suite.

The TIRIS backend is replaced by an httpx.MockTransport routing table, and time
by a manually advanced clock, so no test touches the network or sleeps on
wall-clock expiry.
"""

from typing import Any, Callable, Dict, List, Tuple, Union

import httpx
import pytest
from fastapi.testclient import TestClient

from tiris_portal.config import Settings
from tiris_portal.main import app
from tiris_portal.services import PortalServices

API_BASE_URL = "https://backend.test/v1"
API_PATH_PREFIX = "/v1"
BFF_ORIGIN = "http://testserver"
NOW_MS = 1_700_000_000_000

USER_PAYLOAD = {
    "id": "user-1",
    "username": "Alice Trader",
    "email": "alice@example.com",
    "avatar": "https://example.com/alice.png",
    "settings": {"timezone": "UTC", "currency": "USD", "notifications": True},
    "info": {"oauth_provider": "google"},
}

Responder = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


def ok(data: Any = None, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, json={"success": True, "data": data})


def fail(status_code: int, code: str, message: str = "Request failed") -> httpx.Response:
    return httpx.Response(status_code, json={"success": False, "error": {"code": code, "message": message}})


def auth_payload(access_token: str = "access-1", refresh_token: str = "refresh-1", expires_in: int = 3600) -> Dict:
    return {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "expires_in": expires_in,
        "user": USER_PAYLOAD,
    }


class FakeBackend:
    """
    Routing table keyed by (method, path below /v1).

    Each route holds a queue of responses; the last one is sticky and keeps
    answering once the others are used up.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], List[Responder]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, path: str, *responses: Responder) -> None:
        self.routes[(method, path)] = list(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.startswith(API_PATH_PREFIX):
            path = path[len(API_PATH_PREFIX):]
        responses = self.routes.get((request.method, path))
        if not responses:
            return fail(404, "NOT_FOUND", f"No fake route for {request.method} {path}")
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if callable(response):
            response = response(request)
        return response

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method and r.url.path == API_PATH_PREFIX + path
        ]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler), base_url=API_BASE_URL)


class FakeClock:
    def __init__(self, now_ms: int = NOW_MS):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


def make_settings(**overrides) -> Settings:
    values = {
        "API_BASE_URL": API_BASE_URL,
        "BFF_ORIGIN": BFF_ORIGIN,
        "BFF_REDIRECT_URI": f"{BFF_ORIGIN}/auth/callback",
        "ENABLED_PROVIDERS": "google,wechat,email",
        "SESSION_SECRET_KEY": "test-secret",
        "SESSION_COOKIE_SECURE": False,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def services(backend, clock) -> PortalServices:
    return PortalServices(make_settings(), backend.client(), clock=clock)


@pytest.fixture
def client(services):
    """TestClient over the real app, with the fake backend installed before startup runs."""
    app.state.services = services
    with TestClient(app) as test_client:
        yield test_client
