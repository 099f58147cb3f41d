# src/tiris_portal/services.py

import asyncio
import uuid
from typing import Callable, Dict, Optional

import httpx

from .api_client import TradingApiClient
from .auth_client import AuthBackendClient
from .config import Settings
from .equity import EquityDataService
from .oauth_flow import MessageChannel, OAuthHandshakeFlow
from .session_manager import SessionManager
from .token_store import HandshakeStore, TokenStore, epoch_ms


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=settings.API_BASE_URL, timeout=settings.HTTP_TIMEOUT_SECONDS)


class BrowserSession:
    """
    Everything the BFF keeps for one browser.

    `local_storage` survives reloads and holds the token bundle, `session_storage`
    holds the OAuth handshake. The session manager and flow are in-memory only and
    are rebuilt on reload.
    """

    def __init__(self, session_id: str, services: "PortalServices"):
        self.session_id = session_id
        self.local_storage: Dict[str, str] = {}
        self.session_storage: Dict[str, str] = {}
        self.channel = MessageChannel(services.settings.BFF_ORIGIN)
        self.token_store = TokenStore(self.local_storage, clock=services.clock)
        self.handshakes = HandshakeStore(self.session_storage)
        self.oauth_flow: OAuthHandshakeFlow
        self.manager: SessionManager
        self.needs_restore = True
        self.last_seen_ms = services.clock()
        self._services = services
        self.reload()

    def reload(self) -> None:
        """Drops in-memory state; the next request restores it from the stored token bundle."""
        settings = self._services.settings
        self.oauth_flow = OAuthHandshakeFlow(
            self._services.auth_client,
            self.handshakes,
            settings.BFF_REDIRECT_URI,
            channel=self.channel,
            poll_interval=settings.POPUP_POLL_INTERVAL_SECONDS,
            default_target=settings.DEFAULT_POST_LOGIN_PATH,
        )
        self.manager = SessionManager(
            self._services.auth_client,
            self.token_store,
            self.oauth_flow,
            clock=self._services.clock,
            refresh_margin_ms=settings.TOKEN_REFRESH_MARGIN_MS,
            just_signed_in_ms=settings.JUST_SIGNED_IN_SECONDS * 1000,
            refresh_check_interval=settings.REFRESH_CHECK_INTERVAL_SECONDS,
        )
        self.needs_restore = True

    async def ensure_restored(self) -> None:
        if self.needs_restore:
            self.needs_restore = False
            await self.manager.restore_session()

    def touch(self) -> None:
        self.last_seen_ms = self._services.clock()


class PortalServices:
    """Explicitly constructed service graph, built at startup and torn down at shutdown."""

    def __init__(
            self,
            settings: Settings,
            http: Optional[httpx.AsyncClient] = None,
            *,
            clock: Callable[[], int] = epoch_ms,
    ):
        self.settings = settings
        self.clock = clock
        self._owns_http = http is None
        self.http = http if http is not None else build_http_client(settings)
        self.auth_client = AuthBackendClient(self.http)
        self.trading_api = TradingApiClient(self.http)
        self.equity = EquityDataService(self.trading_api, fetch_limit=settings.EQUITY_FETCH_LIMIT, clock=clock)
        self.sessions: Dict[str, BrowserSession] = {}
        self._refresh_task: Optional[asyncio.Task] = None

    def get_or_create_session(self, session_id: Optional[str]) -> BrowserSession:
        if session_id and session_id in self.sessions:
            browser = self.sessions[session_id]
            browser.touch()
            return browser
        session_id = str(uuid.uuid4())
        browser = BrowserSession(session_id, self)
        self.sessions[session_id] = browser
        return browser

    def prune_idle_sessions(self) -> int:
        """Forgets browsers not seen within the cookie lifetime; their cookie has expired anyway."""
        cutoff = self.clock() - self.settings.SESSION_MAX_AGE_SECONDS * 1000
        idle = [sid for sid, browser in self.sessions.items() if browser.last_seen_ms < cutoff]
        for sid in idle:
            del self.sessions[sid]
        if idle:
            print(f"SESSION: Dropped {len(idle)} idle browser session(s).")
        return len(idle)

    async def refresh_all(self) -> int:
        self.prune_idle_sessions()
        refreshed = 0
        for browser in list(self.sessions.values()):
            if await browser.manager.check_and_refresh():
                refreshed += 1
        return refreshed

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.REFRESH_CHECK_INTERVAL_SECONDS)
            refreshed = await self.refresh_all()
            if refreshed:
                print(f"SESSION: Periodic check refreshed {refreshed} session(s).")

    def start(self) -> None:
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.get_running_loop().create_task(self._refresh_loop())

    async def aclose(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None
        if self._owns_http:
            await self.http.aclose()
