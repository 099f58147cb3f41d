# src/tiris_portal/session_manager.py

import asyncio
from typing import Callable, Optional

from .auth_client import AuthBackendClient
from .errors import ErrorKind, PortalError
from .oauth_flow import HandshakeResult, OAuthCallbackMessage, OAuthHandshakeFlow
from .session_data import AuthProvider, AuthResponse, Session, SessionState
from .token_store import TokenStore, epoch_ms

DEFAULT_REFRESH_MARGIN_MS = 60_000
DEFAULT_JUST_SIGNED_IN_MS = 5_000
DEFAULT_REFRESH_CHECK_INTERVAL_SECONDS = 60


class SessionManager:
    """
    Owns the in-memory session of one client.

    Every operation is async and runs on the caller's event loop. There is no lock:
    a periodic refresh and a user-triggered refresh can race, and both converge on
    the same stored tokens and session.
    """

    def __init__(
            self,
            auth_client: AuthBackendClient,
            token_store: TokenStore,
            oauth_flow: Optional[OAuthHandshakeFlow] = None,
            *,
            clock: Callable[[], int] = epoch_ms,
            refresh_margin_ms: int = DEFAULT_REFRESH_MARGIN_MS,
            just_signed_in_ms: int = DEFAULT_JUST_SIGNED_IN_MS,
            refresh_check_interval: float = DEFAULT_REFRESH_CHECK_INTERVAL_SECONDS,
    ):
        self._auth_client = auth_client
        self._tokens = token_store
        self._oauth_flow = oauth_flow
        self._clock = clock
        self._refresh_margin_ms = refresh_margin_ms
        self._just_signed_in_ms = just_signed_in_ms
        self._refresh_check_interval = refresh_check_interval
        self._refresh_task: Optional[asyncio.Task] = None
        self._signed_in_at_ms: Optional[int] = None
        self.state = SessionState.UNAUTHENTICATED
        self.session: Optional[Session] = None

    @property
    def is_authenticated(self) -> bool:
        return self.session is not None

    @property
    def is_loading(self) -> bool:
        return self.state not in (SessionState.UNAUTHENTICATED, SessionState.AUTHENTICATED)

    @property
    def just_signed_in(self) -> bool:
        if self._signed_in_at_ms is None:
            return False
        return self._clock() - self._signed_in_at_ms < self._just_signed_in_ms

    @property
    def oauth_flow(self) -> Optional[OAuthHandshakeFlow]:
        return self._oauth_flow

    def acknowledge_sign_in(self) -> None:
        self._signed_in_at_ms = None

    # --- Startup / refresh ---

    async def restore_session(self) -> Optional[Session]:
        self.state = SessionState.RESTORING
        bundle = self._tokens.load()
        if bundle is None:
            self.state = SessionState.UNAUTHENTICATED
            return None

        try:
            if bundle.is_expiring(self._clock(), self._refresh_margin_ms):
                print("SESSION: Stored access token is expired or about to expire. Refreshing before restore.")
                await self.refresh_auth()
            else:
                user = await self._auth_client.get_current_user(bundle.access_token)
                self.session = Session.from_backend_user(user)
        except PortalError as e:
            print(f"SESSION: Session restoration failed: {e}")
            self._tokens.clear()
            self.session = None
            self.state = SessionState.UNAUTHENTICATED
            return None

        self.state = SessionState.AUTHENTICATED if self.session else SessionState.UNAUTHENTICATED
        if self.session:
            print(f"SESSION: Session restored for '{self.session.display_name}'.")
        return self.session

    async def refresh_auth(self) -> Session:
        bundle = self._tokens.load()
        if bundle is None:
            await self.logout()
            raise PortalError(ErrorKind.SESSION_EXPIRED, "No refresh token available")

        previous_state = self.state
        if previous_state is SessionState.AUTHENTICATED:
            self.state = SessionState.REFRESHING
        try:
            refreshed = await self._auth_client.refresh_token(bundle.refresh_token)
            self._tokens.save_tokens(
                refreshed.access_token,
                refreshed.refresh_token or bundle.refresh_token,
                refreshed.expires_in,
            )
            user = await self._auth_client.get_current_user(refreshed.access_token)
        except PortalError as e:
            print(f"SESSION: Token refresh failed: {e}. Forcing logout.")
            await self.logout()
            raise

        self.session = Session.from_backend_user(user)
        if previous_state is not SessionState.RESTORING:
            self.state = SessionState.AUTHENTICATED
        print("SESSION: Access token refreshed.")
        return self.session

    def needs_refresh(self) -> bool:
        return self._tokens.is_expiring(self._refresh_margin_ms)

    async def check_and_refresh(self) -> bool:
        """One tick of the periodic check. Returns True when a refresh ran and succeeded."""
        if not self.is_authenticated or not self.needs_refresh():
            return False
        try:
            await self.refresh_auth()
        except PortalError as e:
            print(f"SESSION: Auto token refresh failed: {e}")
            return False
        return True

    async def ensure_fresh_token(self) -> str:
        """Access token to use for an authenticated request, refreshed first if it is about to expire."""
        if self.needs_refresh():
            await self.refresh_auth()
        bundle = self._tokens.load()
        if bundle is None:
            raise PortalError(ErrorKind.SESSION_EXPIRED)
        return bundle.access_token

    def start(self) -> None:
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.get_running_loop().create_task(self._refresh_loop())

    async def stop(self) -> None:
        if self._refresh_task is None:
            return
        self._refresh_task.cancel()
        try:
            await self._refresh_task
        except asyncio.CancelledError:
            pass
        self._refresh_task = None

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self._refresh_check_interval)
            await self.check_and_refresh()

    # --- Login / logout ---

    async def login_with_google(self) -> Session:
        return await self._login_with_popup(AuthProvider.GOOGLE)

    async def login_with_wechat(self) -> Session:
        return await self._login_with_popup(AuthProvider.WECHAT)

    async def sign_in_with_email_password(self, email: str, password: str) -> Session:
        return await self._login(lambda: self._auth_client.sign_in(email, password), "Email/Password sign-in")

    async def sign_up_with_email_password(self, email: str, password: str, full_name: str) -> Session:
        return await self._login(
            lambda: self._auth_client.sign_up(email, password, full_name),
            "Email/Password sign-up",
        )

    async def complete_oauth_callback(self, message: OAuthCallbackMessage) -> HandshakeResult:
        """Finishes a popup handshake whose callback reached us as a message."""
        flow = self._require_flow()
        result = None

        async def exchange() -> AuthResponse:
            nonlocal result
            result = await flow.complete_callback(message)
            return result.auth

        await self._login(exchange, "OAuth callback")
        return result

    async def complete_login(self, auth: AuthResponse) -> Session:
        self._tokens.save_tokens(auth.access_token, auth.refresh_token, auth.expires_in)
        self.session = Session.from_backend_user(auth.user)
        self.state = SessionState.AUTHENTICATED
        self._signed_in_at_ms = self._clock()
        print(f"SESSION: '{self.session.display_name}' signed in via {self.session.provider.value}.")
        return self.session

    async def logout(self) -> None:
        previous_user = self.session.display_name if self.session else None
        self.state = SessionState.LOGGING_OUT
        bundle = self._tokens.load()
        if bundle is not None:
            try:
                await self._auth_client.logout(bundle.access_token)
            except PortalError as e:
                print(f"SESSION: Logout API call failed: {e}. Continuing with local cleanup.")

        self.session = None
        self._signed_in_at_ms = None
        self._tokens.clear()
        self.state = SessionState.UNAUTHENTICATED
        print(f"SESSION: Logged out. User before logout: {previous_user or 'Not signed in'}")

    async def _login_with_popup(self, provider: AuthProvider) -> Session:
        flow = self._require_flow()

        async def handshake() -> AuthResponse:
            result = await flow.run_popup_login(provider)
            return result.auth

        return await self._login(handshake, f"{provider.value.capitalize()} login")

    async def _login(self, exchange, label: str) -> Session:
        previous_state = self.state
        self.state = SessionState.SIGNING_IN
        try:
            auth = await exchange()
            return await self.complete_login(auth)
        except PortalError as e:
            print(f"SESSION: {label} failed: {e}")
            self.state = previous_state
            raise

    def _require_flow(self) -> OAuthHandshakeFlow:
        if self._oauth_flow is None:
            raise PortalError(ErrorKind.INVALID_PROVIDER, "OAuth login is not available for this session.")
        return self._oauth_flow
