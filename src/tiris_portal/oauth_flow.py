# src/tiris_portal/oauth_flow.py

import asyncio
import secrets
from enum import Enum
from typing import Literal, Mapping, Optional, Protocol

from pydantic import BaseModel, ValidationError

from .auth_client import AuthBackendClient
from .errors import ErrorKind, HandshakeError, PortalError
from .session_data import AuthProvider, AuthResponse, OAuthHandshakeState
from .token_store import HandshakeStore

OAUTH_CALLBACK_MESSAGE_TYPE = "OAUTH_CALLBACK"
POPUP_MODE = "popup"
REDIRECT_MODE = "redirect"


class HandshakeStage(str, Enum):
    IDLE = "idle"
    INITIATED = "initiated"
    AWAITING_CALLBACK = "awaiting_callback"
    CALLBACK_RECEIVED = "callback_received"
    VALIDATING = "validating"
    EXCHANGING = "exchanging"
    COMPLETED = "completed"
    FAILED = "failed"


class OAuthCallbackMessage(BaseModel):
    type: Literal["OAUTH_CALLBACK"] = OAUTH_CALLBACK_MESSAGE_TYPE
    code: Optional[str] = None
    state: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None


def callback_message_from_params(params: Mapping[str, str]) -> OAuthCallbackMessage:
    """Builds the message a callback page forwards, from the identity provider's query parameters."""
    error = params.get("error")
    if error:
        return OAuthCallbackMessage(error=error, error_description=params.get("error_description"))
    code = params.get("code")
    state = params.get("state")
    if code and state:
        return OAuthCallbackMessage(code=code, state=state)
    return OAuthCallbackMessage(
        error="missing_parameters",
        error_description="Missing code or state parameter",
    )


class HandshakeResult(BaseModel):
    auth: AuthResponse
    redirect_target: str


class MessageChannel:
    """
    Same-origin message passing between a popup and its opener.
    Anything from another origin, or not an OAUTH_CALLBACK payload, is dropped.
    """

    def __init__(self, origin: str):
        self.origin = origin
        self._queue: "asyncio.Queue[OAuthCallbackMessage]" = asyncio.Queue()

    def post(self, payload: Mapping, origin: str) -> bool:
        if origin != self.origin:
            print(f"OAUTH: Dropping message from foreign origin {origin}")
            return False
        if not isinstance(payload, Mapping) or payload.get("type") != OAUTH_CALLBACK_MESSAGE_TYPE:
            return False
        try:
            message = OAuthCallbackMessage.model_validate(dict(payload))
        except ValidationError as e:
            print(f"OAUTH: Dropping malformed callback message: {e}")
            return False
        self._queue.put_nowait(message)
        return True

    async def receive(self, timeout: float) -> Optional[OAuthCallbackMessage]:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def receive_nowait(self) -> Optional[OAuthCallbackMessage]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None


class PopupWindow(Protocol):
    @property
    def closed(self) -> bool: ...

    def close(self) -> None: ...


class WindowOpener(Protocol):
    def open(self, url: str) -> Optional[PopupWindow]:
        """Returns None when the popup was blocked."""
        ...


class OAuthHandshakeFlow:
    """
    Backend-mediated OAuth handshake for one browser session.

    The stored handshake state is single-use: every callback consumes it,
    whether the exchange succeeds or not.
    """

    def __init__(
            self,
            auth_client: AuthBackendClient,
            handshakes: HandshakeStore,
            redirect_uri: str,
            *,
            opener: Optional[WindowOpener] = None,
            channel: Optional[MessageChannel] = None,
            poll_interval: float = 1.0,
            default_target: str = "/dashboard",
    ):
        self._auth_client = auth_client
        self._handshakes = handshakes
        self._redirect_uri = redirect_uri
        self._opener = opener
        self._channel = channel
        self._poll_interval = poll_interval
        self._default_target = default_target
        self.stage = HandshakeStage.IDLE

    @property
    def channel(self) -> Optional[MessageChannel]:
        return self._channel

    def pending_handshake(self) -> Optional[OAuthHandshakeState]:
        return self._handshakes.peek()

    async def initiate(
            self,
            provider: AuthProvider,
            redirect_target: Optional[str] = None,
            mode: str = REDIRECT_MODE,
    ) -> str:
        if provider is AuthProvider.EMAIL:
            raise HandshakeError(ErrorKind.INVALID_PROVIDER, "Email accounts do not use the OAuth handshake.")
        target = redirect_target or self._handshakes.remembered_redirect() or self._default_target
        try:
            login = await self._auth_client.initiate_login(provider, self._redirect_uri)
        except PortalError:
            self.stage = HandshakeStage.FAILED
            raise
        self._handshakes.begin(OAuthHandshakeState(
            provider=provider,
            csrf_state=login.state,
            redirect_target=target,
            mode=mode,
        ))
        self.stage = HandshakeStage.INITIATED
        print(f"OAUTH: Handshake initiated for {provider.value} ({mode}). Will return to: {target}")
        return login.auth_url

    async def begin_redirect_login(self, provider: AuthProvider, redirect_target: Optional[str] = None) -> str:
        auth_url = await self.initiate(provider, redirect_target, REDIRECT_MODE)
        self.stage = HandshakeStage.AWAITING_CALLBACK
        return auth_url

    async def run_popup_login(self, provider: AuthProvider) -> HandshakeResult:
        if self._opener is None or self._channel is None:
            raise HandshakeError(ErrorKind.POPUP_BLOCKED, "No popup window support in this environment.")

        auth_url = await self.initiate(provider, mode=POPUP_MODE)
        popup = self._opener.open(auth_url)
        if popup is None:
            self._fail_and_discard()
            raise HandshakeError(ErrorKind.POPUP_BLOCKED, "Popup blocked")

        self.stage = HandshakeStage.AWAITING_CALLBACK
        while True:
            message = await self._channel.receive(timeout=self._poll_interval)
            if message is None and popup.closed:
                # The popup may have posted just before closing itself.
                message = self._channel.receive_nowait()
                if message is None:
                    print(f"OAUTH: Popup for {provider.value} closed without a callback. Login cancelled.")
                    self._fail_and_discard()
                    raise HandshakeError(ErrorKind.LOGIN_CANCELLED, "Login cancelled")
            if message is not None:
                if not popup.closed:
                    popup.close()
                return await self.complete_callback(message)

    async def complete_callback(self, message: OAuthCallbackMessage) -> HandshakeResult:
        self.stage = HandshakeStage.CALLBACK_RECEIVED
        handshake = self._handshakes.consume()

        if message.error:
            self.stage = HandshakeStage.FAILED
            description = f" - {message.error_description}" if message.error_description else ""
            raise HandshakeError(ErrorKind.PROVIDER_ERROR, f"Identity provider error: {message.error}{description}")
        if not message.code or not message.state:
            self.stage = HandshakeStage.FAILED
            raise HandshakeError(ErrorKind.VALIDATION, "Missing code or state parameter")

        self.stage = HandshakeStage.VALIDATING
        if handshake is None or not secrets.compare_digest(
                message.state.encode(), handshake.csrf_state.encode()
        ):
            self.stage = HandshakeStage.FAILED
            print("OAUTH: State mismatch on callback. Possible CSRF or stale flow.")
            raise HandshakeError(ErrorKind.STATE_MISMATCH, "Authentication state mismatch. Possible CSRF attack.")

        self.stage = HandshakeStage.EXCHANGING
        try:
            auth = await self._auth_client.handle_callback(
                handshake.provider,
                message.code,
                message.state,
                self._redirect_uri,
            )
        except PortalError:
            self.stage = HandshakeStage.FAILED
            raise

        self.stage = HandshakeStage.COMPLETED
        print(f"OAUTH: Handshake completed for {handshake.provider.value}. Redirect target: {handshake.redirect_target}")
        return HandshakeResult(auth=auth, redirect_target=handshake.redirect_target)

    def _fail_and_discard(self) -> None:
        self._handshakes.discard()
        self.stage = HandshakeStage.FAILED
