# src/tiris_portal/token_store.py

import time
from typing import Callable, MutableMapping, Optional

from jose import JWTError, jwt

from .errors import BackendError, ErrorKind
from .session_data import AuthProvider, OAuthHandshakeState, TokenBundle

ACCESS_TOKEN_KEY = "access_token"
REFRESH_TOKEN_KEY = "refresh_token"
EXPIRES_AT_KEY = "token_expires_at"

OAUTH_STATE_KEY = "oauth_state"
OAUTH_PROVIDER_KEY = "oauth_provider"
REDIRECT_AFTER_LOGIN_KEY = "redirect_after_login"
OAUTH_MODE_KEY = "oauth_mode"


def epoch_ms() -> int:
    return int(time.time() * 1000)


def expiry_from_access_token(access_token: str) -> Optional[int]:
    """Reads the `exp` claim (seconds) without verifying the signature; returns epoch ms."""
    try:
        claims = jwt.get_unverified_claims(access_token)
    except JWTError:
        return None
    exp = claims.get("exp")
    if isinstance(exp, (int, float)):
        return int(exp * 1000)
    return None


def compute_expires_at(access_token: str, expires_in: Optional[int], now_ms: int) -> int:
    if expires_in is not None:
        return now_ms + int(expires_in) * 1000
    from_claims = expiry_from_access_token(access_token)
    if from_claims is None:
        raise BackendError(
            ErrorKind.UNKNOWN,
            "Backend returned an access token without expires_in or an exp claim.",
        )
    return from_claims


class TokenStore:
    """
    Persists the token bundle in an origin-scoped key/value mapping.
    The three keys are written and cleared together; a partial set is corrupt.
    """

    def __init__(self, storage: MutableMapping[str, str], clock: Callable[[], int] = epoch_ms):
        self._storage = storage
        self._clock = clock

    def load(self) -> Optional[TokenBundle]:
        access_token = self._storage.get(ACCESS_TOKEN_KEY)
        refresh_token = self._storage.get(REFRESH_TOKEN_KEY)
        expires_at = self._storage.get(EXPIRES_AT_KEY)

        if not access_token and not refresh_token and not expires_at:
            return None
        try:
            expires_at_ms = int(expires_at) if expires_at is not None else None
        except ValueError:
            expires_at_ms = None
        if not access_token or not refresh_token or expires_at_ms is None:
            print("TOKEN_STORE: Found a partial token bundle in storage. Clearing it.")
            self.clear()
            return None
        return TokenBundle(access_token=access_token, refresh_token=refresh_token, expires_at_ms=expires_at_ms)

    def save(self, bundle: TokenBundle) -> None:
        self._storage[ACCESS_TOKEN_KEY] = bundle.access_token
        self._storage[REFRESH_TOKEN_KEY] = bundle.refresh_token
        self._storage[EXPIRES_AT_KEY] = str(bundle.expires_at_ms)

    def save_tokens(self, access_token: str, refresh_token: str, expires_in: Optional[int]) -> TokenBundle:
        bundle = TokenBundle(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at_ms=compute_expires_at(access_token, expires_in, self._clock()),
        )
        self.save(bundle)
        return bundle

    def clear(self) -> None:
        for key in (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, EXPIRES_AT_KEY):
            self._storage.pop(key, None)

    def is_expiring(self, margin_ms: int) -> bool:
        bundle = self.load()
        if bundle is None:
            return True
        return bundle.is_expiring(self._clock(), margin_ms)


class HandshakeStore:
    """Session-scoped OAuth handshake state. Every read through consume() is destructive."""

    def __init__(self, storage: MutableMapping[str, str]):
        self._storage = storage

    def begin(self, handshake: OAuthHandshakeState) -> None:
        self._storage[OAUTH_STATE_KEY] = handshake.csrf_state
        self._storage[OAUTH_PROVIDER_KEY] = handshake.provider.value
        self._storage[REDIRECT_AFTER_LOGIN_KEY] = handshake.redirect_target
        self._storage[OAUTH_MODE_KEY] = handshake.mode

    def peek(self) -> Optional[OAuthHandshakeState]:
        csrf_state = self._storage.get(OAUTH_STATE_KEY)
        if not csrf_state:
            return None
        return OAuthHandshakeState(
            provider=AuthProvider(self._storage.get(OAUTH_PROVIDER_KEY, AuthProvider.GOOGLE.value)),
            csrf_state=csrf_state,
            redirect_target=self._storage.get(REDIRECT_AFTER_LOGIN_KEY) or "/dashboard",
            mode=self._storage.get(OAUTH_MODE_KEY) or "redirect",
        )

    def consume(self) -> Optional[OAuthHandshakeState]:
        handshake = self.peek()
        self.discard()
        return handshake

    def discard(self) -> None:
        for key in (OAUTH_STATE_KEY, OAUTH_PROVIDER_KEY, REDIRECT_AFTER_LOGIN_KEY, OAUTH_MODE_KEY):
            self._storage.pop(key, None)

    def remember_redirect(self, target: str) -> None:
        """Stores the page to return to before any handshake has started."""
        self._storage[REDIRECT_AFTER_LOGIN_KEY] = target

    def remembered_redirect(self) -> Optional[str]:
        return self._storage.get(REDIRECT_AFTER_LOGIN_KEY)
