# src/tiris_portal/session_data.py

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class AuthProvider(str, Enum):
    GOOGLE = "google"
    WECHAT = "wechat"
    EMAIL = "email"


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    RESTORING = "restoring"
    SIGNING_IN = "signing_in"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    LOGGING_OUT = "logging_out"


class UserSettings(BaseModel):
    timezone: str = "UTC"
    currency: str = "USD"
    notifications: bool = True


class BackendUser(BaseModel):
    """User profile as returned by the TIRIS backend."""
    model_config = ConfigDict(extra="ignore")

    id: str
    username: str = ""
    email: str = ""
    avatar: Optional[str] = None
    email_verified: Optional[bool] = None
    settings: Optional[UserSettings] = None
    info: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class Session(BaseModel):
    """
    The signed-in user as seen by the UI.
    Only the session manager creates or replaces it.
    """
    user_id: str
    email: str
    display_name: str
    avatar_url: Optional[str] = None
    provider: AuthProvider = AuthProvider.EMAIL
    email_verified: bool = False
    settings: UserSettings = Field(default_factory=UserSettings)

    @classmethod
    def from_backend_user(cls, user: BackendUser) -> "Session":
        raw_provider = (user.info.get("oauth_provider") or "email").lower()
        try:
            provider = AuthProvider(raw_provider)
        except ValueError:
            provider = AuthProvider.EMAIL
        email_verified = user.email_verified
        if email_verified is None:
            email_verified = bool(user.info.get("email_verified", provider is not AuthProvider.EMAIL))
        return cls(
            user_id=user.id,
            email=user.email,
            display_name=user.username or user.email,
            avatar_url=user.avatar or None,
            provider=provider,
            email_verified=email_verified,
            settings=user.settings or UserSettings(),
        )


class TokenBundle(BaseModel):
    access_token: str
    refresh_token: str
    expires_at_ms: int

    def is_expiring(self, now_ms: int, margin_ms: int) -> bool:
        return now_ms >= self.expires_at_ms - margin_ms


class LoginResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    auth_url: str
    state: str


class AuthResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: str
    expires_in: Optional[int] = None
    user: BackendUser


class RefreshResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    access_token: str
    expires_in: Optional[int] = None
    # Present only when the backend rotates refresh tokens
    refresh_token: Optional[str] = None


class OAuthHandshakeState(BaseModel):
    provider: AuthProvider
    csrf_state: str
    redirect_target: str = "/dashboard"
    mode: str = "redirect"  # "popup" or "redirect"
