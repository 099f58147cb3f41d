# src/tiris_portal/config.py

from pathlib import Path
from typing import Any, List, Union

from dotenv import load_dotenv
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# .env is at the project root, two levels up from src/tiris_portal/
CONFIG_FILE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT_DIR = CONFIG_FILE_DIR.parent.parent
ENV_FILE_PATH = PROJECT_ROOT_DIR / ".env"

if ENV_FILE_PATH.exists():
    load_dotenv(dotenv_path=ENV_FILE_PATH, override=True)
    print(f"TirisPortal: Successfully loaded .env file from: {ENV_FILE_PATH}")
else:
    print(
        f"TirisPortal: Warning: .env file not found at {ENV_FILE_PATH}. Relying on environment variables."
    )

KNOWN_PROVIDERS = ("google", "wechat", "email")


class Settings(BaseSettings):
    # === TIRIS backend ===
    API_BASE_URL: str = "https://backend.dev.tiris.ai/v1"
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # === BFF / browser-facing details ===
    BFF_ORIGIN: str = "http://localhost:8000"
    BFF_REDIRECT_URI: str = "http://localhost:8000/auth/callback"
    DEFAULT_POST_LOGIN_PATH: str = "/dashboard"
    # Comma-separated in the env, list after validation
    ENABLED_PROVIDERS: Union[str, List[str]] = "google,wechat,email"

    # === Session management ===
    SESSION_SECRET_KEY: str = ""
    SESSION_COOKIE_SECURE: bool = False
    # Cookie max age; browser sessions idle for longer are dropped from memory
    SESSION_MAX_AGE_SECONDS: int = 60 * 60 * 4
    TOKEN_REFRESH_MARGIN_SECONDS: int = 60
    REFRESH_CHECK_INTERVAL_SECONDS: int = 60
    JUST_SIGNED_IN_SECONDS: int = 5
    POPUP_POLL_INTERVAL_SECONDS: float = 1.0

    # === Equity data ===
    EQUITY_FETCH_LIMIT: int = 500

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False
    )

    @property
    def TOKEN_REFRESH_MARGIN_MS(self) -> int:
        return self.TOKEN_REFRESH_MARGIN_SECONDS * 1000

    @field_validator("ENABLED_PROVIDERS", mode='before')
    @classmethod
    def parse_comma_separated_providers(cls, v: Any) -> List[str]:
        if isinstance(v, str):
            if not v.strip():
                return []
            return [provider.strip().lower() for provider in v.split(',') if provider.strip()]
        if isinstance(v, list):
            return [str(provider).strip().lower() for provider in v]
        raise TypeError('ENABLED_PROVIDERS: Expected a comma-separated string or a list.')

    @model_validator(mode='after')
    def check_providers_are_known(self) -> 'Settings':
        if not isinstance(self.ENABLED_PROVIDERS, list):
            raise ValueError(f"ENABLED_PROVIDERS ended up as {type(self.ENABLED_PROVIDERS)}, expected list.")
        unknown = [p for p in self.ENABLED_PROVIDERS if p not in KNOWN_PROVIDERS]
        if unknown:
            raise ValueError(f"ENABLED_PROVIDERS contains unknown providers: {unknown}")
        if self.TOKEN_REFRESH_MARGIN_SECONDS < 0:
            raise ValueError("TOKEN_REFRESH_MARGIN_SECONDS must not be negative.")
        return self


try:
    settings = Settings()
    print(f"TirisPortal API base URL: {settings.API_BASE_URL}")
    print(f"TirisPortal redirect URI: {settings.BFF_REDIRECT_URI}")
    print(f"TirisPortal enabled providers: {settings.ENABLED_PROVIDERS}")
except Exception as e:
    print(f"TirisPortal: Error instantiating Settings: {e}")
    raise
