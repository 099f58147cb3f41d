# src/tiris_portal/errors.py

from enum import Enum
from typing import Optional

from fastapi import status


class ErrorKind(str, Enum):
    NETWORK = "network"
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    SERVER = "server"
    WARMING_UP = "warming_up"
    INVALID_PROVIDER = "invalid_provider"
    REDIRECT_URI_MISMATCH = "redirect_uri_mismatch"
    STATE_MISMATCH = "state_mismatch"
    INVALID_AUTHORIZATION_CODE = "invalid_authorization_code"
    TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
    PROVIDER_ERROR = "provider_error"
    POPUP_BLOCKED = "popup_blocked"
    LOGIN_CANCELLED = "login_cancelled"
    SESSION_EXPIRED = "session_expired"
    UNKNOWN = "unknown"


# Backend error codes that get bespoke treatment regardless of HTTP status.
BODY_CODE_KINDS = {
    "INVALID_PROVIDER": ErrorKind.INVALID_PROVIDER,
    "REDIRECT_URI_MISMATCH": ErrorKind.REDIRECT_URI_MISMATCH,
    "STATE_MISMATCH": ErrorKind.STATE_MISMATCH,
    "INVALID_STATE": ErrorKind.STATE_MISMATCH,
    "INVALID_AUTHORIZATION_CODE": ErrorKind.INVALID_AUTHORIZATION_CODE,
    "GOOGLE_TOKEN_EXCHANGE_FAILED": ErrorKind.TOKEN_EXCHANGE_FAILED,
    "WECHAT_TOKEN_EXCHANGE_FAILED": ErrorKind.TOKEN_EXCHANGE_FAILED,
    "TOKEN_EXCHANGE_FAILED": ErrorKind.TOKEN_EXCHANGE_FAILED,
    "INVALID_CREDENTIALS": ErrorKind.UNAUTHORIZED,
    "UNAUTHORIZED": ErrorKind.UNAUTHORIZED,
    "INVALID_REFRESH_TOKEN": ErrorKind.SESSION_EXPIRED,
    "NOT_FOUND": ErrorKind.NOT_FOUND,
    "CONFLICT": ErrorKind.CONFLICT,
    "EMAIL_EXISTS": ErrorKind.CONFLICT,
    "VALIDATION_ERROR": ErrorKind.VALIDATION,
}

USER_MESSAGES = {
    ErrorKind.NETWORK: "Unable to connect to TIRIS backend. Please check your internet connection or contact support.",
    ErrorKind.VALIDATION: "The request was rejected as invalid. Please check your input and try again.",
    ErrorKind.UNAUTHORIZED: "Invalid credentials or expired session. Please sign in again.",
    ErrorKind.FORBIDDEN: "You do not have permission to perform this action.",
    ErrorKind.NOT_FOUND: "The requested resource was not found.",
    ErrorKind.CONFLICT: "This resource already exists or conflicts with an existing one.",
    ErrorKind.SERVER: "TIRIS backend server is currently unavailable. Please try again later.",
    ErrorKind.WARMING_UP: "Data is being prepared. It will appear shortly.",
    ErrorKind.INVALID_PROVIDER: "This sign-in provider is not configured. Please choose another method.",
    ErrorKind.REDIRECT_URI_MISMATCH: "Sign-in is misconfigured: the callback URL does not match the backend configuration.",
    ErrorKind.STATE_MISMATCH: "Security check failed: state parameter validation failed. Please try signing in again.",
    ErrorKind.INVALID_AUTHORIZATION_CODE: "The authorization code has expired or was already used. Please try signing in again.",
    ErrorKind.TOKEN_EXCHANGE_FAILED: "The identity provider token exchange failed. Please try again later.",
    ErrorKind.PROVIDER_ERROR: "The identity provider reported an error during sign-in.",
    ErrorKind.POPUP_BLOCKED: "The sign-in popup was blocked. Please allow popups for this site.",
    ErrorKind.LOGIN_CANCELLED: "Login cancelled.",
    ErrorKind.SESSION_EXPIRED: "Your session has expired. Please sign in again.",
    ErrorKind.UNKNOWN: "An unknown error occurred.",
}

HTTP_STATUS_BY_KIND = {
    ErrorKind.NETWORK: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.SERVER: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.WARMING_UP: status.HTTP_202_ACCEPTED,
    ErrorKind.INVALID_PROVIDER: status.HTTP_400_BAD_REQUEST,
    ErrorKind.REDIRECT_URI_MISMATCH: status.HTTP_400_BAD_REQUEST,
    ErrorKind.STATE_MISMATCH: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INVALID_AUTHORIZATION_CODE: status.HTTP_400_BAD_REQUEST,
    ErrorKind.TOKEN_EXCHANGE_FAILED: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.PROVIDER_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorKind.POPUP_BLOCKED: status.HTTP_400_BAD_REQUEST,
    ErrorKind.LOGIN_CANCELLED: status.HTTP_400_BAD_REQUEST,
    ErrorKind.SESSION_EXPIRED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.UNKNOWN: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def classify_error(status_code: Optional[int], body_code: Optional[str] = None, message: str = "") -> ErrorKind:
    """
    Maps a failed backend interaction to exactly one ErrorKind.

    A known backend error code wins over the HTTP status, then hints in the
    error message, then the status itself. No status at all means the request
    never reached the backend.
    """
    if body_code and body_code.upper() in BODY_CODE_KINDS:
        return BODY_CODE_KINDS[body_code.upper()]

    lowered = (message or "").lower()
    if "redirect_uri" in lowered:
        return ErrorKind.REDIRECT_URI_MISMATCH
    if "invalid_code" in lowered:
        return ErrorKind.INVALID_AUTHORIZATION_CODE
    if "state" in lowered and "mismatch" in lowered:
        return ErrorKind.STATE_MISMATCH

    if status_code is None:
        return ErrorKind.NETWORK
    if status_code == 202:
        return ErrorKind.WARMING_UP
    if status_code == 400 or status_code == 422:
        return ErrorKind.VALIDATION
    if status_code == 401:
        return ErrorKind.UNAUTHORIZED
    if status_code == 403:
        return ErrorKind.FORBIDDEN
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code == 409:
        return ErrorKind.CONFLICT
    if status_code >= 500:
        return ErrorKind.SERVER
    return ErrorKind.UNKNOWN


class PortalError(Exception):
    def __init__(
            self,
            kind: ErrorKind,
            message: Optional[str] = None,
            status_code: Optional[int] = None,
            code: Optional[str] = None,
            details: Optional[str] = None,
    ):
        self.kind = kind
        self.status_code = status_code
        self.code = code
        self.details = details
        super().__init__(message or USER_MESSAGES[kind])

    @property
    def user_message(self) -> str:
        return USER_MESSAGES[self.kind]

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.user_message,
            "detail": str(self),
            "code": self.code,
        }


class BackendError(PortalError):
    """Raised for transport failures and error envelopes returned by the TIRIS backend."""


class HandshakeError(PortalError):
    """Raised when an OAuth handshake is blocked, cancelled or rejected."""


class WarmupInProgress(BackendError):
    def __init__(self, retry_after_ms: int, message: Optional[str] = None):
        self.retry_after_ms = retry_after_ms
        super().__init__(ErrorKind.WARMING_UP, message, status_code=202)


def to_http_status(error: PortalError) -> int:
    return HTTP_STATUS_BY_KIND.get(error.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
