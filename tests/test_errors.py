import pytest

from tiris_portal.errors import (
    USER_MESSAGES,
    BackendError,
    ErrorKind,
    PortalError,
    WarmupInProgress,
    classify_error,
    to_http_status,
)


@pytest.mark.parametrize("status_code, expected", [
    (None, ErrorKind.NETWORK),
    (202, ErrorKind.WARMING_UP),
    (400, ErrorKind.VALIDATION),
    (422, ErrorKind.VALIDATION),
    (401, ErrorKind.UNAUTHORIZED),
    (403, ErrorKind.FORBIDDEN),
    (404, ErrorKind.NOT_FOUND),
    (409, ErrorKind.CONFLICT),
    (500, ErrorKind.SERVER),
    (503, ErrorKind.SERVER),
    (418, ErrorKind.UNKNOWN),
])
def test_classify_by_status(status_code, expected):
    assert classify_error(status_code) is expected


def test_known_body_code_wins_over_status():
    assert classify_error(500, "INVALID_PROVIDER") is ErrorKind.INVALID_PROVIDER
    assert classify_error(400, "google_token_exchange_failed") is ErrorKind.TOKEN_EXCHANGE_FAILED


def test_message_hints_are_checked_before_status():
    assert classify_error(400, None, "redirect_uri does not match") is ErrorKind.REDIRECT_URI_MISMATCH
    assert classify_error(400, "SOMETHING_ELSE", "State mismatch detected") is ErrorKind.STATE_MISMATCH
    assert classify_error(400, None, "invalid_code") is ErrorKind.INVALID_AUTHORIZATION_CODE


def test_portal_error_defaults_to_user_message():
    error = BackendError(ErrorKind.NETWORK)
    assert str(error) == USER_MESSAGES[ErrorKind.NETWORK]
    assert error.to_dict() == {
        "kind": "network",
        "message": USER_MESSAGES[ErrorKind.NETWORK],
        "detail": USER_MESSAGES[ErrorKind.NETWORK],
        "code": None,
    }
    assert to_http_status(error) == 503


def test_warmup_is_accepted_not_failed():
    error = WarmupInProgress(3000)
    assert error.kind is ErrorKind.WARMING_UP
    assert error.retry_after_ms == 3000
    assert to_http_status(error) == 202


def test_every_kind_has_text_and_status():
    for kind in ErrorKind:
        assert USER_MESSAGES[kind]
        assert to_http_status(PortalError(kind)) >= 200
