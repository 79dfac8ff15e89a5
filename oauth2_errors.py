"""
oauth2_errors.py — failure taxonomy for the OAuth2 login flow.

Every failure carries a machine-readable ``reason`` so the host can branch
without parsing messages. Messages never include token values, the client
secret, or response bodies.
"""

from enum import Enum


class OAuth2Error(Exception):
    """Base class for every login-flow failure."""

    reason: Enum | None = None

    def __init__(self, message: str, reason: Enum | None = None):
        super().__init__(message)
        if reason is not None:
            self.reason = reason


class ConfigurationError(OAuth2Error):
    """A required setting is missing or invalid. Fatal at startup."""


class CsrfReason(str, Enum):
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_CONSUMED = "already_consumed"
    MISSING_STATE = "missing_state"


class CsrfError(OAuth2Error):
    def __init__(self, reason: CsrfReason):
        super().__init__(f"State token rejected: {reason.value}", reason)


class MissingAuthorizationCode(OAuth2Error):
    def __init__(self) -> None:
        super().__init__("Callback did not carry an authorization code.")


class AuthorizationDeniedError(OAuth2Error):
    """The IdP redirected back with ``error=`` instead of a code."""

    def __init__(self, error_code: str):
        self.error_code = error_code
        super().__init__(f"Identity provider returned error: {error_code}")


class HttpFailure(str, Enum):
    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"
    TRANSPORT = "transport"
    INVALID_RESPONSE = "invalid_response"
    MISSING_ACCESS_TOKEN = "missing_access_token"
    MISSING_CLAIM = "missing_claim"


class TokenExchangeError(OAuth2Error):
    def __init__(self, message: str, reason: HttpFailure,
                 status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message, reason)


class UserInfoError(OAuth2Error):
    def __init__(self, message: str, reason: HttpFailure,
                 status_code: int | None = None, claim: str | None = None):
        self.status_code = status_code
        self.claim = claim
        super().__init__(message, reason)
