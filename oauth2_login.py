"""
oauth2_login.py — server-side OAuth2 authorization-code login.

  begin()     issue a state token and build the IdP authorization URL
  complete()  validate the callback, exchange the code for an access token,
              fetch userinfo and assemble the identity for the host

The access token and client secret never leave this module: they are not
logged, not stored, and not returned to the browser. Each outbound call is a
single request with 10 second connect/read timeouts and no retries; any
failure ends the attempt and the user starts over from the redirect.
"""

import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping
from urllib.parse import quote, urlencode

import httpx

from oauth2_config import OAuth2Config
from oauth2_errors import (
    AuthorizationDeniedError,
    CsrfError,
    CsrfReason,
    HttpFailure,
    MissingAuthorizationCode,
    OAuth2Error,
    TokenExchangeError,
    UserInfoError,
)
from oauth2_state import StateTokenManager

logger = logging.getLogger("oauth2-login")
audit_logger = logging.getLogger("oauth2-audit")

HTTP_TIMEOUT = 10.0  # seconds, connect and read
MAX_LOGGED_ERROR_LEN = 200


def _audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UserInfo:
    username: str
    groups: frozenset[str] = frozenset()


@dataclass(frozen=True)
class IdentityAssertion:
    username: str
    groups: frozenset[str] = frozenset()


@dataclass(frozen=True)
class AuthorizationRedirect:
    state: str
    url: str


class LoginOutcome(Enum):
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


@dataclass(frozen=True)
class LoginResult:
    outcome: LoginOutcome
    identity: IdentityAssertion | None = None
    error: OAuth2Error | None = None

    @property
    def authenticated(self) -> bool:
        return self.outcome is LoginOutcome.AUTHENTICATED


# ---------------------------------------------------------------------------
# Redirect and callback
# ---------------------------------------------------------------------------

def build_authorization_url(config: OAuth2Config, state: str) -> str:
    """Return the IdP authorization URL for a freshly issued state value."""
    query = urlencode({
        "response_type": "code",
        "client_id": config.client_id,
        "redirect_uri": config.redirect_uri,
        "scope": config.scope,
        "state": state,
    }, quote_via=quote)
    base = config.authorization_endpoint
    sep = "&" if "?" in base else "?"
    return f"{base}{sep}{query}"


def validate_callback(params: Mapping[str, str], states: StateTokenManager) -> str:
    """Check the callback query and return the authorization code.

    The state is consumed before anything else is looked at, so a callback
    carrying an IdP error still burns its state value.
    """
    state = params.get("state")
    if not state:
        raise CsrfError(CsrfReason.MISSING_STATE)
    states.validate(state)

    error = params.get("error")
    if error:
        raise AuthorizationDeniedError(error[:MAX_LOGGED_ERROR_LEN])

    code = params.get("code")
    if not code:
        raise MissingAuthorizationCode()
    return code


def assemble_identity(user_info: UserInfo) -> IdentityAssertion:
    return IdentityAssertion(username=user_info.username, groups=user_info.groups)


# ---------------------------------------------------------------------------
# Claim helpers
# ---------------------------------------------------------------------------

def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), sort_keys=True)
    return str(value)


def _claim_text(claims: Mapping[str, Any], name: str) -> str | None:
    value = claims.get(name)
    if value is None:
        return None
    return _as_text(value)


def _claim_text_set(claims: Mapping[str, Any], name: str) -> frozenset[str]:
    value = claims.get(name)
    if not isinstance(value, list):
        return frozenset()
    return frozenset(_as_text(v) for v in value if v is not None)


def _error_summary(response: httpx.Response) -> str:
    """Pull only ``error``/``error_description`` out of an error body."""
    try:
        body = response.json()
    except ValueError:
        return "unparseable body"
    if not isinstance(body, dict):
        return "non-object body"
    parts = []
    for key in ("error", "error_description"):
        if key in body and body[key] is not None:
            parts.append(f"{key}={_as_text(body[key])[:MAX_LOGGED_ERROR_LEN]}")
    return " ".join(parts) or "no error fields"


# ---------------------------------------------------------------------------
# Token exchange and userinfo
# ---------------------------------------------------------------------------

class TokenValidationService:
    """Performs the two outbound calls of the flow.

    ``transport`` is passed straight to :class:`httpx.Client`; tests hand in
    an :class:`httpx.MockTransport`.
    """

    def __init__(self, config: OAuth2Config,
                 transport: httpx.BaseTransport | None = None):
        self.config = config
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=httpx.Timeout(HTTP_TIMEOUT),
            transport=self._transport,
            follow_redirects=False,
        )

    def exchange_code_for_token(self, authorization_code: str) -> str:
        """Trade an authorization code for an access token."""
        data = {
            "grant_type": "authorization_code",
            "code": authorization_code,
            "redirect_uri": self.config.redirect_uri,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        try:
            with self._client() as client:
                response = client.post(self.config.token_endpoint, data=data, headers=headers)
        except httpx.TimeoutException:
            logger.error("Token exchange timed out after %ss", HTTP_TIMEOUT)
            raise TokenExchangeError("Token endpoint timed out.", HttpFailure.TIMEOUT)
        except httpx.HTTPError as e:
            logger.error("Token exchange transport error: %s", type(e).__name__)
            raise TokenExchangeError("Token endpoint unreachable.", HttpFailure.TRANSPORT)

        if response.status_code != 200:
            logger.error("Token exchange failed HTTP %d: %s",
                         response.status_code, _error_summary(response))
            raise TokenExchangeError(
                f"Failed to exchange authorization code. HTTP {response.status_code}",
                HttpFailure.HTTP_STATUS,
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            logger.error("Token response is not a JSON object")
            raise TokenExchangeError("Malformed token response.", HttpFailure.INVALID_RESPONSE)

        access_token = _claim_text(payload, "access_token")
        if not access_token:
            logger.error("Token response missing access_token field")
            raise TokenExchangeError("Access token not found in the response.",
                                     HttpFailure.MISSING_ACCESS_TOKEN)
        return access_token

    def get_user_info(self, access_token: str) -> UserInfo:
        """Fetch userinfo with the bearer token and extract username/groups."""
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }
        try:
            with self._client() as client:
                response = client.get(self.config.userinfo_endpoint, headers=headers)
        except httpx.TimeoutException:
            logger.error("UserInfo request timed out after %ss", HTTP_TIMEOUT)
            raise UserInfoError("UserInfo endpoint timed out.", HttpFailure.TIMEOUT)
        except httpx.HTTPError as e:
            logger.error("UserInfo transport error: %s", type(e).__name__)
            raise UserInfoError("UserInfo endpoint unreachable.", HttpFailure.TRANSPORT)

        if response.status_code != 200:
            logger.error("UserInfo endpoint returned HTTP %d", response.status_code)
            raise UserInfoError(
                f"Failed to retrieve user info. HTTP {response.status_code}",
                HttpFailure.HTTP_STATUS,
                status_code=response.status_code,
            )

        try:
            claims = response.json()
        except ValueError:
            claims = None
        if not isinstance(claims, dict):
            logger.error("UserInfo response is not a JSON object")
            raise UserInfoError("Malformed user info response.", HttpFailure.INVALID_RESPONSE)

        logger.debug("UserInfo response received with %d fields", len(claims))

        username_claim = self.config.username_claim
        username = _claim_text(claims, username_claim)
        if not username:
            logger.error("UserInfo response lacks username claim '%s'", username_claim)
            raise UserInfoError(
                f"Username claim '{username_claim}' not found in user info response.",
                HttpFailure.MISSING_CLAIM,
                claim=username_claim,
            )

        groups = _claim_text_set(claims, self.config.groups_claim)
        return UserInfo(username=username, groups=groups)


# ---------------------------------------------------------------------------
# Flow
# ---------------------------------------------------------------------------

class OAuth2LoginFlow:
    """The two entry points a host needs: redirect out, callback in."""

    def __init__(self, config: OAuth2Config, states: StateTokenManager,
                 tokens: TokenValidationService | None = None):
        self.config = config
        self.states = states
        self.tokens = tokens or TokenValidationService(config)

    def begin(self) -> AuthorizationRedirect:
        token = self.states.issue()
        _audit("state_issued", state=token.value[:8], expires_at=token.expires_at)
        return AuthorizationRedirect(
            state=token.value,
            url=build_authorization_url(self.config, token.value),
        )

    def authenticate(self, params: Mapping[str, str]) -> IdentityAssertion:
        """Run the callback pipeline; raises :class:`OAuth2Error` on failure."""
        code = validate_callback(params, self.states)
        access_token = self.tokens.exchange_code_for_token(code)
        user_info = self.tokens.get_user_info(access_token)
        return assemble_identity(user_info)

    def complete(self, params: Mapping[str, str]) -> LoginResult:
        """Like :meth:`authenticate` but folds failures into a result."""
        try:
            identity = self.authenticate(params)
        except OAuth2Error as e:
            reason = e.reason.value if e.reason is not None else type(e).__name__
            _audit("login_failed", error=type(e).__name__, reason=reason)
            return LoginResult(LoginOutcome.FAILED, error=e)

        _audit("login_succeeded", username=identity.username, groups=len(identity.groups))
        return LoginResult(LoginOutcome.AUTHENTICATED, identity=identity)
