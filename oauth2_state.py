"""
oauth2_state.py — CSRF state tokens for the authorization redirect.

Each login attempt gets an opaque random token that travels to the IdP in
the ``state`` parameter and must come back on the callback. A token is good
for one successful validation inside its validity window; the registry is
guarded by a single lock so concurrent callbacks carrying the same value
cannot both succeed.
"""

import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable

from oauth2_errors import CsrfError, CsrfReason

logger = logging.getLogger("oauth2-login")

STATE_TOKEN_BYTES = 32  # 256 bits
DEFAULT_MAX_VALIDITY = 10 * 60  # 10 minutes
PURGE_INTERVAL = 60  # seconds


@dataclass
class StateToken:
    value: str
    issued_at: float
    expires_at: float
    consumed: bool = False

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class StateTokenManager:
    """In-memory registry of issued state tokens.

    Created when the login server starts and closed when it stops.
    Expired entries are dropped lazily from ``issue()`` and by ``purge()``.
    """

    def __init__(self, max_validity: float = DEFAULT_MAX_VALIDITY,
                 clock: Callable[[], float] = time.time):
        if max_validity <= 0:
            raise ValueError("max_validity must be positive")
        self.max_validity = max_validity
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens: dict[str, StateToken] = {}
        self._last_purge = clock()
        self._closed = False

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)

    def issue(self) -> StateToken:
        now = self._clock()
        token = StateToken(
            value=secrets.token_urlsafe(STATE_TOKEN_BYTES),
            issued_at=now,
            expires_at=now + self.max_validity,
        )
        with self._lock:
            if self._closed:
                raise RuntimeError("State token manager is closed")
            self._tokens[token.value] = token
            if now - self._last_purge > PURGE_INTERVAL:
                self._purge_locked(now)
        return token

    def validate(self, value: str) -> None:
        """Consume ``value`` or raise :class:`CsrfError`."""
        now = self._clock()
        with self._lock:
            token = self._tokens.get(value)
            if token is None:
                reason = CsrfReason.NOT_FOUND
            elif token.is_expired(now):
                reason = CsrfReason.EXPIRED
            elif token.consumed:
                reason = CsrfReason.ALREADY_CONSUMED
            else:
                token.consumed = True
                return
        logger.info("state_rejected: %s state=%s...", reason.value, value[:8])
        raise CsrfError(reason)

    def purge(self) -> int:
        """Drop expired entries, consumed or not. Returns how many went."""
        now = self._clock()
        with self._lock:
            return self._purge_locked(now)

    def close(self) -> None:
        with self._lock:
            self._tokens.clear()
            self._closed = True

    def _purge_locked(self, now: float) -> int:
        expired = [v for v, t in self._tokens.items() if t.is_expired(now)]
        for v in expired:
            del self._tokens[v]
        self._last_purge = now
        if expired:
            logger.debug("purged %d expired state tokens, %d remain",
                         len(expired), len(self._tokens))
        return len(expired)
