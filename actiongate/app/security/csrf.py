"""Session-bound CSRF tokens.

A token is reusable for every submission within its validity window, so
re-rendered forms, multiple tabs and the back button keep working. Tokens
are rotated explicitly (after login) and revoked on logout.

Once a token has used up half its lifetime, ``issue`` hands out a fresh one
so a freshly rendered form never carries a nearly expired token. The
superseded token stays acceptable until its own expiry, so forms rendered
earlier still submit.

The store holds at most ``max_sessions`` sessions. When full, expired
entries are dropped first, then the oldest 20% are evicted.
"""

import hmac
import secrets
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from actiongate.app.core.config import settings
from actiongate.app.core.logging import get_logger

logger = get_logger(__name__)

TOKEN_BYTES = 32
RENEW_FRACTION = 0.5
EVICT_FRACTION = 0.2


class CsrfFailureReason(str, Enum):
    """Why a submission failed CSRF validation. Never shown to the client."""
    MISSING_TOKEN = "missing_token"
    SESSION_INVALID = "session_invalid"
    MISMATCH = "mismatch"
    EXPIRED = "expired"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class CsrfToken:
    """A token issued for one session."""
    value: str
    session_id: str
    issued_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def seconds_left(self, now: float) -> float:
        return max(0.0, self.expires_at - now)


@dataclass(frozen=True)
class CsrfValidationResult:
    """Outcome of validating a submitted token."""
    valid: bool
    reason: Optional[CsrfFailureReason] = None

    @classmethod
    def ok(cls) -> "CsrfValidationResult":
        return cls(valid=True)

    @classmethod
    def fail(cls, reason: CsrfFailureReason) -> "CsrfValidationResult":
        return cls(valid=False, reason=reason)

    def __bool__(self) -> bool:
        return self.valid


@dataclass
class _SessionTokens:
    current: CsrfToken
    previous: Optional[CsrfToken] = None


def _constant_time_equals(a: str, b: str) -> bool:
    # compare_digest on str rejects non-ASCII input; compare the bytes instead
    return hmac.compare_digest(
        a.encode("utf-8", "surrogatepass"), b.encode("utf-8", "surrogatepass")
    )


class CsrfTokenManager:
    """Issues and validates CSRF tokens, one live token per session."""

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        lock: Optional[Any] = None,
        lock_timeout: Optional[float] = None,
        session_validator: Optional[Callable[[str], bool]] = None,
        max_sessions: Optional[int] = None,
    ):
        """Initialize the token store.

        Args:
            ttl_seconds: Token validity window
            clock: Returns the current time in seconds
            lock: Lock guarding the store (defaults to a new threading.Lock)
            lock_timeout: Seconds to wait for the lock
            session_validator: Optional check that a session is still live
            max_sessions: Upper bound on sessions held in the store
        """
        self.ttl_seconds = (
            settings.csrf_token_ttl_seconds if ttl_seconds is None else ttl_seconds
        )
        self.max_sessions = (
            settings.csrf_max_sessions if max_sessions is None else max_sessions
        )
        if self.ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if self.max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")

        self._clock = clock
        self._lock = lock if lock is not None else threading.Lock()
        self._lock_timeout = (
            settings.lock_timeout_seconds if lock_timeout is None else lock_timeout
        )
        self._session_validator = session_validator
        # Insertion order is the order sessions were (re)issued a token
        self._sessions: "OrderedDict[str, _SessionTokens]" = OrderedDict()
        self._evicted_total = 0

    def _acquire(self) -> None:
        if not self._lock.acquire(timeout=self._lock_timeout):
            raise RuntimeError(
                f"CSRF store lock not acquired within {self._lock_timeout}s"
            )

    def _store_token(self, session_id: str, now: float, previous: Optional[CsrfToken]) -> CsrfToken:
        """Create a token for ``session_id``. Lock held."""
        if session_id not in self._sessions and len(self._sessions) >= self.max_sessions:
            self._make_room(now)
        token = CsrfToken(
            value=secrets.token_urlsafe(TOKEN_BYTES),
            session_id=session_id,
            issued_at=now,
            expires_at=now + self.ttl_seconds,
        )
        self._sessions[session_id] = _SessionTokens(current=token, previous=previous)
        self._sessions.move_to_end(session_id)
        return token

    def _make_room(self, now: float) -> None:
        """Sweep, then evict the oldest sessions if still full. Lock held."""
        self._sweep(now)
        if len(self._sessions) < self.max_sessions:
            return
        remove_count = max(1, int(self.max_sessions * EVICT_FRACTION))
        for _ in range(remove_count):
            self._sessions.popitem(last=False)
        self._evicted_total += remove_count
        logger.warning(
            f"CSRF token store full ({self.max_sessions} sessions); "
            f"evicted {remove_count} oldest"
        )

    def _sweep(self, now: float) -> int:
        expired = [
            sid for sid, tokens in self._sessions.items()
            if tokens.current.is_expired(now)
        ]
        for sid in expired:
            del self._sessions[sid]
        return len(expired)

    def _session_is_valid(self, session_id: Optional[str]) -> bool:
        if not session_id:
            return False
        if self._session_validator is None:
            return True
        return bool(self._session_validator(session_id))

    def issue(self, session_id: str) -> CsrfToken:
        """Return the session's live token, renewing it past half-life.

        Raises:
            ValueError: If session_id is empty
        """
        if not session_id:
            raise ValueError("session_id is required to issue a CSRF token")
        self._acquire()
        try:
            now = self._clock()
            self._sweep(now)
            tokens = self._sessions.get(session_id)
            if tokens is None:
                return self._store_token(session_id, now, previous=None)
            current = tokens.current
            if current.seconds_left(now) < self.ttl_seconds * RENEW_FRACTION:
                return self._store_token(session_id, now, previous=current)
            return current
        finally:
            self._lock.release()

    def rotate(self, session_id: str) -> CsrfToken:
        """Replace the session's token unconditionally (e.g. after login).

        Earlier tokens stop validating immediately.
        """
        if not session_id:
            raise ValueError("session_id is required to issue a CSRF token")
        self._acquire()
        try:
            token = self._store_token(session_id, self._clock(), previous=None)
        finally:
            self._lock.release()
        logger.debug("Rotated CSRF token")
        return token

    def revoke(self, session_id: str) -> bool:
        """Drop the session's tokens (e.g. on logout)."""
        self._acquire()
        try:
            return self._sessions.pop(session_id, None) is not None
        finally:
            self._lock.release()

    def seconds_left(self, token: CsrfToken) -> int:
        """Whole seconds until ``token`` expires; used for cookie max-age."""
        return int(token.seconds_left(self._clock()))

    def validate(
        self, submitted: Optional[str], session_id: Optional[str]
    ) -> CsrfValidationResult:
        """Validate a submitted token against the session's tokens.

        Never raises; an internal fault is reported as an invalid result.
        """
        if not submitted:
            return CsrfValidationResult.fail(CsrfFailureReason.MISSING_TOKEN)

        try:
            if not self._session_is_valid(session_id):
                return CsrfValidationResult.fail(CsrfFailureReason.SESSION_INVALID)

            self._acquire()
            try:
                now = self._clock()
                tokens = self._sessions.get(session_id)
                current = tokens.current if tokens is not None else None
                previous = tokens.previous if tokens is not None else None
            finally:
                self._lock.release()

            # Compare against placeholders when nothing was issued so every
            # path takes the same time.
            matched = None
            for candidate in (current, previous):
                expected = (
                    candidate.value if candidate is not None
                    else secrets.token_urlsafe(TOKEN_BYTES)
                )
                if _constant_time_equals(submitted, expected) and candidate is not None:
                    matched = candidate
        except Exception:
            logger.exception("CSRF validation failed unexpectedly; rejecting")
            return CsrfValidationResult.fail(CsrfFailureReason.INTERNAL_ERROR)

        if matched is None:
            return CsrfValidationResult.fail(CsrfFailureReason.MISMATCH)
        if matched.is_expired(now):
            return CsrfValidationResult.fail(CsrfFailureReason.EXPIRED)
        return CsrfValidationResult.ok()

    def cleanup_expired(self) -> int:
        """Remove sessions whose current token has expired.

        Returns:
            Number of sessions removed
        """
        self._acquire()
        try:
            return self._sweep(self._clock())
        finally:
            self._lock.release()

    def get_stats(self) -> Dict[str, int]:
        self._acquire()
        try:
            now = self._clock()
            expired = sum(
                1 for tokens in self._sessions.values() if tokens.current.is_expired(now)
            )
            return {
                "live_tokens": len(self._sessions) - expired,
                "expired_tokens": expired,
                "max_sessions": self.max_sessions,
                "evicted_total": self._evicted_total,
            }
        finally:
            self._lock.release()

    def __len__(self) -> int:
        self._acquire()
        try:
            return len(self._sessions)
        finally:
            self._lock.release()
