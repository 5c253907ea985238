"""Tests for the composed security gate."""

import pytest

from actiongate.app.exceptions import (
    CSRF_FAILURE_MESSAGE,
    BlockedError,
    CsrfInvalidError,
    RateLimitedError,
)
from actiongate.app.security.gate import raise_for_decision
from actiongate.app.security.policies import RateLimitPolicy
from actiongate.app.security.rate_limit import RateLimitOutcome

HEADERS = {"x-real-ip": "203.0.113.7", "user-agent": "Mozilla/5.0"}


class TestEnforceRateLimit:
    """Test rate limit enforcement raises typed errors."""

    def test_allowed_returns_decision(self, gate):
        decision = gate.enforce_rate_limit("ip:203.0.113.7", "contact")
        assert decision.outcome is RateLimitOutcome.ALLOWED

    def test_blocked_raises(self, gate):
        for _ in range(5):
            gate.enforce_rate_limit("ip:203.0.113.7", "contact")

        with pytest.raises(BlockedError) as exc_info:
            gate.enforce_rate_limit("ip:203.0.113.7", "contact")

        exc = exc_info.value
        assert exc.status_code == 429
        assert exc.policy == "public"
        assert exc.retry_after_seconds == 20 * 60
        assert "20 minutes" in exc.message
        assert exc.to_response()["error"] == "blocked"

    def test_rate_limited_raises(self, gate, clock):
        policy = RateLimitPolicy("soft", 60, 1, 0, "soft")
        gate.enforce_rate_limit("ip:203.0.113.7", policy)

        with pytest.raises(RateLimitedError) as exc_info:
            gate.enforce_rate_limit("ip:203.0.113.7", policy)

        exc = exc_info.value
        assert exc.message == "Rate limit exceeded. Try again in 60 seconds."
        assert exc.to_response()["reset_at"] == int(clock.now + 60)

    def test_check_rate_limit_never_raises(self, gate):
        for _ in range(7):
            decision = gate.check_rate_limit("ip:203.0.113.7", "login")
        assert decision.outcome is RateLimitOutcome.BLOCKED

    def test_raise_for_allowed_decision_is_noop(self, gate):
        raise_for_decision(gate.check_rate_limit("ip:203.0.113.7", "api"))


class TestEnforceCsrf:
    """Test CSRF enforcement."""

    def test_valid_token(self, gate):
        token = gate.csrf.issue("sess-A").value
        gate.enforce_csrf(token, "sess-A")

    def test_reason_kept_server_side(self, gate):
        with pytest.raises(CsrfInvalidError) as exc_info:
            gate.enforce_csrf(None, "sess-A")

        exc = exc_info.value
        assert exc.status_code == 403
        assert exc.reason == "missing_token"
        assert exc.message == CSRF_FAILURE_MESSAGE
        assert "missing" not in str(exc.to_response())

    def test_same_message_for_every_reason(self, gate):
        token = gate.csrf.issue("sess-A").value
        messages = set()
        for submitted, session_id in [(None, "sess-A"), (token, "sess-B"), (token, None)]:
            with pytest.raises(CsrfInvalidError) as exc_info:
                gate.enforce_csrf(submitted, session_id)
            messages.add(exc_info.value.message)
        assert messages == {CSRF_FAILURE_MESSAGE}


class TestGuard:
    """Test the full gate ordering."""

    def test_admits_valid_request(self, gate):
        token = gate.csrf.issue("sess-A").value
        decision = gate.guard(HEADERS, {}, "contact", token, "sess-A")
        assert decision.allowed is True
        assert decision.identifier == "ip:203.0.113.7"

    def test_rate_limit_checked_before_csrf(self, gate):
        """A blocked caller is rejected even with a valid token."""
        token = gate.csrf.issue("sess-A").value
        for _ in range(5):
            gate.guard(HEADERS, {}, "contact", token, "sess-A")

        with pytest.raises(BlockedError):
            gate.guard(HEADERS, {}, "contact", token, "sess-A")

    def test_failed_csrf_still_counts(self, gate):
        """Token guessing is throttled by the rate limiter."""
        for _ in range(5):
            with pytest.raises(CsrfInvalidError):
                gate.guard(HEADERS, {}, "contact", "guess", "sess-A")

        with pytest.raises(BlockedError):
            gate.guard(HEADERS, {}, "contact", "guess", "sess-A")

    def test_csrf_can_be_skipped(self, gate):
        decision = gate.guard(HEADERS, {}, "api", None, None, check_csrf=False)
        assert decision.allowed is True

    def test_cleanup_expired(self, gate, clock):
        gate.check_rate_limit("ip:203.0.113.7", "api")
        gate.csrf.issue("sess-A")
        clock.advance(24 * 60 * 60)

        assert gate.cleanup_expired() == {"rate_limit_entries": 1, "csrf_tokens": 1}
