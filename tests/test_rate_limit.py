"""Tests for the fixed-window rate limit engine."""

import threading
from unittest.mock import Mock

import pytest

from actiongate.app.exceptions import UnknownPolicyError
from actiongate.app.security.policies import RateLimitPolicy
from actiongate.app.security.rate_limit import (
    LockTimeoutError,
    RateLimitEngine,
    RateLimitOutcome,
)

IDENT = "ip:203.0.113.7"


class TestWindowing:
    """Test counting within a window."""

    def test_first_request_allowed(self, engine, clock):
        decision = engine.check(IDENT, "api")
        assert decision.allowed is True
        assert decision.limit == 60
        assert decision.remaining == 59
        assert decision.reset_at == clock.now + 60

    def test_remaining_counts_down(self, engine):
        remaining = [engine.check(IDENT, "auth").remaining for _ in range(5)]
        assert remaining == [4, 3, 2, 1, 0]

    def test_window_reset_keeps_first_request_time(self, engine, clock):
        first = engine.check(IDENT, "auth")
        clock.advance(120)
        second = engine.check(IDENT, "auth")
        assert second.reset_at == first.reset_at

    def test_window_expiry_starts_fresh(self, engine, clock):
        for _ in range(3):
            engine.check(IDENT, "auth")
        clock.advance(15 * 60)
        decision = engine.check(IDENT, "auth")
        assert decision.allowed is True
        assert decision.remaining == 4
        assert decision.reset_at == clock.now + 15 * 60

    def test_identifiers_are_independent(self, engine):
        for _ in range(5):
            engine.check(IDENT, "auth")
        assert engine.check(IDENT, "auth").allowed is False
        assert engine.check("ip:203.0.113.8", "auth").allowed is True

    def test_policies_are_independent(self, engine):
        for _ in range(5):
            engine.check(IDENT, "auth")
        assert engine.check(IDENT, "auth").allowed is False
        assert engine.check(IDENT, "public").allowed is True

    def test_endpoint_class_accepted(self, engine):
        decision = engine.check(IDENT, "contact")
        assert decision.policy == "public"

    def test_unknown_policy_raises(self, engine):
        with pytest.raises(UnknownPolicyError):
            engine.check(IDENT, "nope")


class TestBlocking:
    """Test escalation to a punitive block."""

    def test_public_form_scenario(self, engine, clock):
        """5 allowed, block at the 6th, block not extended, fresh after lapse."""
        start = clock.now
        for _ in range(5):
            assert engine.check(IDENT, "public").outcome is RateLimitOutcome.ALLOWED

        sixth = engine.check(IDENT, "public")
        assert sixth.outcome is RateLimitOutcome.BLOCKED
        assert sixth.blocked_until == start + 20 * 60
        assert sixth.retry_after == 20 * 60

        clock.advance(60)
        seventh = engine.check(IDENT, "public")
        assert seventh.outcome is RateLimitOutcome.BLOCKED
        assert seventh.blocked_until == sixth.blocked_until
        assert seventh.retry_after == 19 * 60

        clock.advance(20 * 60)
        later = engine.check(IDENT, "public")
        assert later.outcome is RateLimitOutcome.ALLOWED
        assert later.remaining == 4
        assert later.reset_at == clock.now + 15 * 60

    def test_blocked_requests_not_counted(self, engine, clock):
        for _ in range(6):
            engine.check(IDENT, "auth")
        for _ in range(10):
            engine.check(IDENT, "auth")

        [info] = engine.get_rate_limit_info(IDENT, "auth")
        assert info.count == 5
        assert info.is_blocked is True
        assert info.remaining == 0

    def test_block_outlives_window(self, engine, clock):
        """A block longer than the window is still enforced after the window ends."""
        for _ in range(6):
            engine.check(IDENT, "auth")
        clock.advance(16 * 60)
        assert engine.check(IDENT, "auth").outcome is RateLimitOutcome.BLOCKED
        clock.advance(14 * 60)
        assert engine.check(IDENT, "auth").allowed is True

    def test_block_shorter_than_window(self, clock):
        policy = RateLimitPolicy("short", 60, 2, 10, "short")
        engine = RateLimitEngine(clock=clock)
        for _ in range(3):
            engine.check(IDENT, policy)

        clock.advance(10)
        decision = engine.check(IDENT, policy)
        assert decision.allowed is True
        assert decision.remaining == 1

    def test_no_block_yields_rate_limited(self, clock):
        policy = RateLimitPolicy("soft", 60, 2, 0, "soft")
        engine = RateLimitEngine(clock=clock)
        engine.check(IDENT, policy)
        clock.advance(15)
        engine.check(IDENT, policy)

        decision = engine.check(IDENT, policy)
        assert decision.outcome is RateLimitOutcome.RATE_LIMITED
        assert decision.blocked_until is None
        assert decision.retry_after == 45
        assert decision.retry_after_seconds == 45

        clock.advance(45)
        assert engine.check(IDENT, policy).allowed is True

    def test_retry_after_seconds_rounds_up(self, engine, clock):
        for _ in range(6):
            engine.check(IDENT, "public")
        clock.advance(0.5)
        decision = engine.check(IDENT, "public")
        assert decision.retry_after == 20 * 60 - 0.5
        assert decision.retry_after_seconds == 20 * 60


class TestCleanup:
    """Test expiry and compaction."""

    def test_cleanup_removes_expired(self, engine, clock):
        engine.check("ip:203.0.113.1", "api")
        engine.check("ip:203.0.113.2", "api")
        clock.advance(61)

        assert engine.cleanup_expired_entries() == 2
        assert len(engine) == 0

    def test_cleanup_keeps_blocked(self, engine, clock):
        for _ in range(6):
            engine.check(IDENT, "auth")
        clock.advance(16 * 60)

        assert engine.cleanup_expired_entries() == 0
        assert len(engine) == 1

    def test_check_sweeps_opportunistically(self, engine, clock):
        for i in range(5):
            engine.check(f"ip:203.0.113.{i}", "api")
        clock.advance(61)

        engine.check(IDENT, "api")
        assert len(engine) == 1

    def test_reset_lifts_block(self, engine):
        for _ in range(6):
            engine.check(IDENT, "auth")
        engine.check(IDENT, "api")

        assert engine.reset(IDENT, "auth") == 1
        assert engine.check(IDENT, "auth").allowed is True
        assert engine.reset(IDENT) == 2
        assert engine.reset(IDENT) == 0


class TestObservability:
    """Test read-only views."""

    def test_info_is_read_only(self, engine, clock):
        engine.check(IDENT, "api")
        clock.advance(61)

        assert engine.get_rate_limit_info(IDENT) == []
        assert len(engine) == 1

    def test_info_reports_counters(self, engine):
        engine.check(IDENT, "api")
        engine.check(IDENT, "api")
        engine.check(IDENT, "upload")

        infos = {info.policy: info for info in engine.get_rate_limit_info(IDENT)}
        assert infos["api"].count == 2
        assert infos["api"].remaining == 58
        assert infos["api"].key == "api:" + IDENT
        assert infos["upload"].count == 1
        assert infos["api"].to_dict()["is_blocked"] is False

    def test_info_filtered_by_policy(self, engine):
        engine.check(IDENT, "api")
        engine.check(IDENT, "upload")
        infos = engine.get_rate_limit_info(IDENT, "upload")
        assert [info.policy for info in infos] == ["upload"]

    def test_stats(self, engine, clock):
        for _ in range(6):
            engine.check(IDENT, "auth")
        engine.check("ip:203.0.113.8", "api")

        stats = engine.get_stats()
        assert stats["active_keys"] == 2
        assert stats["blocked_keys"] == 1
        assert stats["keys_by_policy"] == {"auth": 1, "api": 1}
        assert stats["decisions"] == {"allowed": 6, "rate_limited": 0, "blocked": 1}
        assert stats["errors"] == 0
        assert stats["last_cleanup"] == clock.now

    def test_stats_do_not_mutate(self, engine, clock):
        engine.check(IDENT, "api")
        clock.advance(61)
        stats = engine.get_stats()
        assert stats["active_keys"] == 0
        assert stats["stored_keys"] == 1
        assert len(engine) == 1


class TestFailClosed:
    """Test internal faults deny the request."""

    def test_lock_timeout_blocks(self, clock):
        lock = Mock()
        lock.acquire.return_value = False
        engine = RateLimitEngine(clock=clock, lock=lock, lock_timeout=0.01)

        decision = engine.check(IDENT, "public")
        assert decision.outcome is RateLimitOutcome.BLOCKED
        assert decision.allowed is False
        assert decision.blocked_until == clock.now + 20 * 60
        lock.release.assert_not_called()

    def test_clock_failure_blocks(self):
        def broken_clock():
            raise RuntimeError("clock unavailable")

        engine = RateLimitEngine(clock=broken_clock)
        decision = engine.check(IDENT, "api")
        assert decision.outcome is RateLimitOutcome.BLOCKED
        assert decision.retry_after == 10 * 60

    def test_fault_counted_in_stats(self, clock):
        calls = {"n": 0}

        def flaky_clock():
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("clock unavailable")
            return clock.now

        engine = RateLimitEngine(clock=flaky_clock)
        assert engine.check(IDENT, "api").allowed is False
        assert engine.get_stats()["errors"] == 1

    def test_fail_closed_without_block_uses_window(self, clock):
        policy = RateLimitPolicy("soft", 60, 2, 0, "soft")
        lock = Mock()
        lock.acquire.return_value = False
        engine = RateLimitEngine(clock=clock, lock=lock)

        decision = engine.check(IDENT, policy)
        assert decision.outcome is RateLimitOutcome.BLOCKED
        assert decision.retry_after == 60


class TestConcurrency:
    """Test the store lock serialises concurrent checks."""

    def test_exactly_max_admitted(self, clock):
        engine = RateLimitEngine(clock=clock)
        policy = RateLimitPolicy("burst", 60, 5, 60, "burst")
        barrier = threading.Barrier(20)
        decisions = []
        decisions_lock = threading.Lock()

        def worker():
            barrier.wait()
            decision = engine.check(IDENT, policy)
            with decisions_lock:
                decisions.append(decision)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        allowed = [d for d in decisions if d.allowed]
        blocked = [d for d in decisions if d.outcome is RateLimitOutcome.BLOCKED]
        assert len(allowed) == 5
        assert len(blocked) == 15
        assert len({d.blocked_until for d in blocked}) == 1
        assert sorted(d.remaining for d in allowed) == [0, 1, 2, 3, 4]

    def test_len_takes_lock(self, clock):
        lock = Mock()
        lock.acquire.return_value = False
        engine = RateLimitEngine(clock=clock, lock=lock)
        with pytest.raises(LockTimeoutError):
            len(engine)

    def test_explicit_zero_lock_timeout_kept(self, clock):
        engine = RateLimitEngine(clock=clock, lock_timeout=0)
        assert engine._lock_timeout == 0
        assert engine.check(IDENT, "api").allowed is True
