"""In-memory fixed-window rate limiter with escalating blocks.

State per ``<key_prefix>:<identifier>`` key::

    Absent  --check-->  Active(count=1)
    Active  --check, count < max-->  Active(count+1)
    Active  --check, count >= max-->  Blocked(blocked_until = now + block)
    Blocked --check-->  rejected, counter untouched, block not extended
    Blocked/Active, lapsed  --check-->  fresh window (same as Absent)

There is no background sweeper: expired entries are dropped on every
``check()``, and ``cleanup_expired_entries()`` is exposed for callers that
want proactive compaction.
"""

import threading
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from actiongate.app.core.config import settings
from actiongate.app.core.logging import get_log_context, get_logger
from actiongate.app.security.policies import RateLimitPolicy, resolve_policy
from actiongate.app.security.rate_limit.models import (
    RateLimitCounter,
    RateLimitDecision,
    RateLimitInfo,
    RateLimitOutcome,
)

logger = get_logger(__name__)

PolicyRef = Union[RateLimitPolicy, str]


class LockTimeoutError(RuntimeError):
    """Raised when the store lock can't be acquired in time."""


@dataclass
class _Entry:
    policy: RateLimitPolicy
    identifier: str
    counter: RateLimitCounter


class RateLimitEngine:
    """Per-(policy, identifier) counters guarded by one store lock.

    Suitable for single-instance deployments: state is per process, so a
    caller spread over N instances effectively gets N times the limit.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        lock: Optional[Any] = None,
        lock_timeout: Optional[float] = None,
    ):
        """Initialize the engine.

        Args:
            clock: Returns the current time in seconds
            lock: Lock guarding the store (defaults to a new threading.Lock)
            lock_timeout: Seconds to wait for the lock before failing closed
        """
        self._clock = clock
        self._lock = lock if lock is not None else threading.Lock()
        self._lock_timeout = (
            settings.lock_timeout_seconds if lock_timeout is None else lock_timeout
        )
        self._store: Dict[str, _Entry] = {}

        self._outcomes: Counter = Counter()
        self._removed_total = 0
        self._last_cleanup: Optional[float] = None

        # Faults happen when the store lock may be unavailable
        self._error_lock = threading.Lock()
        self._errors = 0

    def _acquire(self) -> None:
        if not self._lock.acquire(timeout=self._lock_timeout):
            raise LockTimeoutError(
                f"Rate limit store lock not acquired within {self._lock_timeout}s"
            )

    def _sweep(self, now: float) -> int:
        """Drop counters whose window and block have both lapsed. Lock held."""
        expired = [
            key for key, entry in self._store.items()
            if entry.counter.is_expired(now)
        ]
        for key in expired:
            del self._store[key]
        self._removed_total += len(expired)
        self._last_cleanup = now
        return len(expired)

    def _evaluate(
        self, key: str, identifier: str, policy: RateLimitPolicy, now: float
    ) -> RateLimitDecision:
        """Apply one check to the counter for ``key``. Lock held."""
        entry = self._store.get(key)
        counter = entry.counter if entry is not None else None

        if counter is not None and counter.is_blocked(now):
            return RateLimitDecision(
                outcome=RateLimitOutcome.BLOCKED,
                policy=policy.name,
                identifier=identifier,
                limit=policy.max_requests,
                remaining=0,
                reset_at=counter.window_reset_at,
                retry_after=counter.blocked_until - now,
                blocked_until=counter.blocked_until,
            )

        if (
            counter is None
            or now >= counter.window_reset_at
            or counter.blocked_until is not None
        ):
            # Absent, expired window, or a lapsed block: start a fresh window
            counter = RateLimitCounter(
                count=1, window_reset_at=now + policy.window_seconds
            )
            self._store[key] = _Entry(policy, identifier, counter)
            return RateLimitDecision(
                outcome=RateLimitOutcome.ALLOWED,
                policy=policy.name,
                identifier=identifier,
                limit=policy.max_requests,
                remaining=policy.max_requests - 1,
                reset_at=counter.window_reset_at,
            )

        if counter.count < policy.max_requests:
            counter.count += 1
            return RateLimitDecision(
                outcome=RateLimitOutcome.ALLOWED,
                policy=policy.name,
                identifier=identifier,
                limit=policy.max_requests,
                remaining=policy.max_requests - counter.count,
                reset_at=counter.window_reset_at,
            )

        if policy.block_seconds > 0:
            counter.blocked_until = now + policy.block_seconds
            return RateLimitDecision(
                outcome=RateLimitOutcome.BLOCKED,
                policy=policy.name,
                identifier=identifier,
                limit=policy.max_requests,
                remaining=0,
                reset_at=counter.window_reset_at,
                retry_after=policy.block_seconds,
                blocked_until=counter.blocked_until,
            )

        return RateLimitDecision(
            outcome=RateLimitOutcome.RATE_LIMITED,
            policy=policy.name,
            identifier=identifier,
            limit=policy.max_requests,
            remaining=0,
            reset_at=counter.window_reset_at,
            retry_after=counter.window_reset_at - now,
        )

    def _fail_closed(self, identifier: str, policy: RateLimitPolicy) -> RateLimitDecision:
        with self._error_lock:
            self._errors += 1
        try:
            now = self._clock()
        except Exception:
            now = time.time()
        penalty = policy.block_seconds or policy.window_seconds
        return RateLimitDecision(
            outcome=RateLimitOutcome.BLOCKED,
            policy=policy.name,
            identifier=identifier,
            limit=policy.max_requests,
            remaining=0,
            reset_at=now + policy.window_seconds,
            retry_after=penalty,
            blocked_until=now + penalty,
        )

    def check(self, identifier: str, policy: PolicyRef) -> RateLimitDecision:
        """Count one request for ``identifier`` against ``policy``.

        Args:
            identifier: Resolved caller identifier
            policy: RateLimitPolicy, policy name or endpoint class

        Returns:
            RateLimitDecision; any internal fault yields BLOCKED

        Raises:
            UnknownPolicyError: If ``policy`` names no registered policy
        """
        policy = resolve_policy(policy)
        key = policy.key_for(identifier)

        try:
            self._acquire()
            try:
                now = self._clock()
                self._sweep(now)
                decision = self._evaluate(key, identifier, policy, now)
                self._outcomes[decision.outcome.value] += 1
                newly_blocked = (
                    decision.outcome is RateLimitOutcome.BLOCKED
                    and decision.blocked_until == now + policy.block_seconds
                )
            finally:
                self._lock.release()
        except Exception:
            logger.exception(
                "Rate limit check failed; failing closed",
                extra=get_log_context(client_id=identifier, policy=policy.name),
            )
            return self._fail_closed(identifier, policy)

        if newly_blocked:
            logger.warning(
                f"Rate limit reached; blocking for {int(policy.block_seconds)}s",
                extra=get_log_context(client_id=identifier, policy=policy.name),
            )
        elif not decision.allowed:
            logger.info(
                f"Request rejected: {decision.outcome.value}",
                extra=get_log_context(client_id=identifier, policy=policy.name),
            )
        return decision

    def cleanup_expired_entries(self) -> int:
        """Remove expired, unblocked counters.

        Returns:
            Number of counters removed
        """
        self._acquire()
        try:
            removed = self._sweep(self._clock())
        finally:
            self._lock.release()
        if removed:
            logger.debug(f"Removed {removed} expired rate limit entries")
        return removed

    def reset(self, identifier: str, policy: Optional[PolicyRef] = None) -> int:
        """Forget counters (and lift blocks) for an identifier.

        Args:
            identifier: Caller identifier
            policy: Only reset this policy's counter (default: all policies)

        Returns:
            Number of counters removed
        """
        target = resolve_policy(policy) if policy is not None else None
        self._acquire()
        try:
            keys = [
                key for key, entry in self._store.items()
                if entry.identifier == identifier
                and (target is None or entry.policy.name == target.name)
            ]
            for key in keys:
                del self._store[key]
        finally:
            self._lock.release()
        if keys:
            logger.info(
                f"Reset {len(keys)} rate limit counter(s)",
                extra=get_log_context(client_id=identifier),
            )
        return len(keys)

    def get_rate_limit_info(
        self, identifier: str, policy: Optional[PolicyRef] = None
    ) -> List[RateLimitInfo]:
        """Read-only view of the live counters for an identifier.

        Expired counters are reported as absent but not removed.
        """
        target = resolve_policy(policy) if policy is not None else None
        self._acquire()
        try:
            now = self._clock()
            infos = []
            for key, entry in self._store.items():
                if entry.identifier != identifier:
                    continue
                if target is not None and entry.policy.name != target.name:
                    continue
                counter = entry.counter
                if counter.is_expired(now):
                    continue
                blocked = counter.is_blocked(now)
                live_window = now < counter.window_reset_at and counter.blocked_until is None
                count = counter.count if live_window or blocked else 0
                infos.append(RateLimitInfo(
                    policy=entry.policy.name,
                    key=key,
                    count=count,
                    limit=entry.policy.max_requests,
                    remaining=0 if blocked else max(0, entry.policy.max_requests - count),
                    window_reset_at=counter.window_reset_at,
                    blocked_until=counter.blocked_until if blocked else None,
                    is_blocked=blocked,
                ))
        finally:
            self._lock.release()
        return infos

    def get_stats(self) -> Dict[str, Any]:
        """Read-only aggregate view for monitoring dashboards."""
        self._acquire()
        try:
            now = self._clock()
            per_policy: Counter = Counter()
            blocked = 0
            for entry in self._store.values():
                if entry.counter.is_expired(now):
                    continue
                per_policy[entry.policy.name] += 1
                if entry.counter.is_blocked(now):
                    blocked += 1
            stats = {
                "active_keys": sum(per_policy.values()),
                "stored_keys": len(self._store),
                "blocked_keys": blocked,
                "keys_by_policy": dict(per_policy),
                "decisions": {
                    outcome.value: self._outcomes.get(outcome.value, 0)
                    for outcome in RateLimitOutcome
                },
                "removed_total": self._removed_total,
                "last_cleanup": self._last_cleanup,
            }
        finally:
            self._lock.release()
        with self._error_lock:
            stats["errors"] = self._errors
        return stats

    def __len__(self) -> int:
        self._acquire()
        try:
            return len(self._store)
        finally:
            self._lock.release()
