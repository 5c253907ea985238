"""Rate limiting data models.

This module contains dataclasses for rate limit state and results.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class RateLimitOutcome(str, Enum):
    """Outcome of a rate limit check."""
    ALLOWED = "allowed"
    RATE_LIMITED = "rate_limited"
    BLOCKED = "blocked"


@dataclass
class RateLimitCounter:
    """Mutable per-(policy, identifier) state. Owned by the engine's store."""
    count: int
    window_reset_at: float
    blocked_until: Optional[float] = None

    def is_blocked(self, now: float) -> bool:
        return self.blocked_until is not None and now < self.blocked_until

    def is_expired(self, now: float) -> bool:
        """Window elapsed and any block lapsed; safe to garbage-collect."""
        if now < self.window_reset_at:
            return False
        return self.blocked_until is None or now >= self.blocked_until


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of a rate limit check."""
    outcome: RateLimitOutcome
    policy: str
    identifier: str
    limit: int
    remaining: int
    reset_at: float
    retry_after: float = 0.0
    blocked_until: Optional[float] = None

    @property
    def allowed(self) -> bool:
        return self.outcome is RateLimitOutcome.ALLOWED

    @property
    def retry_after_seconds(self) -> int:
        """Whole seconds suitable for a Retry-After header."""
        if self.allowed:
            return 0
        return max(1, math.ceil(self.retry_after))


@dataclass(frozen=True)
class RateLimitInfo:
    """Read-only snapshot of one counter for monitoring."""
    policy: str
    key: str
    count: int
    limit: int
    remaining: int
    window_reset_at: float
    blocked_until: Optional[float]
    is_blocked: bool

    def to_dict(self) -> dict:
        return {
            "policy": self.policy,
            "key": self.key,
            "count": self.count,
            "limit": self.limit,
            "remaining": self.remaining,
            "window_reset_at": self.window_reset_at,
            "blocked_until": self.blocked_until,
            "is_blocked": self.is_blocked,
        }
