"""Rate limiting for mutating actions.

Fixed-window counters per (policy, identifier) with an escalating block
once a window's threshold is reached.
"""

from actiongate.app.security.rate_limit.engine import (
    LockTimeoutError,
    RateLimitEngine,
)
from actiongate.app.security.rate_limit.models import (
    RateLimitCounter,
    RateLimitDecision,
    RateLimitInfo,
    RateLimitOutcome,
)

__all__ = [
    # Models
    "RateLimitCounter",
    "RateLimitDecision",
    "RateLimitInfo",
    "RateLimitOutcome",
    # Engine
    "RateLimitEngine",
    "LockTimeoutError",
]
