"""Request-gating security core."""

from actiongate.app.security.csrf import (
    CsrfFailureReason,
    CsrfToken,
    CsrfTokenManager,
    CsrfValidationResult,
)
from actiongate.app.security.gate import SecurityGate, raise_for_decision
from actiongate.app.security.identifier import (
    ClientIdentifierResolver,
    IdentifierTier,
    ResolvedIdentifier,
)
from actiongate.app.security.policies import (
    ENDPOINT_POLICIES,
    POLICIES,
    RateLimitPolicy,
    get_policy,
    list_policies,
    policy_for_endpoint,
)
from actiongate.app.security.rate_limit import (
    RateLimitDecision,
    RateLimitEngine,
    RateLimitOutcome,
)

__all__ = [
    "ClientIdentifierResolver",
    "CsrfFailureReason",
    "CsrfToken",
    "CsrfTokenManager",
    "CsrfValidationResult",
    "ENDPOINT_POLICIES",
    "IdentifierTier",
    "POLICIES",
    "RateLimitDecision",
    "RateLimitEngine",
    "RateLimitOutcome",
    "RateLimitPolicy",
    "ResolvedIdentifier",
    "SecurityGate",
    "get_policy",
    "list_policies",
    "policy_for_endpoint",
    "raise_for_decision",
]
