"""Named rate limit policies and the endpoint-class wiring.

Riskier endpoints (credential guessing, public-form spam) get a longer
punitive block relative to their window; authenticated API traffic gets a
shorter one since false positives there cost legitimate users more.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from actiongate.app.exceptions import UnknownPolicyError

MINUTE = 60


@dataclass(frozen=True)
class RateLimitPolicy:
    """Immutable rate limit configuration.

    Attributes:
        name: Registry name of the policy
        window_seconds: Length of the fixed counting window
        max_requests: Requests admitted per window
        block_seconds: Punitive block once the window limit is reached
            (0 disables blocking; the caller is only rate limited)
        key_prefix: Namespace for counter keys
    """
    name: str
    window_seconds: float
    max_requests: int
    block_seconds: float
    key_prefix: str

    def __post_init__(self) -> None:
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if self.max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if self.block_seconds < 0:
            raise ValueError("block_seconds cannot be negative")
        if not self.key_prefix:
            raise ValueError("key_prefix is required")

    def key_for(self, identifier: str) -> str:
        return f"{self.key_prefix}:{identifier}"


AUTH = RateLimitPolicy(
    name="auth",
    window_seconds=15 * MINUTE,
    max_requests=5,
    block_seconds=30 * MINUTE,
    key_prefix="auth",
)

API = RateLimitPolicy(
    name="api",
    window_seconds=1 * MINUTE,
    max_requests=60,
    block_seconds=10 * MINUTE,
    key_prefix="api",
)

UPLOAD = RateLimitPolicy(
    name="upload",
    window_seconds=1 * MINUTE,
    max_requests=10,
    block_seconds=15 * MINUTE,
    key_prefix="upload",
)

PUBLIC = RateLimitPolicy(
    name="public",
    window_seconds=15 * MINUTE,
    max_requests=5,
    block_seconds=20 * MINUTE,
    key_prefix="public",
)

POLICIES: Mapping[str, RateLimitPolicy] = MappingProxyType({
    policy.name: policy for policy in (AUTH, API, UPLOAD, PUBLIC)
})

# Endpoint class -> policy name, fixed at route registration time
ENDPOINT_POLICIES: Mapping[str, str] = MappingProxyType({
    "login": "auth",
    "register": "auth",
    "password_reset": "auth",
    "admin_action": "api",
    "upload": "upload",
    "contact": "public",
    "appointment": "public",
})


def get_policy(name: str) -> RateLimitPolicy:
    """Look up a policy by registry name.

    Raises:
        UnknownPolicyError: If no policy has that name
    """
    try:
        return POLICIES[name]
    except KeyError:
        raise UnknownPolicyError(name) from None


def policy_for_endpoint(endpoint_class: str) -> RateLimitPolicy:
    """Resolve the policy wired to an endpoint class."""
    try:
        return get_policy(ENDPOINT_POLICIES[endpoint_class])
    except KeyError:
        raise UnknownPolicyError(endpoint_class) from None


def resolve_policy(policy: "RateLimitPolicy | str") -> RateLimitPolicy:
    """Accept a policy, a policy name or an endpoint class."""
    if isinstance(policy, RateLimitPolicy):
        return policy
    if policy in POLICIES:
        return POLICIES[policy]
    return policy_for_endpoint(policy)


def list_policies() -> list[RateLimitPolicy]:
    return list(POLICIES.values())
