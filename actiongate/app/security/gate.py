"""The request gate every state-changing action passes through.

Order: resolve identifier -> rate limit (may reject) -> CSRF (may reject).
"""

from typing import Mapping, Optional

from actiongate.app.core.logging import get_log_context, get_logger
from actiongate.app.exceptions import BlockedError, CsrfInvalidError, RateLimitedError
from actiongate.app.security.csrf import CsrfTokenManager, CsrfValidationResult
from actiongate.app.security.identifier import ClientIdentifierResolver, ResolvedIdentifier
from actiongate.app.security.rate_limit import (
    RateLimitDecision,
    RateLimitEngine,
    RateLimitOutcome,
)
from actiongate.app.security.rate_limit.engine import PolicyRef


class SecurityGate:
    """Composes the resolver, the rate limit engine and the CSRF manager.

    One instance per process; tests construct isolated gates with a fake
    clock.
    """

    def __init__(
        self,
        resolver: Optional[ClientIdentifierResolver] = None,
        engine: Optional[RateLimitEngine] = None,
        csrf: Optional[CsrfTokenManager] = None,
    ):
        self.resolver = resolver or ClientIdentifierResolver()
        self.engine = engine or RateLimitEngine()
        self.csrf = csrf or CsrfTokenManager()
        self._logger = get_logger(__name__)

    def resolve(
        self,
        headers: Mapping[str, str],
        cookies: Optional[Mapping[str, str]] = None,
    ) -> ResolvedIdentifier:
        return self.resolver.resolve(headers, cookies)

    def check_rate_limit(self, identifier: str, policy: PolicyRef) -> RateLimitDecision:
        """Typed result; never raises for rejections."""
        return self.engine.check(identifier, policy)

    def enforce_rate_limit(self, identifier: str, policy: PolicyRef) -> RateLimitDecision:
        """Check the rate limit and raise on rejection.

        Raises:
            RateLimitedError: Window threshold exceeded
            BlockedError: Punitive block active
        """
        decision = self.check_rate_limit(identifier, policy)
        raise_for_decision(decision)
        return decision

    def validate_csrf(
        self, submitted: Optional[str], session_id: Optional[str]
    ) -> CsrfValidationResult:
        return self.csrf.validate(submitted, session_id)

    def enforce_csrf(self, submitted: Optional[str], session_id: Optional[str]) -> None:
        """Validate a CSRF token and raise on failure.

        The reason is logged here and never reaches the client.

        Raises:
            CsrfInvalidError: Token missing, mismatched, expired or session invalid
        """
        result = self.validate_csrf(submitted, session_id)
        if result.valid:
            return
        self._logger.info(
            f"CSRF validation failed: {result.reason.value}",
            extra=get_log_context(csrf_reason=result.reason.value),
        )
        raise CsrfInvalidError(reason=result.reason.value)

    def cleanup_expired(self) -> dict[str, int]:
        """Compact both stores; the maintenance hook for external schedulers."""
        return {
            "rate_limit_entries": self.engine.cleanup_expired_entries(),
            "csrf_tokens": self.csrf.cleanup_expired(),
        }

    def guard(
        self,
        headers: Mapping[str, str],
        cookies: Optional[Mapping[str, str]],
        policy: PolicyRef,
        submitted_token: Optional[str],
        session_id: Optional[str],
        check_csrf: bool = True,
    ) -> RateLimitDecision:
        """Run the full gate for one mutating request.

        Returns:
            The admitting rate limit decision

        Raises:
            RateLimitedError, BlockedError, CsrfInvalidError
        """
        identifier = self.resolve(headers, cookies)
        decision = self.enforce_rate_limit(identifier.value, policy)
        if check_csrf:
            self.enforce_csrf(submitted_token, session_id)
        return decision


def raise_for_decision(decision: RateLimitDecision) -> None:
    """Translate a rejecting decision into its typed exception."""
    if decision.outcome is RateLimitOutcome.BLOCKED:
        raise BlockedError(
            policy=decision.policy,
            blocked_until=decision.blocked_until,
            retry_after=decision.retry_after,
        )
    if decision.outcome is RateLimitOutcome.RATE_LIMITED:
        raise RateLimitedError(
            policy=decision.policy,
            reset_at=decision.reset_at,
            retry_after=decision.retry_after,
        )
