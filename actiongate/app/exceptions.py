"""Custom exceptions for the security gate."""

import math

CSRF_FAILURE_MESSAGE = (
    "Security validation failed. Please refresh the page and try again."
)


class GateException(Exception):
    """Base class for gate rejections with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    These are expected, recoverable conditions and are never logged at
    error severity.
    """
    status_code: int = 400
    error_code: str = "gate_rejected"

    def __init__(self, message: str = "Request rejected"):
        self.message = message
        super().__init__(message)

    def to_response(self) -> dict:
        """Convert to API response body."""
        return {"error": self.error_code, "message": self.message}


class RateLimitedError(GateException):
    """Raised when a window threshold is exceeded without a punitive block.

    Recoverable by simply waiting for the window to reset.
    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        policy: str,
        reset_at: float,
        retry_after: float,
        detail: str | None = None,
    ):
        self.policy = policy
        self.reset_at = reset_at
        self.retry_after = retry_after
        message = detail or (
            f"Rate limit exceeded. Try again in "
            f"{self.retry_after_seconds} seconds."
        )
        super().__init__(message)

    @property
    def retry_after_seconds(self) -> int:
        return max(1, math.ceil(self.retry_after))

    def to_response(self) -> dict:
        body = super().to_response()
        body["retry_after"] = self.retry_after_seconds
        body["reset_at"] = int(self.reset_at)
        return body


class BlockedError(GateException):
    """Raised while an escalated, punitive block is active.

    Distinguished from RateLimitedError in messaging: the caller should not
    retry at all until the block lapses.
    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    error_code = "blocked"

    def __init__(
        self,
        policy: str,
        blocked_until: float,
        retry_after: float,
        detail: str | None = None,
    ):
        self.policy = policy
        self.blocked_until = blocked_until
        self.retry_after = retry_after
        minutes = max(1, math.ceil(retry_after / 60))
        message = detail or (
            f"Too many attempts. Access is temporarily blocked; "
            f"please wait {minutes} minute{'s' if minutes != 1 else ''} "
            f"before trying again."
        )
        super().__init__(message)

    @property
    def retry_after_seconds(self) -> int:
        return max(1, math.ceil(self.retry_after))

    def to_response(self) -> dict:
        body = super().to_response()
        body["retry_after"] = self.retry_after_seconds
        body["blocked_until"] = int(self.blocked_until)
        return body


class CsrfInvalidError(GateException):
    """Raised when a submission lacks a valid, matching, unexpired token.

    The message is always generic; the failure reason is kept server-side
    so the mechanism can't be probed.
    Maps to HTTP 403 Forbidden.
    """
    status_code = 403
    error_code = "csrf_invalid"

    def __init__(self, reason: str | None = None):
        self.reason = reason
        super().__init__(CSRF_FAILURE_MESSAGE)


class UnknownPolicyError(KeyError):
    """Raised when an endpoint is wired to a policy that doesn't exist."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(name)

    def __str__(self) -> str:
        return f"Unknown rate limit policy: {self.name!r}"
