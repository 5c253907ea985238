"""FastAPI dependencies wiring routes to the security gate.

Each mutating route is registered with its endpoint class (or policy)::

    @router.post("/contact", dependencies=[Depends(require_gate("contact"))])
    async def submit_contact(...): ...
"""

import math
from typing import Awaitable, Callable, MutableMapping, Optional

from fastapi import Request, Response

from actiongate.app.core.config import settings
from actiongate.app.core.logging import get_log_context, get_logger
from actiongate.app.security.gate import SecurityGate
from actiongate.app.security.policies import RateLimitPolicy, resolve_policy
from actiongate.app.security.rate_limit import RateLimitDecision

logger = get_logger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
_FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


def get_security_gate(request: Request) -> SecurityGate:
    """Return the process-wide gate attached by ``create_app``."""
    gate = getattr(request.app.state, "security_gate", None)
    if gate is None:
        raise RuntimeError("Security gate is not configured on this application")
    return gate


def get_csrf_session_id(request: Request) -> Optional[str]:
    """Session a CSRF token is bound to.

    The login session when there is one, otherwise the anonymous CSRF
    session minted for public forms.
    """
    return (
        request.cookies.get(settings.session_cookie_name)
        or request.cookies.get(settings.csrf_session_cookie_name)
    )


async def get_submitted_csrf_token(request: Request) -> Optional[str]:
    """Read the submitted token from the header or the form body."""
    token = request.headers.get(settings.csrf_header_name)
    if token:
        return token.strip()

    content_type = request.headers.get("content-type", "")
    if content_type.startswith(_FORM_CONTENT_TYPES):
        form = await request.form()
        value = form.get(settings.csrf_form_field)
        if isinstance(value, str):
            return value.strip()
    return None


def set_rate_limit_headers(
    headers: MutableMapping[str, str], decision: RateLimitDecision
) -> None:
    headers["X-RateLimit-Limit"] = str(decision.limit)
    headers["X-RateLimit-Remaining"] = str(decision.remaining)
    headers["X-RateLimit-Reset"] = str(math.ceil(decision.reset_at))


def require_gate(
    policy: "RateLimitPolicy | str",
    *,
    csrf: bool = True,
) -> Callable[[Request, Response], Awaitable[RateLimitDecision]]:
    """Build a dependency that gates a route.

    Args:
        policy: Policy, policy name or endpoint class; resolved at
            registration so wiring mistakes fail at startup
        csrf: Validate the CSRF token on unsafe methods

    Returns:
        Dependency returning the admitting RateLimitDecision
    """
    resolved = resolve_policy(policy)

    async def gate_dependency(request: Request, response: Response) -> RateLimitDecision:
        gate = get_security_gate(request)

        identifier = gate.resolve(request.headers, request.cookies)
        request.state.client_identifier = identifier

        decision = gate.enforce_rate_limit(identifier.value, resolved)

        if csrf and request.method not in SAFE_METHODS:
            submitted = await get_submitted_csrf_token(request)
            gate.enforce_csrf(submitted, get_csrf_session_id(request))

        set_rate_limit_headers(response.headers, decision)
        request.state.rate_limit = decision
        logger.debug(
            "Request admitted by security gate",
            extra=get_log_context(
                client_id=identifier.value,
                identifier_tier=identifier.tier.value,
                policy=resolved.name,
                path=request.url.path,
                method=request.method,
            ),
        )
        return decision

    return gate_dependency
