"""Monitoring and maintenance endpoints for the security gate.

Read-only views for dashboards plus the proactive cleanup hook for an
external scheduler. All require the admin bearer token.
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from actiongate.app.exceptions import UnknownPolicyError
from actiongate.app.middleware.auth import require_admin
from actiongate.app.middleware.security import get_security_gate
from actiongate.app.security.policies import list_policies

router = APIRouter(prefix="/api/security", dependencies=[Depends(require_admin)])


@router.get("/stats")
async def security_stats(request: Request) -> dict[str, Any]:
    """Aggregate rate limit and CSRF store statistics."""
    gate = get_security_gate(request)
    return {
        "rate_limit": gate.engine.get_stats(),
        "csrf": gate.csrf.get_stats(),
        "policies": {
            policy.name: {
                "window_seconds": policy.window_seconds,
                "max_requests": policy.max_requests,
                "block_seconds": policy.block_seconds,
            }
            for policy in list_policies()
        },
    }


@router.get("/rate-limits/{identifier:path}")
async def rate_limit_info(
    identifier: str, request: Request, policy: Optional[str] = None
) -> dict[str, Any]:
    """Current counters and blocks for one identifier."""
    gate = get_security_gate(request)
    try:
        infos = gate.engine.get_rate_limit_info(identifier, policy)
    except UnknownPolicyError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {
        "identifier": identifier,
        "counters": [info.to_dict() for info in infos],
    }


@router.delete("/rate-limits/{identifier:path}")
async def reset_rate_limit(
    identifier: str, request: Request, policy: Optional[str] = None
) -> dict[str, Any]:
    """Lift blocks and forget counters for one identifier."""
    gate = get_security_gate(request)
    try:
        removed = gate.engine.reset(identifier, policy)
    except UnknownPolicyError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"identifier": identifier, "removed": removed}


@router.post("/cleanup")
async def cleanup(request: Request) -> dict[str, int]:
    """Proactively compact expired counters and tokens."""
    return get_security_gate(request).cleanup_expired()
