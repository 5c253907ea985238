"""CSRF token issuance endpoint.

Page renderers (or client-side code before a form submit) fetch a token
here and embed it as the ``csrf_token`` hidden field or send it back in
the ``X-CSRF-Token`` header.
"""

import secrets
from typing import Any

from fastapi import APIRouter, Depends, Request, Response

from actiongate.app.core.config import settings
from actiongate.app.core.logging import get_logger
from actiongate.app.middleware.security import (
    get_csrf_session_id,
    get_security_gate,
    require_gate,
)

logger = get_logger(__name__)
router = APIRouter()


@router.get("/api/csrf", dependencies=[Depends(require_gate("api", csrf=False))])
async def issue_csrf_token(request: Request, response: Response) -> dict[str, Any]:
    """Issue (or re-issue) the CSRF token for the caller's session.

    Unauthenticated visitors get an anonymous ``csrf_session`` cookie so
    public forms are protected too.
    """
    gate = get_security_gate(request)

    session_id = get_csrf_session_id(request)
    if not session_id:
        session_id = secrets.token_urlsafe(32)
        response.set_cookie(
            settings.csrf_session_cookie_name,
            session_id,
            max_age=int(gate.csrf.ttl_seconds),
            path="/",
            secure=settings.csrf_cookie_secure,
            httponly=True,
            samesite="strict",
        )
        logger.debug("Started anonymous CSRF session")

    token = gate.csrf.issue(session_id)

    # Readable by client-side code so it can be echoed in a header; lives
    # exactly as long as the token itself
    response.set_cookie(
        settings.csrf_cookie_name,
        token.value,
        max_age=gate.csrf.seconds_left(token),
        path="/",
        secure=settings.csrf_cookie_secure,
        httponly=False,
        samesite="strict",
    )
    response.headers["Cache-Control"] = "no-store"
    return {"token": token.value, "expires_at": int(token.expires_at)}
