"""Middleware and request dependencies for the security gate."""

from actiongate.app.middleware.auth import require_admin
from actiongate.app.middleware.request_id import RequestIdMiddleware, get_request_id
from actiongate.app.middleware.security import (
    get_csrf_session_id,
    get_security_gate,
    require_gate,
)

__all__ = [
    "require_admin",
    "require_gate",
    "get_security_gate",
    "get_csrf_session_id",
    "RequestIdMiddleware",
    "get_request_id",
]
