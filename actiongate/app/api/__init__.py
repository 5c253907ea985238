"""HTTP endpoints exposed by the security gate."""

from actiongate.app.api.csrf import router as csrf_router
from actiongate.app.api.security import router as security_router

__all__ = ["csrf_router", "security_router"]
