"""Request ID middleware for log correlation.

This middleware adds a unique request ID to each incoming request,
enabling request tracking across logs and responses.
"""

import re
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from actiongate.app.core.logging import set_current_request_id

# Client-supplied IDs end up in logs; accept only short, plain values
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Middleware to add a request ID to all requests.

    The request ID is:
    1. Extracted from X-Request-ID header if present and well-formed
    2. Generated as UUID otherwise
    3. Added to request.state and the logging context
    4. Returned in X-Request-ID response header
    """

    def __init__(self, app, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request and add request ID."""
        request_id = request.headers.get(self.header_name)
        if not request_id or not _REQUEST_ID_RE.match(request_id):
            request_id = str(uuid.uuid4())

        request.state.request_id = request_id
        set_current_request_id(request_id)

        try:
            response = await call_next(request)
        finally:
            set_current_request_id(None)

        response.headers[self.header_name] = request_id
        return response


def get_request_id(request: Request) -> str:
    """Get request ID from request state.

    Args:
        request: FastAPI request object

    Returns:
        Request ID string
    """
    return getattr(request.state, "request_id", "unknown")
