import hmac

from fastapi import HTTPException, Request

from actiongate.app.core.config import settings


def get_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header.

    Args:
        request: The incoming request

    Returns:
        The token string if present, None otherwise
    """
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.replace("Bearer ", "", 1).strip()


def require_admin(request: Request) -> str:
    """Validate admin token for the monitoring and maintenance endpoints.

    Args:
        request: The incoming request

    Returns:
        Admin identifier if valid

    Raises:
        HTTPException: 503 if no admin token is configured
        HTTPException: 401 if admin token is missing or invalid
    """
    expected_token = settings.admin_token.strip()
    if not expected_token:
        raise HTTPException(status_code=503, detail="Admin endpoints are disabled")

    # Always perform comparison to prevent enumeration via timing analysis
    token = get_bearer_token(request) or ""

    if not hmac.compare_digest(token.encode("utf-8"), expected_token.encode("utf-8")):
        # Use consistent error message to prevent token enumeration
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")

    return "admin"
