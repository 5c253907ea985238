from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from actiongate.app.api.csrf import router as csrf_router
from actiongate.app.api.security import router as security_router
from actiongate.app.core.config import settings
from actiongate.app.core.logging import get_log_context, get_logger, setup_logging
from actiongate.app.exceptions import BlockedError, CsrfInvalidError, RateLimitedError
from actiongate.app.middleware.request_id import RequestIdMiddleware, get_request_id
from actiongate.app.security.gate import SecurityGate
from actiongate.app.security.maintenance import MaintenanceTask


def create_app(gate: Optional[SecurityGate] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        gate: Security gate to use; a process-wide one is built when omitted

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    security_gate = gate or SecurityGate()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start optional periodic compaction; stop it on shutdown."""
        maintenance: Optional[MaintenanceTask] = None
        if settings.cleanup_interval_seconds > 0:
            maintenance = MaintenanceTask(
                security_gate, interval=settings.cleanup_interval_seconds
            )
            await maintenance.start()
        app.state.maintenance = maintenance

        logger.info(
            f"Application startup complete "
            f"(trusted headers: {', '.join(security_gate.resolver.trusted_headers)}; "
            f"periodic cleanup: {'on' if maintenance is not None else 'off'})"
        )

        yield

        if maintenance is not None:
            await maintenance.stop()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="ActionGate",
        description="Request gating for mutating actions: caller identification, rate limiting and CSRF",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.security_gate = security_gate

    app.add_middleware(RequestIdMiddleware)

    app.include_router(csrf_router)
    app.include_router(security_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with store sizes."""
        return {
            "status": "ok",
            "components": {
                "rate_limit_store": {"entries": len(security_gate.engine)},
                "csrf_store": {"tokens": len(security_gate.csrf)},
            },
        }

    def _log_rejection(request: Request, exc: Exception, error: str) -> None:
        identifier = getattr(request.state, "client_identifier", None)
        logger.info(
            f"Request rejected by security gate: {error}",
            extra=get_log_context(
                client_id=identifier.value if identifier else None,
                identifier_tier=identifier.tier.value if identifier else None,
                policy=getattr(exc, "policy", None),
                path=request.url.path,
                method=request.method,
            ),
        )

    @app.exception_handler(RateLimitedError)
    async def rate_limited_handler(request: Request, exc: RateLimitedError) -> JSONResponse:
        """Handle RateLimitedError and return HTTP 429 response."""
        _log_rejection(request, exc, exc.error_code)
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response(),
            headers={
                "Retry-After": str(exc.retry_after_seconds),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(int(exc.reset_at)),
            },
        )

    @app.exception_handler(BlockedError)
    async def blocked_handler(request: Request, exc: BlockedError) -> JSONResponse:
        """Handle BlockedError and return HTTP 429 response."""
        _log_rejection(request, exc, exc.error_code)
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response(),
            headers={
                "Retry-After": str(exc.retry_after_seconds),
                "X-RateLimit-Remaining": "0",
            },
        )

    @app.exception_handler(CsrfInvalidError)
    async def csrf_invalid_handler(request: Request, exc: CsrfInvalidError) -> JSONResponse:
        """Handle CsrfInvalidError with a generic HTTP 403 response."""
        _log_rejection(request, exc, exc.error_code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; full details are logged
        server-side.
        """
        request_id = get_request_id(request)
        logger.exception(
            f"Unhandled {type(exc).__name__}",
            extra=get_log_context(
                request_id=request_id,
                path=request.url.path,
                method=request.method,
            ),
        )
        message = str(exc) if settings.debug else "An unexpected error occurred. Please try again."
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "message": message, "request_id": request_id},
        )

    return app


# Create the application instance
app = create_app()
