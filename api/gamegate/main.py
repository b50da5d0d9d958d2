"""
GameGate API - gaming-aware request admission.

FastAPI application hosting the admission middleware, its admin surface and
the system endpoints.
"""

import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gamegate.config import settings, validate_security_settings
from gamegate.middleware.rate_limit import GamingRateLimitMiddleware, set_limiter
from gamegate.middleware.request_id import RequestIDMiddleware
from gamegate.ratelimit.service import GamingRateLimiter
from gamegate.routers.admin import router as admin_router

logger = logging.getLogger(__name__)


def _install_reload_signal(limiter: GamingRateLimiter) -> bool:
    """Reload the policy table on SIGHUP where the platform allows it."""
    sighup = getattr(signal, "SIGHUP", None)
    if sighup is None:
        return False
    try:
        asyncio.get_running_loop().add_signal_handler(sighup, limiter.reload_policy)
    except (NotImplementedError, RuntimeError, ValueError):
        # Not the main thread, or an event loop without signal support
        return False
    return True


def _remove_reload_signal() -> None:
    sighup = getattr(signal, "SIGHUP", None)
    if sighup is None:
        return
    try:
        asyncio.get_running_loop().remove_signal_handler(sighup)
    except (NotImplementedError, RuntimeError, ValueError):
        pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    validate_security_settings()
    limiter: GamingRateLimiter = app.state.rate_limiter
    await limiter.start()
    if _install_reload_signal(limiter):
        logger.info("Policy reload on SIGHUP enabled")
    yield
    _remove_reload_signal()
    await limiter.close()


def _sanitize_error_detail(error: dict[str, Any]) -> dict[str, Any]:
    """Sanitize Pydantic error detail to be JSON-serializable."""
    sanitized = {}
    for key, value in error.items():
        if key == "ctx":
            # Context may contain non-serializable objects like ValueError
            sanitized[key] = {k: str(v) for k, v in value.items()} if isinstance(value, dict) else str(value)
        elif key == "loc":
            sanitized[key] = [str(loc) for loc in value]
        else:
            sanitized[key] = value
    return sanitized


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle Pydantic validation errors with consistent error format."""
    request_id = getattr(request.state, "request_id", None)

    errors = [_sanitize_error_detail(e) for e in exc.errors()]
    if errors:
        first_error = errors[0]
        field = ".".join(str(loc) for loc in first_error.get("loc", []))
        msg = first_error.get("msg", "Validation error")
        message = f"{field}: {msg}" if field else msg
    else:
        message = "Validation error"

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": message,
                "request_id": request_id,
                "details": errors,
            }
        },
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle uncaught exceptions with consistent error format."""
    request_id = getattr(request.state, "request_id", None)
    logger.error(
        "Unhandled error",
        extra={"event_type": "unhandled_error", "request_id": request_id, "error": str(exc)},
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
                "request_id": request_id,
            }
        },
    )


def create_app(limiter: GamingRateLimiter | None = None) -> FastAPI:
    """Build the application around a limiter (one is built from settings if omitted)."""
    limiter = limiter or GamingRateLimiter.from_settings(settings)
    set_limiter(limiter)

    app = FastAPI(
        title="GameGate API",
        description="Gaming-aware request admission and rate control",
        version="0.1.0",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )
    app.state.rate_limiter = limiter

    # Admission runs inside CORS so denials still carry CORS headers
    app.add_middleware(GamingRateLimitMiddleware, limiter=limiter)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=["*"],
        expose_headers=["Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
    )

    app.add_middleware(RequestIDMiddleware)

    app.include_router(admin_router)

    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    @app.get("/api/v1/health", tags=["System"])
    async def health_check() -> dict[str, str]:
        """
        Health check endpoint.

        Returns 200 OK if the API is running; never rate limited.
        """
        store_ok = await limiter.store.ping()
        return {"status": "healthy", "store": "ok" if store_ok else "unavailable"}

    return app


app = create_app()
