"""FastAPI application entry point."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from callpanion import __version__
from callpanion.api import calls, devices, health, pairing, realtime, webhooks
from callpanion.api.rate_limits import limiter
from callpanion.config import get_settings, require_valid_settings
from callpanion.core.exceptions import CallPanionError, IntegrationError, RateLimitedError
from callpanion.core.logging import get_logger, setup_logging
from callpanion.db import close_db, get_db_context, init_db
from callpanion.dependencies import build_orchestrator, reset_dependencies
from callpanion.integrations.conversation.factory import reset_conversation_broker
from callpanion.integrations.push.factory import reset_push_dispatcher
from callpanion.services.reconciliation import ReconciliationScheduler


def callpanion_exception_handler(request: Request, exc: CallPanionError) -> JSONResponse:
    """Render domain errors with their status code.

    Provider failures are reported by error code only; their details stay
    in the logs.
    """
    log = get_logger(__name__)
    headers = None

    if isinstance(exc, IntegrationError):
        log.error(
            "Integration error",
            error=str(exc),
            path=request.url.path,
            method=request.method,
        )
        content = {
            "error": exc.error_code,
            "message": "An upstream service failed",
        }
    else:
        content = exc.to_dict()

    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.retry_after)}

    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Handle route-level rate limit errors."""
    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limit_exceeded",
            "message": "Too many requests. Please try again later.",
            "detail": str(exc.detail),
        },
    )


def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle HTTP exceptions with structured response."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": _status_code_to_error_type(exc.status_code),
            "message": str(exc.detail),
            "status_code": exc.status_code,
        },
        headers=getattr(exc, "headers", None),
    )


def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors with detailed field information."""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"] if loc != "body")
        errors.append({
            "field": field or "request",
            "message": error["msg"],
            "type": error["type"],
        })

    return JSONResponse(
        status_code=422,
        content={
            "error": "validation_error",
            "message": "Request validation failed",
            "details": errors,
        },
    )


def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions.

    Logs the error and returns a generic 500 response without exposing
    internal details in production.
    """
    log = get_logger(__name__)
    log.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
    )

    settings = get_settings()
    detail = str(exc) if settings.debug else "An internal error occurred"

    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "message": detail,
        },
    )


def _status_code_to_error_type(status_code: int) -> str:
    """Map HTTP status codes to error type strings."""
    error_types = {
        400: "bad_request",
        401: "unauthorized",
        403: "forbidden",
        404: "not_found",
        405: "method_not_allowed",
        409: "conflict",
        422: "validation_error",
        429: "rate_limit_exceeded",
        500: "internal_error",
        502: "bad_gateway",
        503: "service_unavailable",
    }
    return error_types.get(status_code, "error")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings = get_settings()
    log = get_logger(__name__)

    setup_logging(
        level=settings.log_level,
        json_output=settings.log_json,
        service_name="callpanion",
    )

    if settings.is_production:
        require_valid_settings(settings)

    log.info(
        "Starting CallPanion orchestrator",
        version=__version__,
        environment=settings.environment,
    )

    log.info("Initializing database")
    await init_db()
    log.info("Database initialized successfully")

    scheduler: ReconciliationScheduler | None = None
    if settings.reconcile_enabled:
        scheduler = ReconciliationScheduler(
            build_orchestrator,
            get_db_context,
            interval_seconds=settings.reconcile_interval_seconds,
        )
        scheduler.start()
    app.state.reconciliation = scheduler

    yield

    log.info("Shutting down CallPanion orchestrator")

    if scheduler:
        await scheduler.stop()

    await reset_push_dispatcher()
    await reset_conversation_broker()
    reset_dependencies()

    await close_db()
    log.info("Database connections closed")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="CallPanion Orchestrator",
        description="Pairing and call-session orchestration for family check-in calls",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # Rate limiting
    app.state.limiter = limiter

    # Exception handlers (most specific first)
    app.add_exception_handler(CallPanionError, callpanion_exception_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Browsers need CORS for the dashboard; the security gate still checks
    # Origin itself
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins or ["*"],
        allow_credentials=bool(settings.allowed_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, tags=["Health"])
    app.include_router(pairing.router, prefix="/api/v1", tags=["Pairing"])
    app.include_router(devices.router, prefix="/api/v1", tags=["Devices"])
    app.include_router(calls.router, prefix="/api/v1", tags=["Calls"])
    app.include_router(webhooks.router, prefix="/api/v1", tags=["Webhooks"])
    app.include_router(realtime.router, prefix="/api/v1", tags=["Realtime"])

    return app


app = create_app()


def run() -> None:
    """Run the application with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "callpanion.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
