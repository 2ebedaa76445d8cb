"""
DoorCast Backend — FastAPI Application Factory
================================================

What:  Creates and configures the FastAPI application instance.
Why:   Centralizes middleware, exception handlers, routes, the service graph
       and lifecycle management in one place.
How:   create_app() returns a configured FastAPI instance with its own
       ServiceContainer on app.state.services.
Who:   uvicorn (uvicorn app.main:app), tests (create_app()).

Application Architecture:
    ┌──────────────────────────────────────────────────────┐
    │                    FastAPI App                       │
    │                                                      │
    │  Middleware: Request ID → Logging → Rate Limit       │
    │                                                      │
    │  Routes:                                             │
    │  ┌──────────────┐ ┌──────────────┐ ┌──────────────┐  │
    │  │ /events      │ │ /events/live │ │ legacy paths │  │
    │  └──────────────┘ └──────────────┘ └──────────────┘  │
    │                                                      │
    │  Exception Handlers:                                 │
    │  InvalidInput→400 │ NotFound→404 │ StoreFailure→500  │
    └──────────────────────────────────────────────────────┘

Lifecycle:
    Startup:  logging → cross-field config checks → schema (DB_CREATE_ALL)
    Shutdown: wait for in-flight commits → close live viewers → dispose engine
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from app import __version__
from app.config import settings
from app.database import create_schema, dispose_engine
from app.dependencies import ServiceContainer, build_services
from app.exceptions import (
    DoorCastError,
    NotFoundError,
    RateLimitExceededError,
    StoreError,
    ValidationError,
)
from app.middleware.logging import RequestLoggingMiddleware
from app.middleware.rate_limit import RateLimitMiddleware
from app.middleware.request_id import RequestIDMiddleware, request_id_var
from app.routes import events, health, legacy, live

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure the root logger once for the whole process.

    Format: 2026-10-19T08:15:02 [INFO] app.services.ingestion: Event ... announced
    Output: stdout (container runtimes collect it from there)
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Per-request lines come from doorcast.access instead
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging()
    logger.info("=" * 60)
    logger.info("DoorCast Backend %s starting up...", __version__)

    try:
        settings.validate_for_startup()
    except ValueError as e:
        logger.error("Configuration error: %s", str(e))
        raise

    if settings.db_create_all:
        await create_schema()
        logger.info("Database schema ensured")

    services: ServiceContainer = app.state.services
    logger.info("Storage directory: %s", services.blobs.storage_root)
    logger.info(
        "Live fan-out: queue_size=%d, overflow_policy=%s, heartbeat=%.0fs",
        settings.subscriber_queue_size,
        services.broadcaster.overflow_policy,
        settings.ws_heartbeat_interval,
    )
    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("DoorCast Backend shutting down...")
    await services.pipeline.drain()
    services.registry.close_all()
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _error_response(status_code: int, error: str, message: str, details: Optional[dict] = None, headers=None):
    content = {"error": error, "message": message, "request_id": request_id_var.get("")}
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map application exceptions to HTTP responses.

    Handler hierarchy:
        ValidationError, RequestValidationError → 400 invalid_input
        NotFoundError                           → 404 not_found
        RateLimitExceededError                  → 429 rate_limit_exceeded
        StoreError (Database/FileStorage)       → 500 store_failure
        DoorCastError (base)                    → 500 internal_server_error
        Exception (fallback)                    → 500 internal_server_error

    SubscriberDeliveryError never reaches here; the Broadcaster handles it.
    Server-side context is logged, never returned for 5xx responses.
    """

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning("[%s] Invalid input: %s", request_id_var.get(""), exc.message)
        return _error_response(400, "invalid_input", exc.message, exc.context)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        first = errors[0] if errors else {"loc": [], "msg": "Invalid request"}
        message = f"{'.'.join(first['loc'])}: {first['msg']}" if first["loc"] else first["msg"]
        logger.warning("[%s] Invalid request: %s", request_id_var.get(""), message)
        return _error_response(400, "invalid_input", message, {"errors": errors})

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):
        logger.debug("[%s] Not found: %s", request_id_var.get(""), exc.message)
        return _error_response(404, "not_found", exc.message)

    @app.exception_handler(RateLimitExceededError)
    async def handle_rate_limit(request: Request, exc: RateLimitExceededError):
        return _error_response(
            429,
            "rate_limit_exceeded",
            exc.message,
            exc.context,
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(StoreError)
    async def handle_store_error(request: Request, exc: StoreError):
        logger.error(
            "[%s] %s: %s | Context: %s",
            request_id_var.get(""),
            type(exc).__name__,
            exc.message,
            exc.context,
        )
        return _error_response(
            500,
            "store_failure",
            "The event could not be stored or read. Please try again later.",
        )

    @app.exception_handler(DoorCastError)
    async def handle_doorcast_error(request: Request, exc: DoorCastError):
        logger.error("[%s] %s: %s", request_id_var.get(""), type(exc).__name__, exc.message)
        return _error_response(500, "internal_server_error", "An unexpected error occurred.")

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error("[%s] Unexpected error: %s", request_id_var.get(""), str(exc), exc_info=True)
        return _error_response(
            500,
            "internal_server_error",
            "An unexpected error occurred. Please try again or contact support.",
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        services: Pre-built service graph (tests); built from settings if None.
    """
    app = FastAPI(
        title="DoorCast API",
        description=(
            "Doorbell event ingestion with real-time fan-out. Devices upload stills "
            "and button presses; viewers list history and receive live notifications."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.services = services or build_services()

    # ── Register Middleware ───────────────────────────────────────────────
    # Last added runs first: RequestID → Logging → RateLimit → GZip → CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Total-Count", "Retry-After", "Location", "ETag"],
    )
    # Compresses any response over 500 bytes, raw images included
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    # ── Register Routes ───────────────────────────────────────────────────
    app.include_router(events.router)
    app.include_router(live.router)
    app.include_router(legacy.router)
    app.include_router(health.router)
    if settings.admin_routes_enabled:
        app.include_router(events.admin_router)

    return app


# uvicorn expects `app.main:app` to be importable
app = create_app()
