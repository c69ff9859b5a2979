"""
ClipSync Backend — FastAPI Application Factory
===============================================

What:  Creates and configures the FastAPI application instance.
How:   Factory pattern: create_app() returns a configured FastAPI instance.
Who:   uvicorn (uvicorn clipsync.main:app) and the test suite, which passes
       its own session factory.

Application Architecture:
    ┌──────────────────────────────────────────────────────────┐
    │                      FastAPI App                         │
    │                                                          │
    │  Middleware:  Request ID → Logging → GZip → CORS         │
    │                                                          │
    │  Routes:                                                 │
    │  ┌────────────────┐ ┌──────────────┐ ┌────────────────┐  │
    │  │ /api/clipboard │ │ /api/sync    │ │ WS /ws         │  │
    │  └────────────────┘ └──────────────┘ └────────────────┘  │
    │                                                          │
    │  app.state.core ── SyncCore (presence, gateway,          │
    │                     broadcaster, ledger, pipeline)       │
    └──────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:
    1. Initialize logging
    2. Validate configuration
    3. Build the SyncCore and start its background sweeper (if enabled)

    Shutdown:
    1. Close every realtime session
    2. Dispose the database engine (when this app owns it)
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clipsync import __version__
from clipsync.config import settings
from clipsync.core import SyncCore
from clipsync.database import async_session_factory, dispose_engine
from clipsync.exceptions import (
    AuthError,
    ClipSyncError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from clipsync.middleware.logging import RequestLoggingMiddleware
from clipsync.middleware.request_id import (
    RequestIDLogFilter,
    RequestIDMiddleware,
    request_id_var,
)
from clipsync.routes import clipboard, health, realtime, sync

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure logging for the entire application.

    Format: %(asctime)s [%(levelname)s] %(name)s [%(request_id)s]: %(message)s

    request_id is the HTTP request id or the realtime connection id, injected
    by RequestIDLogFilter, so every line of one request or connection can be
    grepped together.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIDLogFilter())

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s [%(request_id)s]: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[handler],
        force=True,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
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
    logger.info("ClipSync Backend %s starting up (%s)...", __version__, settings.environment)

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        logger.error("Configuration error: %s", str(e))
        logger.error("Fix the configuration and restart the server.")
        raise

    core = SyncCore.build(app.state.session_factory, settings)
    app.state.core = core
    await core.start()

    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("Realtime endpoint: ws://%s:%d/ws", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("ClipSync Backend shutting down...")
    await core.shutdown()
    if app.state.owns_engine:
        await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _error_body(code: str, message: str, details: Optional[dict] = None) -> dict:
    body = {"error": code, "message": message, "request_id": request_id_var.get("")}
    if details is not None:
        body["details"] = details
    return body


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map exception types to HTTP responses.

    Handler hierarchy:
        ValidationError   → 400 Bad Request
        AuthError         → 401 Unauthorized
        NotFoundError     → 404 Not Found
        PersistenceError  → 503 Service Unavailable + Retry-After
        ClipSyncError     → 500 Internal Server Error
        Exception         → 500 Internal Server Error (stack trace logged only)

    5xx responses never carry exception context; it is logged server-side.
    """

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning("Validation error: %s", exc.message)
        return JSONResponse(
            status_code=400,
            content=_error_body(exc.code, exc.message, exc.context),
        )

    @app.exception_handler(AuthError)
    async def handle_auth_error(request: Request, exc: AuthError):
        logger.info("Authentication refused: %s", exc.message)
        return JSONResponse(
            status_code=401,
            content=_error_body(exc.code, exc.message),
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content=_error_body(exc.code, exc.message))

    @app.exception_handler(PersistenceError)
    async def handle_persistence_error(request: Request, exc: PersistenceError):
        logger.error("Persistence error: %s | Context: %s", exc.message, exc.context)
        return JSONResponse(
            status_code=503,
            content=_error_body(exc.code, exc.message, {"retry_after": exc.retry_after}),
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(ClipSyncError)
    async def handle_clipsync_error(request: Request, exc: ClipSyncError):
        logger.error("Application error: %s | Context: %s", exc.message, exc.context)
        return JSONResponse(status_code=500, content=_error_body(exc.code, exc.message))

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error("Unexpected error: %s", str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content=_error_body(
                "internal_server_error",
                "An unexpected error occurred. Please try again or contact support.",
            ),
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        session_factory: Database sessions for the core. Defaults to the
                         module engine's factory, in which case the app also
                         disposes that engine on shutdown.
    """
    app = FastAPI(
        title="ClipSync API",
        description=(
            "Clipboard synchronization across a user's devices: realtime fan-out "
            "over WebSocket with a durable per-device sync ledger for catch-up."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.session_factory = session_factory or async_session_factory
    app.state.owns_engine = session_factory is None

    # ── Register Middleware ───────────────────────────────────────────────
    # Executes in reverse order of addition: RequestID → Logging → GZip → CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After", "Location"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # ── Register Exception Handlers ───────────────────────────────────────
    register_exception_handlers(app)

    # ── Register Routes ───────────────────────────────────────────────────
    app.include_router(clipboard.router)
    app.include_router(sync.router)
    app.include_router(realtime.router)
    app.include_router(health.router)

    return app


# ── Application Instance ─────────────────────────────────────────────────
app = create_app()
