"""News portal key service — FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app() — testable application factory
  - lifespan     — @asynccontextmanager startup/shutdown sequence
  - app = create_app() — module-level instance for uvicorn

Startup sequence:
  1. load_config()                 → app.state.config
  2. KeyStore.initialize()         → app.state.store (failure here is fatal)
  3. KeyManager                    → app.state.key_manager
  4. ConnectionRegistry, MessageCipher, NotificationDispatcher
                                   → app.state.registry / cipher / dispatcher
  5. AuthFailureTracker            → app.state.auth_failures
  6. Scheduler.bootstrap()         → startup rotation, then ensure a valid key
  7. Scheduler.start()             → app.state.scheduler
  8. app.state.ready = True

Shutdown sequence (reverse):
  app.state.ready = False → cancel scheduler jobs → close key store
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.routing import APIRouter
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from newsportal import __version__
from newsportal.auth.failures import AuthFailureTracker
from newsportal.auth.limiter import limiter
from newsportal.config import Config, load_config
from newsportal.health import router as health_router
from newsportal.keys.errors import KeyStoreError
from newsportal.keys.manager import KeyManager, RotationPolicy
from newsportal.keys.router import router as keys_router
from newsportal.keys.store import KeyStore
from newsportal.realtime.cipher import MessageCipher
from newsportal.realtime.dispatcher import NotificationDispatcher
from newsportal.realtime.registry import ConnectionRegistry
from newsportal.realtime.router import router as realtime_router
from newsportal.scheduler.runner import Scheduler
from newsportal.utils.logger import clear_request_id, configure_logging, get_logger, set_request_id
from newsportal.utils.ulid import generate_ulid

# ─── Logging Setup ────────────────────────────────────────────────────────────
# Configure logging at module import time (before any other imports that may log).
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)

INTERNAL_ERROR_MESSAGE = "Internal server error"

root_router = APIRouter(tags=["root"])


@root_router.get("/")
async def root() -> dict[str, str]:
    """Service identity / discovery."""
    return {
        "service": "newsportal-keys",
        "version": __version__,
        "health": "/health",
        "websocket": "/ws",
    }


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan — startup and shutdown sequence.

    A config passed to create_app() wins over load_config(); tests use this
    to point the store at a temporary file.
    """
    logger.info("Key service starting up...")

    # ── Step 1: Configuration ─────────────────────────────────────────────────
    # load_config() raises SystemExit on parse error or missing version field.
    config: Config = getattr(app.state, "config", None) or load_config()
    app.state.config = config

    # ── Step 2: Credential store ──────────────────────────────────────────────
    # The only fatal startup step: no store, no authentication.
    store = KeyStore(config.database.path)
    await store.initialize()
    app.state.store = store

    # ── Step 3: Key lifecycle manager ─────────────────────────────────────────
    manager = KeyManager(
        store,
        policy=RotationPolicy(config.rotation.policy),
        key_ttl=config.rotation.key_ttl,
    )
    app.state.key_manager = manager
    app.state.started_at = manager.now()

    # ── Step 4: Real-time channel ─────────────────────────────────────────────
    registry = ConnectionRegistry(send_timeout=config.websocket.send_timeout_seconds)
    cipher = MessageCipher(config.websocket.encryption_key)
    dispatcher = NotificationDispatcher(
        registry,
        cipher=cipher,
        encrypt=config.websocket.encrypt_messages,
    )
    app.state.registry = registry
    app.state.cipher = cipher
    app.state.dispatcher = dispatcher

    # ── Step 5: Auth failure tracking ─────────────────────────────────────────
    auth_failures = AuthFailureTracker()
    app.state.auth_failures = auth_failures

    # ── Step 6/7: Scheduler ───────────────────────────────────────────────────
    scheduler = Scheduler(
        config,
        manager,
        dispatcher,
        auth_failures,
        store,
        started_at=app.state.started_at,
    )
    has_key = await scheduler.bootstrap()
    if not has_key:
        logger.error("No valid API key after startup — requests will be rejected until rotation succeeds")
    scheduler.start()
    app.state.scheduler = scheduler

    # ── Step 8: Ready ─────────────────────────────────────────────────────────
    app.state.ready = True
    logger.info(
        "Key service ready",
        rotation_policy=manager.policy.value,
        key_ttl_minutes=int(config.rotation.key_ttl.total_seconds() // 60),
        encrypt_messages=config.websocket.encrypt_messages,
    )

    yield

    # ── Shutdown (reverse order) ──────────────────────────────────────────────
    logger.info("Key service shutting down...")
    app.state.ready = False

    await scheduler.shutdown()
    await store.close()

    logger.info("Key service shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app(config: Optional[Config] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Call this function directly in tests to get an isolated app instance:
        app = create_app(config)

    Returns:
        Configured FastAPI application with lifespan, routers, and handlers.
    """
    # API schema is only exposed with DEBUG=true.
    _debug = os.getenv("DEBUG", "false").lower() == "true"

    application = FastAPI(
        title="News Portal Key Service",
        description="API key rotation and real-time notification channel",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if _debug else None,
        redoc_url="/redoc" if _debug else None,
        openapi_url="/openapi.json" if _debug else None,
    )

    # /health returns 503 on any request that arrives before startup completes.
    application.state.ready = False
    if config is not None:
        application.state.config = config

    application.state.limiter = limiter
    application.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    application.add_middleware(SlowAPIMiddleware)

    @application.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or generate_ulid()
        set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            clear_request_id()
        response.headers["x-request-id"] = request_id
        return response

    application.include_router(root_router)
    application.include_router(health_router)
    application.include_router(keys_router, prefix="/api")
    application.include_router(realtime_router)

    # ── Exception handlers ────────────────────────────────────────────────────

    @application.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "message": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @application.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
        field = loc[-1] if loc else "body"
        message = str(first.get("msg", "Invalid request")).removeprefix("Value error, ")
        logger.info("Request validation failed", field=field, path=str(request.url.path))
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": message, "field": field},
        )

    @application.exception_handler(KeyStoreError)
    async def key_store_exception_handler(
        request: Request, exc: KeyStoreError
    ) -> JSONResponse:
        logger.error(
            "Key store error",
            operation=exc.operation,
            error=str(exc.cause),
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": INTERNAL_ERROR_MESSAGE},
        )

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": INTERNAL_ERROR_MESSAGE},
        )

    return application


# ─── Module-Level App (for uvicorn) ───────────────────────────────────────────
#   uvicorn newsportal.main:app --host 127.0.0.1 --port 3000

app = create_app()
