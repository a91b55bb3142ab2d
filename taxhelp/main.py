"""
main.py — TaxHelp bot-core FastAPI application entry point.

Start with: uvicorn taxhelp.main:app --reload --port 8000
"""
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from taxhelp.config import settings
from taxhelp.services.api_client import ApiClient, RequestOptions
from taxhelp.services.errors import ApiError, ErrorKind
from taxhelp.store import SessionStore
from taxhelp.sync_queue import SyncQueue
from taxhelp.wizard.engine import SessionNotFoundError, WizardEngine

# ---------------------------------------------------------------------------
# Logging — configured before anything else
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Backend connection pool
# ---------------------------------------------------------------------------
def build_http_client() -> httpx.AsyncClient:
    """Shared pool. Deadlines come per call from RequestOptions, so no pool-wide timeout."""
    return httpx.AsyncClient(base_url=settings.api_base_url, timeout=None)


# ---------------------------------------------------------------------------
# Lifespan — startup & shutdown hooks
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
      1. Shared httpx connection pool + API client
      2. Session store, write-behind queue, wizard engine
      3. Liveness probe against the backend (logged, never fatal)
      4. Background sync task (eager drain, then every interval)
    Shutdown:
      1. Cancel the sync task
      2. Close the httpx pool
    """
    # --- 1. Backend client ---
    app.state.http = build_http_client()
    app.state.api_client = ApiClient(
        app.state.http,
        RequestOptions.from_settings(settings),
        health_timeout=settings.health_timeout_seconds,
    )

    # --- 2. Conversation state ---
    app.state.store = SessionStore(
        ttl_seconds=settings.session_ttl_seconds,
        default_language=settings.default_language,
    )
    app.state.sync_queue = SyncQueue(
        app.state.api_client,
        app.state.store,
        interval=settings.sync_interval_seconds,
    )
    app.state.engine = WizardEngine(
        app.state.api_client,
        app.state.store,
        app.state.sync_queue,
        page_size=settings.page_size,
    )

    # --- 3. Liveness probe (not fatal) ---
    try:
        status = await app.state.api_client.health_check()
        logger.info("Backend reachable at %s (HTTP %d)", settings.api_base_url, status)
    except ApiError as exc:
        logger.warning("Backend not reachable at startup: %s", exc.message)

    # --- 4. Background sync ---
    app.state.sync_task = asyncio.create_task(app.state.sync_queue.run_forever())

    logger.info("%s v%s starting up", settings.bot_name, settings.app_version)
    yield

    # --- Shutdown ---
    app.state.sync_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await app.state.sync_task
    await app.state.http.aclose()
    logger.info("%s shutting down (%d queued mutations)", settings.bot_name, len(app.state.sync_queue))


# ---------------------------------------------------------------------------
# FastAPI application instance
# ---------------------------------------------------------------------------
app = FastAPI(
    title="TaxHelp Bot API",
    version=settings.app_version,
    description=(
        "Conversation core of the TaxHelp messenger assistant: registration, login, "
        "tax filing, profile and reminder wizards over the TaxHelp backend REST API."
    ),
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# ---------------------------------------------------------------------------
# CORS middleware — restricted to front-end origins from settings
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error response helper
# ---------------------------------------------------------------------------
def _make_error_response(
    code: str,
    message: str,
    details: list[dict[str, Any]] | None = None,
    status_code: int = 500,
) -> JSONResponse:
    """Build a standard {error: {code, message, details}} response."""
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details or [],
        }
    }
    return JSONResponse(status_code=status_code, content=body)


def _status_for(exc: ApiError) -> int:
    """HTTP status this service answers with when a backend call failed."""
    if exc.kind in (ErrorKind.network_error, ErrorKind.health_check_failed):
        return 503
    if exc.kind == ErrorKind.timeout:
        return 504
    if exc.kind == ErrorKind.invalid_response or exc.status >= 500:
        return 502
    return exc.status


# ---------------------------------------------------------------------------
# Global exception handlers — registered BEFORE routers
# ---------------------------------------------------------------------------
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Converts request validation errors to the standard format, all violations at once."""
    details = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"] if loc != "body")
        details.append({"field": field or None, "issue": error["msg"]})
    return _make_error_response(
        code="VALIDATION_ERROR",
        message="Request validation failed",
        details=details,
        status_code=422,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    code_map = {
        400: "BAD_REQUEST",
        401: "UNAUTHORIZED",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        409: "CONFLICT",
        422: "VALIDATION_ERROR",
        429: "RATE_LIMITED",
    }
    code = code_map.get(exc.status_code, f"HTTP_{exc.status_code}")
    return _make_error_response(
        code=code,
        message=str(exc.detail),
        status_code=exc.status_code,
    )


@app.exception_handler(SessionNotFoundError)
async def session_not_found_handler(
    request: Request, exc: SessionNotFoundError
) -> JSONResponse:
    return _make_error_response(
        code="SESSION_NOT_FOUND",
        message=str(exc),
        status_code=404,
    )


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    """
    A backend call failed after the client's retry budget.
    Network → 503, timeout → 504, bad/5xx backend answer → 502, else the backend status.
    """
    logger.log(
        logging.WARNING if exc.is_transient else logging.ERROR,
        "Backend call failed on %s %s: kind=%s status=%d",
        request.method,
        request.url.path,
        exc.kind.value,
        exc.status,
    )
    return _make_error_response(
        code=exc.code.upper(),
        message=exc.message,
        details=[{"kind": exc.kind.value, "failure": exc.failure.value}],
        status_code=_status_for(exc),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """
    Catch-all for unexpected errors.
    DEBUG=true  → includes exception type & message in details (dev only).
    DEBUG=false → generic message; full traceback logged server-side only.
    """
    logger.error(
        "Unhandled exception on %s %s",
        request.method,
        request.url.path,
        exc_info=True,
    )
    if settings.debug:
        details = [{"issue": f"{type(exc).__name__}: {exc}"}]
        message = "An unexpected error occurred (debug details included)"
    else:
        details = []
        message = "An unexpected error occurred"
    return _make_error_response(
        code="INTERNAL_ERROR",
        message=message,
        details=details,
        status_code=500,
    )


# ---------------------------------------------------------------------------
# Health endpoint (no auth required)
# ---------------------------------------------------------------------------
@app.get("/api/health", tags=["System"])
async def health_check(request: Request) -> dict:
    """Service health plus whether the backend REST API answers its liveness probe."""
    backend: dict[str, Any] = {"reachable": True}
    try:
        backend["status"] = await request.app.state.api_client.health_check()
    except ApiError as exc:
        backend = {"reachable": False, "status": exc.status, "error": exc.message}
    return {
        "status": "ok",
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "backend": backend,
        "sessions": len(request.app.state.store),
        "pending_sync": len(request.app.state.sync_queue),
    }


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
from taxhelp.services.routes import router as services_router
from taxhelp.wizard.routes import router as conversations_router

app.include_router(conversations_router)
app.include_router(services_router)
