"""
api/main.py -- FastAPI application entry point for the auth service.

Run with:  uvicorn api.main:app --reload
           python main.py serve

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the object graph once (settings -> engine -> stores -> auth
engine -> account service), seeds the bootstrap admin, starts the expired
session purge task, and tears everything down symmetrically on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.accounts import router as accounts_router
from api.routes.v1.auth import router as auth_router
from auth.accounts import AccountService
from auth.engine import AuthEngine, LastSeenUpdater
from auth.errors import (
    AccountNotFound,
    AuthError,
    EmailAlreadyExists,
    InvalidAccountData,
    InvalidCredentials,
    InvalidRefreshToken,
)
from auth.sessions import SessionStore
from auth.store import AccountStore, create_db_engine
from core.config import Settings, get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authsvc.api")

# ---------------------------------------------------------------------------
# Object graph
# ---------------------------------------------------------------------------


def build_services(app: FastAPI, settings: Settings) -> None:
    """Wire stores, engine, and services onto app.state.

    Split out of lifespan so tests and the CLI can build the same graph
    against a different Settings instance.
    """
    db_engine = create_db_engine(settings.database_url, timeout=settings.db_timeout_seconds)
    account_store = AccountStore(db_engine)
    session_store = SessionStore(db_engine)
    updater = LastSeenUpdater(
        account_store,
        attempts=settings.last_seen_attempts,
        backoff=settings.last_seen_backoff_seconds,
    )
    auth_engine = AuthEngine(account_store, session_store, settings, last_seen=updater)

    app.state.settings = settings
    app.state.db_engine = db_engine
    app.state.account_store = account_store
    app.state.session_store = session_store
    app.state.auth_engine = auth_engine
    app.state.account_service = AccountService(account_store, auth_engine)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired refresh sessions every SESSION_PURGE_INTERVAL_SECONDS.

    Refresh already deletes an expired row when it is presented; this loop
    collects rows whose tokens are never presented again. CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep.
    """
    interval = app.state.settings.session_purge_interval_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(app.state.session_store.delete_expired)
        except AuthError as exc:
            logger.warning("Session purge failed: %s", exc)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.
    """
    logger.info("Auth service starting up")
    settings = get_settings()
    build_services(app, settings)
    if settings.admin_email and settings.admin_password:
        admin = app.state.account_service.ensure_admin(settings.admin_email, settings.admin_password)
        if admin is not None:
            logger.info("Bootstrap admin account %d created", admin.id)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.db_engine.dispose()
    logger.info("Auth service shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Auth Service API",
    description="Account registration, login, and rotating refresh sessions.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(accounts_router, prefix="/api/v1", tags=["Accounts"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error leaves the API as {"error": {"code", "message", "detail"?}}.
# ---------------------------------------------------------------------------

_AUTH_ERROR_STATUS: dict[type[AuthError], int] = {
    InvalidCredentials: 401,
    InvalidRefreshToken: 401,
    AccountNotFound: 404,
    EmailAlreadyExists: 409,
    InvalidAccountData: 422,
}

_INTERNAL_ERROR = "An unexpected error occurred."


def _error_response(
    status_code: int,
    code: str,
    message: str,
    detail: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map domain errors to HTTP.

    Anything not in _AUTH_ERROR_STATUS (StorageUnavailable and friends) is an
    internal error: the cause is logged, the client gets a generic 500.
    """
    status = _AUTH_ERROR_STATUS.get(type(exc))
    if status is None:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
        return _error_response(500, "internal_error", _INTERNAL_ERROR)
    # policy violations explain themselves; the 401s keep their fixed wording
    message = str(exc) if isinstance(exc, InvalidAccountData) else exc.message
    return _error_response(status, exc.code, message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning("Rate limit hit on %s from %s", request.url.path, request.client.host if request.client else "?")
    return _error_response(
        429,
        "rate_limited",
        "Too many requests.",
        detail=str(exc),
        headers={"Retry-After": str(int(getattr(exc, "retry_after", 60)))},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_response(422, "validation_error", "Request validation failed.", detail=str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Render HTTPException in the error envelope.

    Routes and dependencies raise it with a {"code", "message"} dict detail,
    which becomes the error field as is.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail), headers=exc.headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort. The traceback goes to the log, never to the response body."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", _INTERNAL_ERROR)


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# No rate limit -- health checks must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version, and a database round-trip check."""
    database = "ok"
    try:
        with request.app.state.db_engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check database query failed")
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
