"""
api/main.py -- FastAPI application entry point for SessionKeeper.

Exposes the session lifecycle (login, refresh rotation, logout, password
recovery, administrative invalidation) over HTTP for browser clients, the
edge relay and collaborating services.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from auth.ratelimit

Lifespan handles startup (credential store, services, purge task) and
shutdown (cancel purge task, close DB connection) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.errors import auth_error_response
from auth.ratelimit import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.audit import router as audit_router
from api.routes.v1.auth import router as auth_router
from auth.audit import AuditLog
from auth.errors import AuthError, RateLimited
from auth.mailer import Mailer
from auth.recovery import PasswordRecovery
from auth.sessions import SessionService
from auth.store import AuthStore
from auth.tokens import TokenIssuer
from core.config import Settings, get_settings

VERSION = "0.3.0"

_PURGE_INTERVAL_SECONDS = 6 * 60 * 60

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sessionkeeper.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def build_services(app: FastAPI, store: AuthStore, settings: Settings) -> None:
    """Attach the store and every service built on it to app.state.

    Called from lifespan startup; tests call it directly with an isolated
    in-memory store.
    """
    issuer = TokenIssuer.from_settings(settings)
    audit = AuditLog(store)
    app.state.settings = settings
    app.state.auth_store = store
    app.state.token_issuer = issuer
    app.state.audit = audit
    app.state.session_service = SessionService(store, issuer, audit, settings)
    app.state.recovery = PasswordRecovery(
        store,
        Mailer.from_settings(settings),
        audit,
        expire_seconds=settings.password_reset_expire_seconds,
    )


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete long-dead refresh records and reset grants every 6 hours.

    Records are kept for refresh_token_retention_days after they expire or are
    revoked, so reuse detection still recognizes recently rotated tokens.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    retention = timedelta(days=app.state.settings.refresh_token_retention_days)
    while True:
        await asyncio.sleep(_PURGE_INTERVAL_SECONDS)
        try:
            purged = app.state.auth_store.purge_expired(datetime.now(timezone.utc) - retention)
        except Exception:
            logger.exception("Purge of expired session records failed")
            continue
        logger.info("Purged %d expired session records", purged)


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The store must exist before the purge task references it.
    """
    logger.info("SessionKeeper API starting up")
    store = AuthStore(settings.database_url)
    build_services(app, store, settings)
    logger.info(
        "Auth initialized (signing_keys=%d, access_ttl=%ds)",
        len(app.state.token_issuer.keyring.keys),
        settings.access_token_expire_seconds,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.auth_store.close()
    logger.info("SessionKeeper API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SessionKeeper API",
    description="Password login, rotating refresh sessions, lockout and audit.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    # Refresh cookies must cross origins for browser clients on another port.
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


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
app.include_router(audit_router, prefix="/api/v1", tags=["Audit"])
# The edge relay router is mounted by asgi.py, not here.
# api/ and web/ are independent layers -- only the top-level asgi.py imports both.


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render an expected authentication outcome. Never a 500."""
    return auth_error_response(exc)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 rate_limited when a slowapi limit is exceeded.

    Retry-After is the window length of the exceeded limit.
    """
    try:
        retry_after = int(exc.limit.limit.get_expiry())
    except AttributeError:
        retry_after = 60
    logger.warning("Rate limit exceeded on %s %s: %s", request.method, request.url.path, exc.detail)
    return auth_error_response(RateLimited(retry_after=retry_after))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str([{"loc": e.get("loc"), "msg": e.get("msg")} for e in exc.errors()]),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it -- str(dict) produces a Python repr,
    not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. Exempt from rate limiting --
# health checks from load balancers must not be throttled.
# ---------------------------------------------------------------------------


@limiter.exempt
@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return API liveness, version and a credential-store probe."""
    store_ok = request.app.state.auth_store.ping()
    body = HealthResponse(
        status="healthy" if store_ok else "degraded",
        version=VERSION,
        components={"credential_store": "ok" if store_ok else "unavailable"},
    )
    return JSONResponse(status_code=200 if store_ok else 503, content=body.model_dump())
