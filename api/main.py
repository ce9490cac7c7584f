"""
api/main.py -- FastAPI application entry point for AuditGate.

Exposes auditor access token management over HTTP for staff, and provides the
auditor_access() dependency (auth/dependencies.py) that downstream resource
routes mount to admit external auditors.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (token store, audit log, sweep task) and shutdown
(cancel sweep task, close DB connections) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from access.errors import (
    AlreadyRevokedError,
    StoreUnavailableError,
    TokenNotFoundError,
    TokenValidationError,
)
from access.store import TokenStore
from access.sweeper import sweep_expired
from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.tokens import router as tokens_router
from audit.store import AuditLogStore, AuditSink
from auth.dependencies import get_current_staff
from auth.models import StaffUser
from core.config import get_settings

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("auditgate.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _run_sweep(app: FastAPI) -> None:
    """Run one sweep pass in a worker thread. Failures are logged, never raised."""
    try:
        await asyncio.to_thread(sweep_expired, app.state.token_store, app.state.audit_sink)
    except StoreUnavailableError:
        logger.warning("Scheduled expiry sweep skipped: token store unavailable")
    except Exception:
        logger.exception("Scheduled expiry sweep failed")


async def _sweep_loop(app: FastAPI, interval: int) -> None:
    """Deactivate expired tokens every `interval` seconds.

    Runs as a background asyncio task started in lifespan startup. The sweep
    itself is a blocking DB call, so it runs in a worker thread. A failed
    pass is logged and retried on the next tick. Each pass is shielded and
    kept on app.state.sweep_pass, so cancelling the loop stops the ticking
    but leaves a pass already in flight for _stop_sweep to await.
    """
    while True:
        await asyncio.sleep(interval)
        app.state.sweep_pass = asyncio.ensure_future(_run_sweep(app))
        await asyncio.shield(app.state.sweep_pass)


async def _stop_sweep(app: FastAPI) -> None:
    """Cancel the sweep loop and wait for any in-flight pass to finish."""
    task = getattr(app.state, "sweep_task", None)
    if task is None:
        return
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task
    in_flight = getattr(app.state, "sweep_pass", None)
    if in_flight is not None:
        await in_flight


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The sweep task references both stores, so it starts last.
    """
    logger.info("AuditGate API starting up")
    if _settings.database_url:
        app.state.token_store = TokenStore(db_url=_settings.database_url)
        audit_store = AuditLogStore(db_url=_settings.database_url)
    else:
        app.state.token_store = TokenStore()
        audit_store = AuditLogStore()
    app.state.audit_store = audit_store
    app.state.audit_sink = AuditSink(audit_store)
    logger.info("Token store and audit log initialized")

    app.state.sweep_task = None
    app.state.sweep_pass = None
    if _settings.sweep_interval_seconds > 0:
        app.state.sweep_task = asyncio.create_task(_sweep_loop(app, _settings.sweep_interval_seconds))
        logger.info("Expiry sweep scheduled every %ds", _settings.sweep_interval_seconds)
    else:
        logger.info("Scheduled expiry sweep disabled (SWEEP_INTERVAL_SECONDS=0)")

    yield

    await _stop_sweep(app)
    app.state.token_store.close()
    app.state.audit_store.close()
    logger.info("AuditGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AuditGate API",
    description="Time-boxed, scope-limited, read-only access tokens for external auditors.",
    version=API_VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced below by staff-only equivalents.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Method, path, status, latency and client for every request. Headers are
# never logged: both credential schemes travel in Authorization.
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

app.include_router(tokens_router, prefix="/api/v1", tags=["Auditor Tokens"])


# ---------------------------------------------------------------------------
# Staff-only API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: StaffUser = Depends(get_current_staff)):
    """Swagger UI -- requires a staff JWT."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="AuditGate API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: StaffUser = Depends(get_current_staff)):
    """ReDoc UI -- requires a staff JWT."""
    return get_redoc_html(openapi_url="/openapi.json", title="AuditGate API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(TokenValidationError)
async def token_validation_handler(request: Request, exc: TokenValidationError) -> JSONResponse:
    """Issuance or revocation input rejected by the domain layer -> 400."""
    return _error(400, "validation_error", str(exc))


@app.exception_handler(TokenNotFoundError)
async def token_not_found_handler(request: Request, exc: TokenNotFoundError) -> JSONResponse:
    return _error(404, "not_found", str(exc))


@app.exception_handler(AlreadyRevokedError)
async def already_revoked_handler(request: Request, exc: AlreadyRevokedError) -> JSONResponse:
    return _error(409, "already_revoked", str(exc))


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    """Transient database outage -> 503 with Retry-After so clients back off and retry."""
    response = _error(503, "store_unavailable", "Token store temporarily unavailable.")
    response.headers["Retry-After"] = "5"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    slowapi stores the wait time on the exception as exc.retry_after (int seconds).
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Routes and dependencies raise HTTPException with a dict detail
    ({"code": ..., "message": ...}); that dict becomes the error field as-is.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the server log only. The client receives a generic
    message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No auth and no rate limit: load balancers and monitors must always reach it.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and token store reachability."""
    db_ok = request.app.state.token_store.ping()
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=API_VERSION,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
