"""
api/main.py -- FastAPI application entry point for FloraOps.

Exposes registration, sessions, staff management and the order workflow
over HTTP for the mobile and web clients.

Run with:      python main.py serve
               uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (stores, services, session purge task) and
shutdown (cancel purge task, dispose engines) symmetrically.

Error mapping: every core.errors.FloraOpsError carries its own status and
code; handlers below render all errors in one ErrorResponse envelope.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import OperationalError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse, OrderResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.orders import router as orders_router
from api.routes.v1.users import router as users_router
from auth.sessions import SessionManager
from auth.store import SqlCredentialStore
from core.config import get_settings
from core.errors import DuplicateOrder, FloraOpsError, Unavailable
from orders.service import OrderService
from orders.store import SqlOrderRepository

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("floraops.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval: int) -> None:
    """Delete expired sessions every `interval` seconds.

    Expiry is enforced on every validation regardless; this loop only keeps
    the sessions table from growing. The purge is a blocking store call, so
    it runs in a worker thread. A failed purge is logged and retried on the
    next tick rather than killing the task.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(app.state.session_manager.purge_expired_sessions)
        except OperationalError:
            logger.warning("Session purge failed: database unavailable")
        except Exception:
            logger.exception("Session purge failed")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.

    Startup order matters:
      1. Credential store -- SessionManager and OrderService both depend on it.
      2. Order repository and service.
      3. Purge task last -- references app.state.session_manager.
    """
    logger.info("FloraOps API starting up")
    app.state.credential_store = SqlCredentialStore(_settings.database_url)
    app.state.session_manager = SessionManager(app.state.credential_store)
    app.state.order_repository = SqlOrderRepository(_settings.database_url)
    app.state.order_service = OrderService(app.state.order_repository, app.state.credential_store)
    logger.info("Stores initialized")
    app.state.purge_task = asyncio.create_task(_purge_loop(app, _settings.session_purge_interval_seconds))

    yield

    app.state.purge_task.cancel()
    with suppress(asyncio.CancelledError):
        await app.state.purge_task
    app.state.order_repository.close()
    app.state.credential_store.close()
    logger.info("FloraOps API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="FloraOps API",
    description="Orders, staff, and delivery workflow for flower shops.",
    version=API_VERSION,
    lifespan=lifespan,
    # Schema browsing is a development aid only.
    docs_url="/docs" if _settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor / Chain of Responsibility. Every request passes through
# this coroutine before reaching any route handler. We capture wall-clock time
# before and after call_next so we can report latency on every response.
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
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(orders_router, prefix="/api/v1", tags=["Orders"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(FloraOpsError)
async def domain_error_handler(request: Request, exc: FloraOpsError) -> JSONResponse:
    """Render a domain error with the status and code it carries."""
    response = _error_response(exc.status_code, exc.code, exc.text, exc.detail)
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(DuplicateOrder)
async def duplicate_order_handler(request: Request, exc: DuplicateOrder) -> JSONResponse:
    """409 envelope plus the matching orders, so the client can confirm and retry with force."""
    body = ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.text, detail=exc.detail)).model_dump()
    body["duplicates"] = [OrderResponse.from_order(o).model_dump(mode="json") for o in exc.duplicates]
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(OperationalError)
async def storage_unavailable_handler(request: Request, exc: OperationalError) -> JSONResponse:
    """Lost connection or locked database: 503, never an auth failure."""
    logger.error("Storage unavailable on %s %s: %s", request.method, request.url.path, exc.orig)
    error = Unavailable()
    return _error_response(error.status_code, error.code, error.text)


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients exactly how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error_response(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    """Field rules enforced below the transport models (unknown or uncleareable fields)."""
    return _error_response(422, "validation_error", "Request validation failed.", str(exc))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return API liveness, version, and database reachability.

    503 with status "degraded" when the database cannot be reached.
    """
    try:
        request.app.state.credential_store.ping()
        database = "ok"
    except OperationalError:
        database = "unavailable"
    body = HealthResponse(
        status="ok" if database == "ok" else "degraded",
        version=API_VERSION,
        components={"database": database},
    )
    return JSONResponse(status_code=200 if database == "ok" else 503, content=body.model_dump())
