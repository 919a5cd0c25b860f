"""
api/main.py -- FastAPI application entry point for Keyward.

Run with:      python main.py serve
               uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the store and every service once and hangs them on
app.state; routes reach them through request.app.state. Shutdown cancels the
purge task and disposes the engine.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import OperationalError

from admin.service import AdminService
from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.external import router as external_router
from auth.audit import LoggingAuditSink
from auth.dependencies import get_current_account
from auth.errors import ServiceError
from auth.external import ExternalAuthBroker
from auth.models import Account
from auth.notifications import LoggingEmailSender
from auth.providers import build_providers
from auth.session import SessionService
from auth.store import AccountStore
from auth.tokens import TokenIssuer
from auth.twofactor import TwoFactorService
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
logger = logging.getLogger("keyward.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------

_PURGE_INTERVAL_SECONDS = 60 * 60


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired tokens, states, and challenges every hour.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine. A failed purge is logged and
    retried on the next tick.
    """
    while True:
        await asyncio.sleep(_PURGE_INTERVAL_SECONDS)
        try:
            removed = await asyncio.to_thread(app.state.store.purge_expired)
        except OperationalError:
            logger.exception("Purge of expired records failed")
            continue
        logger.info("Purged expired records: %s", removed)


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def build_services(app: FastAPI, store: AccountStore, settings: Settings) -> None:
    """Construct every service over `store` and attach them to app.state.

    Shared by the real lifespan and the test lifespan so both wire the same
    object graph.
    """
    audit_sink = getattr(app.state, "audit_sink", None) or LoggingAuditSink()
    email_sender = getattr(app.state, "email_sender", None) or LoggingEmailSender()
    providers = getattr(app.state, "providers", None)
    if providers is None:
        providers = build_providers(settings)

    issuer = TokenIssuer(store, settings)
    two_factor = TwoFactorService(store, settings, audit_sink)
    sessions = SessionService(store, issuer, two_factor, settings, audit_sink, email_sender)

    app.state.settings = settings
    app.state.store = store
    app.state.audit_sink = audit_sink
    app.state.email_sender = email_sender
    app.state.providers = providers
    app.state.issuer = issuer
    app.state.two_factor = two_factor
    app.state.sessions = sessions
    app.state.broker = ExternalAuthBroker(store, issuer, providers, settings, audit_sink)
    app.state.admin = AdminService(store, issuer, sessions, audit_sink)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the store, seed system roles, wire services, start the purge task."""
    logger.info("Keyward API starting up")
    settings = get_settings()
    store = AccountStore(db_url=settings.database_url, timeout=settings.store_timeout_seconds)
    store.ensure_system_roles()
    build_services(app, store, settings)
    logger.info("Auth initialized (providers=%s)", sorted(app.state.providers) or "none")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.store.close()
    logger.info("Keyward API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Keyward API",
    description="Account, session, and role service: login with 2FA, refresh rotation, external sign-in.",
    version=VERSION,
    lifespan=lifespan,
    # Auth-protected equivalents are registered below.
    docs_url=None,
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
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost", "testserver"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
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
app.include_router(external_router, prefix="/api/v1", tags=["External Sign-in"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(account: Account = Depends(get_current_account)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Keyward API")


@app.get("/redoc", include_in_schema=False)
async def redoc(account: Account = Depends(get_current_account)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="Keyward API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    response = JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(
            exclude_none=True
        ),
    )
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Render a domain error raised by any service.

    The status code comes from the exception class; the body carries only the
    stable code and the user-facing message.
    """
    response = JSONResponse(status_code=exc.status_code, content=exc.to_dict())
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(OperationalError)
async def database_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
    """Busy or unreachable database. Fail closed with a generic 503."""
    logger.error("Database unavailable on %s %s: %s", request.method, request.url.path, exc)
    return _error(503, "service_unavailable", "The service is temporarily unavailable. Please retry.")


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
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
    """Return a structured error for FastAPI/Starlette HTTP exceptions (404 routes, 405 methods)."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is logged, never sent to the client.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router). No rate limit applied --
# health checks from load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness plus a database round trip."""
    try:
        database = "ok" if request.app.state.store.ping() else "error"
    except OperationalError:
        logger.warning("Health check: database ping failed")
        database = "error"
    status = "healthy" if database == "ok" else "degraded"
    return HealthResponse(status=status, version=VERSION, components={"app": "ok", "database": database})
