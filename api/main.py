"""
api/main.py -- FastAPI application entry point for the accounts service.

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware       -- CORS headers for allowed browser origins, 429s included
  2. log_requests         -- method, path, status, latency, client for every request
  3. rate_limit_requests  -- fixed-window gate on /api/ paths (api/limiter.py)

Lifespan handles startup (store, services, startup session sweep, sweep
tasks) and shutdown (cancel tasks, stop the notifier, close the store)
symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import rate_limit_requests, rate_limited_response
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.account import router as account_router
from api.routes.auth import router as auth_router
from auth.service import AuthService
from auth.sessions import SessionManager
from auth.store import AccountStore
from auth.tokens import TokenIssuer
from core.config import Settings, get_settings
from core.errors import AccountError, RateLimitError, TransientStoreError
from core.notifier import Notifier
from core.ratelimit import FixedWindowRateLimiter

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("outr.api")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def init_services(
    app: FastAPI,
    settings: Settings,
    store: AccountStore,
    notifier: Notifier | None = None,
    limiter: FixedWindowRateLimiter | None = None,
) -> None:
    """Build the service graph on top of `store` and attach it to app.state.

    The lifespan calls this with production collaborators; tests call it with
    in-memory stores, mock notifiers and their own limiters.
    """
    tokens = TokenIssuer(settings.secret_key, ttl_seconds=settings.token_expire_seconds)
    sessions = SessionManager(store, ttl_seconds=settings.token_expire_seconds)
    app.state.store = store
    app.state.sessions = sessions
    app.state.notifier = notifier
    app.state.auth_service = AuthService(store, tokens, sessions, notifier)
    app.state.limiter = limiter or FixedWindowRateLimiter(
        max_per_window=settings.rate_limit_max_per_window,
        window_seconds=settings.rate_limit_window_seconds,
        cooldown_seconds=settings.rate_limit_cooldown_seconds,
    )


# ---------------------------------------------------------------------------
# Background sweep tasks
# ---------------------------------------------------------------------------


async def _sweep_buckets_loop(app: FastAPI, interval: float) -> None:
    """Evict stale rate limit buckets so abandoned clients do not pin memory.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval)
        app.state.limiter.sweep()


async def _sweep_sessions_loop(app: FastAPI, interval: float) -> None:
    """Delete expired sessions periodically.

    The DELETE runs in a worker thread so a slow store never stalls the event
    loop. Any failure is logged and the sweep retried on the next tick; only
    cancellation ends the task.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(app.state.sessions.sweep_expired)
        except Exception:
            logger.exception("Session sweep failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.

    Startup order matters:
      1. Store first -- every service depends on it.
      2. Services next -- token issuer, sessions, auth service, limiter.
      3. Startup sweep -- clear sessions that expired while we were down.
      4. Sweep tasks last -- they reference app.state.limiter and sessions.
    """
    settings = get_settings()
    logger.info("Accounts API starting up")
    store = AccountStore(settings.database_url, timeout=settings.store_timeout_seconds)
    notifier = Notifier(
        settings.webhook_url,
        limiter=FixedWindowRateLimiter(
            max_per_window=settings.rate_limit_max_per_window,
            window_seconds=settings.rate_limit_window_seconds,
            cooldown_seconds=settings.rate_limit_cooldown_seconds,
        ),
        timeout=settings.webhook_timeout_seconds,
    )
    init_services(app, settings, store, notifier)
    logger.info("Store initialized (notifier %s)", "enabled" if notifier.enabled else "disabled")

    removed = app.state.sessions.sweep_expired()
    logger.info("Startup session sweep removed %d expired sessions", removed)

    app.state.sweep_tasks = [
        asyncio.create_task(_sweep_buckets_loop(app, settings.rate_limit_sweep_seconds)),
        asyncio.create_task(_sweep_sessions_loop(app, settings.session_sweep_seconds)),
    ]

    yield

    # Shutdown
    for task in app.state.sweep_tasks:
        task.cancel()
    notifier.close()
    store.close()
    logger.info("Accounts API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="outr-accounts",
    description="Account registration, login, sessions, profiles and audit logging.",
    version="0.1.0",
    lifespan=lifespan,
)

# Middleware registrations wrap outward: the last one registered is the first
# to see the request. Logging wraps the gate so throttled (429) responses are
# logged, and CORS wraps both so a browser can read a 429 and its Retry-After.
app.middleware("http")(rate_limit_requests)


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


app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["Content-Type", "Authorization"],
    expose_headers=["Retry-After"],
    max_age=3600,
)


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api", tags=["Auth"])
app.include_router(account_router, prefix="/api", tags=["Account"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitError)
async def rate_limit_handler(request: Request, exc: RateLimitError) -> JSONResponse:
    return rate_limited_response(exc.retry_after_seconds, exc.message)


@app.exception_handler(AccountError)
async def account_error_handler(request: Request, exc: AccountError) -> JSONResponse:
    """Map service-layer errors to their HTTP status and error code.

    TransientStoreError is a 500 whose cause is logged; the client only sees
    the generic store_unavailable code.
    """
    if isinstance(exc, TransientStoreError):
        logger.error("Store error on %s %s: %r", request.method, request.url.path, exc.__cause__ or exc)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=exc.error_code, message=exc.message, detail=exc.detail or None)
        ).model_dump(),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with a structured error when the body or query params fail validation."""
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=[{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()],
            )
        ).model_dump(),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is logged only, never written to the response body.
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
# Outside /api/ so it is never rate limited -- health checks from load
# balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/health", tags=["Health"])
async def health() -> HealthResponse:
    """Return service liveness."""
    return HealthResponse()
