"""
api/main.py -- FastAPI application entry point for User Admin.

Run with:  uvicorn asgi:app --reload
           python main.py serve

Middleware stack (outermost to innermost, i.e. the order a request meets them):
  1. log_requests          -- method, path, status, latency, client
  2. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  3. session_middleware    -- resolves or starts the server-side session
  4. security_headers      -- nosniff, frame denial, CSP, referrer policy
  5. csrf_token_middleware -- exposes the session's CSRF token to templates

Starlette wraps each add_middleware()/@app.middleware registration around
the previous ones, so they are registered below in reverse (innermost first).

Lifespan opens the user store and refuses to start if it is unreachable,
wires the session manager, CSRF guard and login throttle into app.state,
and runs the purge task for expired sessions and throttle windows.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from auth.csrf import CsrfGuard
from auth.dependencies import try_get_session
from auth.sessions import SessionManager, session_store_from_url
from auth.store import UserStore
from auth.throttle import LoginThrottle, throttle_store_from_uri
from auth.tokens import clear_session_cookie, set_session_cookie
from core.config import Settings, get_settings
from core.errors import ErrorCode, StoreUnavailableError

APP_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("useradmin.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def attach_services(
    app: FastAPI,
    settings: Settings,
    user_store: UserStore,
    clock: Callable[[], float] = time.time,
) -> None:
    """Build the auth services from settings and hang them on app.state.

    Everything request handlers need is injected here rather than living in
    module globals, so tests can pass their own stores and clock.
    """
    app.state.user_store = user_store
    app.state.sessions = SessionManager(
        session_store_from_url(settings.session_store_url),
        idle_timeout=settings.session_idle_timeout_seconds,
        absolute_timeout=settings.session_absolute_timeout_seconds,
        clock=clock,
        cookie_name=settings.session_cookie_name,
    )
    app.state.csrf = CsrfGuard(app.state.sessions, settings.secret_key)
    app.state.login_throttle = LoginThrottle.from_rate_limit(
        settings.login_rate_limit,
        store=throttle_store_from_uri(settings.throttle_storage_uri),
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval: int) -> None:
    """Drop expired sessions and closed throttle windows every `interval` seconds.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            sessions_purged = await run_in_threadpool(app.state.sessions.purge_expired)
        except StoreUnavailableError:
            logger.warning("Session purge skipped: store unavailable")
            continue
        windows_purged = app.state.login_throttle.purge_expired()
        if sessions_purged or windows_purged:
            logger.info("Purged %d expired sessions, %d throttle windows", sessions_purged, windows_purged)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    An unreachable user store raises out of startup: the server never
    begins accepting requests it could only half serve.
    """
    logger.info("User Admin starting up")
    try:
        user_store = UserStore(_settings.database_url) if _settings.database_url else UserStore()
        user_store.ping()
    except StoreUnavailableError:
        logger.critical("User store unavailable at startup -- refusing to serve traffic")
        raise
    attach_services(app, _settings, user_store)
    logger.info(
        "Auth initialized (login limit %s, session idle timeout %ds)",
        _settings.login_rate_limit,
        _settings.session_idle_timeout_seconds,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app, _settings.purge_interval_seconds))

    yield

    app.state.purge_task.cancel()
    app.state.user_store.close()
    session_store = app.state.sessions.store
    if hasattr(session_store, "close"):
        session_store.close()
    logger.info("User Admin shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="User Admin",
    description="Session-based user management with CSRF protection and login throttling.",
    version=APP_VERSION,
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack (registered innermost first -- see module docstring)
# ---------------------------------------------------------------------------

# Requests that never need a session: load balancer and monitoring probes.
_SESSIONLESS_PATHS = {"/api/v1/health"}

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "same-origin",
    "Content-Security-Policy": "default-src 'self'; form-action 'self'; frame-ancestors 'none'; base-uri 'self'",
}


def _store_unavailable_response() -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content=ErrorResponse(
            error=ErrorDetail(code=ErrorCode.store_unavailable.value, message="Service temporarily unavailable.")
        ).model_dump(),
    )


@app.middleware("http")
async def csrf_token_middleware(request: Request, call_next):
    """Make the session's CSRF token available to every rendered page."""
    session = try_get_session(request)
    if session is not None:
        try:
            request.state.csrf_token = await run_in_threadpool(request.app.state.csrf.issue_token, session)
        except StoreUnavailableError:
            logger.error("Session store unavailable while issuing CSRF token")
            return _store_unavailable_response()
    return await call_next(request)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


@app.middleware("http")
async def session_middleware(request: Request, call_next):
    """Resolve the session before routing; persist it and set the cookie after.

    Unknown or expired cookies silently produce a fresh session. Store
    failures surface as 503 because exception handlers do not see errors
    raised in middleware.
    """
    if request.url.path in _SESSIONLESS_PATHS:
        return await call_next(request)

    sessions: SessionManager = request.app.state.sessions
    try:
        session = await run_in_threadpool(sessions.start_or_resume, request)
    except StoreUnavailableError:
        logger.error("Session store unavailable on %s %s", request.method, request.url.path)
        return _store_unavailable_response()
    request.state.session = session

    response = await call_next(request)

    if session.destroyed:
        clear_session_cookie(response)
        return response
    try:
        await run_in_threadpool(sessions.persist, session)
    except StoreUnavailableError:
        logger.error("Session store unavailable while saving session")
        return _store_unavailable_response()
    if session.is_new:
        set_session_cookie(response, session.id)
    return response


app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)


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
# Exception handlers
#
# JSON envelope for API-style failures. The HTML handler for
# StoreUnavailableError is registered by asgi.py, next to the web router.
# ---------------------------------------------------------------------------


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when path or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code=ErrorCode.validation_failed.value,
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    code = ErrorCode.not_found.value if exc.status_code == 404 else f"http_{exc.status_code}"
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=str(exc.detail))).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(code="internal_error", message="An unexpected error occurred.")
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Report liveness and whether the user store answers."""
    components = {"app": "ok"}
    try:
        request.app.state.user_store.ping()
        components["database"] = "ok"
    except StoreUnavailableError:
        components["database"] = "error"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=APP_VERSION, components=components)
