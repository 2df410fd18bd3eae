"""
api/main.py -- FastAPI application entry point for Inkwell.

Run with:      uvicorn api.main:app --reload
               python main.py serve

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins;
                              exposes x-access-token so browser clients can
                              read a silently rotated access token
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds every process-wide handle (stores, Redis client, token
authority, services) before the first request and tears them down
symmetrically on shutdown. Nothing is a module-level singleton; route
handlers reach the handles through request.app.state.
"""

from __future__ import annotations

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

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.posts import router as posts_router
from api.routes.v1.users import router as users_router
from auth.dependencies import ROTATED_TOKEN_HEADER, RequestAuthenticator
from auth.recovery import LoggingNotifier, Notifier, PasswordRecovery
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import TokenAuthority
from blog.service import PostService, UserDirectory
from blog.store import PostStore
from cache.store import RedisCache, ReadThroughCache
from core.config import Settings, get_settings
from core.errors import CacheBackendUnavailable, InkwellError

__version__ = "0.3.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("inkwell.api")


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def wire_services(
    app: FastAPI,
    settings: Settings,
    user_store: UserStore,
    post_store: PostStore,
    backend: RedisCache,
    notifier: Notifier | None = None,
) -> None:
    """Attach the core components to app.state.

    Shared by the real lifespan and the test lifespan so both build the
    exact same object graph; only the stores, cache backend and reset-code
    notifier differ.
    """
    authority = TokenAuthority.from_settings(settings)
    sessions = SessionManager(authority, user_store)
    cache = ReadThroughCache(backend, default_ttl=settings.cache_default_ttl)
    app.state.user_store = user_store
    app.state.post_store = post_store
    app.state.cache_backend = backend
    app.state.cache = cache
    app.state.token_authority = authority
    app.state.sessions = sessions
    app.state.recovery = PasswordRecovery(
        authority,
        user_store,
        sessions,
        notifier or LoggingNotifier(reveal_codes=settings.debug),
        code_ttl=settings.reset_code_expire_seconds,
    )
    app.state.authenticator = RequestAuthenticator(authority, user_store)
    app.state.posts = PostService(post_store, cache, top_limit=settings.top_posts_limit)
    app.state.users = UserDirectory(user_store, cache)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Stores first -- tables must exist before any request touches them.
      2. Redis second -- an unreachable Redis is logged, not fatal; the cache
         layer is fail-open and reads fall through to the stores.
      3. Services last -- they hold references to both.
    """
    settings = get_settings()
    logger.info("Inkwell API starting up")
    user_store = UserStore(settings.auth_db_url)
    post_store = PostStore(settings.posts_db_url)
    await user_store.init()
    await post_store.init()
    logger.info("Stores initialized")

    backend = RedisCache.from_url(settings.redis_url, socket_timeout=settings.redis_socket_timeout)
    try:
        await backend.ping()
        logger.info("Redis cache connected")
    except CacheBackendUnavailable as exc:
        logger.warning("Redis unavailable (%s) -- serving from the store until it recovers", exc.detail)

    wire_services(app, settings, user_store, post_store, backend)

    yield

    await backend.close()
    await post_store.close()
    await user_store.close()
    logger.info("Inkwell API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Inkwell API",
    description="Blog API with rotating refresh sessions and a Redis cache-aside read layer.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost", "testserver"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    expose_headers=[ROTATED_TOKEN_HEADER],
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
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(posts_router, prefix="/api/v1", tags=["Posts"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(request: Request, status_code: int, error: ErrorDetail | dict) -> JSONResponse:
    """Build the error envelope, keeping a rotated access token if one was minted.

    A request can rotate successfully and still fail later (404, 409, ...).
    The client must receive the new token either way.
    """
    content = {"error": error} if isinstance(error, dict) else ErrorResponse(error=error).model_dump()
    response = JSONResponse(status_code=status_code, content=content)
    rotated = getattr(request.state, "rotated_access_token", None)
    if rotated:
        response.headers[ROTATED_TOKEN_HEADER] = rotated
    return response


@app.exception_handler(InkwellError)
async def domain_error_handler(request: Request, exc: InkwellError) -> JSONResponse:
    """Map the domain taxonomy (core/errors.py) onto HTTP status codes."""
    if exc.status_code >= 500:
        logger.error("Domain error on %s %s: %s", request.method, request.url.path, exc.code)
    return _error_response(
        request,
        exc.status_code,
        ErrorDetail(code=exc.code, message=exc.message, detail=exc.detail if exc.status_code < 500 else None),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(
        request,
        429,
        ErrorDetail(code="rate_limited", message="Too many requests.", detail=str(exc)),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error_response(
        request,
        422,
        ErrorDetail(code="validation_error", message="Request validation failed.", detail=str(exc.errors())),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a {"code", "message"} dict as
    detail; use it directly rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return _error_response(request, exc.status_code, exc.detail)
    return _error_response(request, exc.status_code, ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail)))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is logged only, never written to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(
        request,
        500,
        ErrorDetail(code="internal_error", message="An unexpected error occurred."),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return liveness plus the state of the database and the cache.

    A down cache is reported as "degraded" but the service stays healthy:
    the read path is fail-open.
    """
    components = {"app": "ok"}
    try:
        await request.app.state.user_store.ping()
        await request.app.state.post_store.ping()
        components["database"] = "ok"
    except Exception:
        logger.exception("Health check: database unreachable")
        components["database"] = "error"
    try:
        await request.app.state.cache_backend.ping()
        components["cache"] = "ok"
    except CacheBackendUnavailable:
        components["cache"] = "degraded"
    status = "healthy" if components["database"] == "ok" else "unhealthy"
    return HealthResponse(status=status, version=__version__, components=components)
