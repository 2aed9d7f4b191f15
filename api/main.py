"""
api/main.py -- FastAPI application entry point for tokengate.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the auth core once per process from Settings.auth_config()
(codec, issuer, stores, refresh strategy, session service, authenticator),
publishes it on app.state, and starts the refresh-token purge task. Shutdown
cancels the task and disposes of the stores symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from datetime import timedelta

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
from auth.dependencies import BearerAuthenticator
from auth.errors import AuthError, AuthErrorKind, StoreUnavailable
from auth.sessions import SessionService, SignedRefreshStrategy, StoreRefreshStrategy
from auth.store import RefreshTokenStore, UserStore, build_engine
from auth.tokens import TokenCodec, TokenIssuer
from core.config import Settings, get_settings

VERSION = "0.3.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tokengate.api")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Auth core wiring
# ---------------------------------------------------------------------------


def build_auth_state(app: FastAPI, settings: Settings) -> None:
    """Construct the auth core from settings and publish it on app.state.

    Exactly one refresh strategy is wired per process. With the "signed"
    strategy no refresh state is persisted, so app.state.token_store is None.
    """
    config = settings.auth_config()
    codec = TokenCodec(config)
    issuer = TokenIssuer(codec)
    engine = build_engine(settings.database_url, settings.store_timeout_seconds)
    user_store = UserStore(engine=engine)
    token_store: RefreshTokenStore | None = None
    if settings.refresh_strategy == "store":
        token_store = RefreshTokenStore(engine=engine, refresh_ttl=config.refresh_ttl)
        strategy = StoreRefreshStrategy(token_store)
    else:
        strategy = SignedRefreshStrategy(issuer)

    app.state.engine = engine
    app.state.auth_config = config
    app.state.codec = codec
    app.state.issuer = issuer
    app.state.user_store = user_store
    app.state.token_store = token_store
    app.state.authenticator = BearerAuthenticator(codec)
    app.state.session_service = SessionService(
        issuer,
        strategy,
        user_store,
        rotate_refresh_tokens=settings.rotate_refresh_tokens,
        max_login_attempts=settings.max_login_attempts,
        lockout=timedelta(seconds=settings.lockout_seconds),
    )


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval_seconds: int) -> None:
    """Delete expired refresh-token rows every interval_seconds.

    Expired rows are already excluded from every validity lookup; this only
    reclaims space. A failed sweep is logged and retried next interval.
    CancelledError from task.cancel() during shutdown unwinds the loop.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(app.state.token_store.purge_expired)
        except StoreUnavailable as exc:
            logger.warning("Refresh token purge skipped: %s", exc.detail)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the auth core on startup; tear it down on shutdown."""
    logger.info("tokengate API starting up")
    build_auth_state(app, _settings)
    logger.info(
        "Auth initialized (algorithm=%s, refresh_strategy=%s, rotation=%s)",
        app.state.auth_config.algorithm,
        _settings.refresh_strategy,
        _settings.rotate_refresh_tokens,
    )
    app.state.purge_task = None
    if app.state.token_store is not None:
        app.state.purge_task = asyncio.create_task(_purge_loop(app, _settings.purge_interval_seconds))

    yield

    if app.state.purge_task is not None:
        app.state.purge_task.cancel()
        with suppress(asyncio.CancelledError):
            await app.state.purge_task
    app.state.engine.dispose()
    logger.info("tokengate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="tokengate API",
    description="Access/refresh token issuance, verification, role gating and session revocation.",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", _settings.auth_header_name],
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


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map an AuthError onto 401 / 403 / 503 / 500.

    The body carries the kind's public code only; exc.detail can contain
    library text and stays in the log.
    """
    kind = exc.kind
    if kind is AuthErrorKind.SECRET_MISCONFIGURED:
        logger.error("Signing secret misconfigured: %s", exc.detail)
    response = JSONResponse(
        status_code=kind.status_code,
        content=ErrorResponse(error=ErrorDetail(code=kind.public_code, message=kind.public_message)).model_dump(
            exclude_none=True
        ),
    )
    if kind.status_code == 401:
        scheme = request.app.state.auth_config.scheme
        if kind is AuthErrorKind.EXPIRED_TOKEN:
            response.headers["WWW-Authenticate"] = f'{scheme} error="invalid_token", error_description="expired"'
        else:
            response.headers["WWW-Authenticate"] = scheme
    elif kind is AuthErrorKind.STORE_UNAVAILABLE:
        response.headers["Retry-After"] = "5"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(code="rate_limited", message="Too many requests.", detail=str(exc))
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict it is used directly as the error
    field; str(dict) would produce a Python repr, not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail))).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never into the response body.
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
#
# Defined here (not in a router) so it is always reachable. No rate limit:
# load balancer checks must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    database = "ok" if request.app.state.user_store.ping() else "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
