"""
api/main.py -- FastAPI application entry point for pcompass-auth.

Exposes sign-in, session revocation and Pro entitlement over HTTP for the web
client and the wrapped-mobile client.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- credentialed CORS for the allow-listed origins
  3. reject_foreign_origin -- 403 for browser requests from any other origin
  4. security_headers      -- frame, sniffing, referrer and HSTS headers
  5. limit_request_size    -- 413 above MAX_REQUEST_BYTES
  6. SlowAPIMiddleware     -- per-IP limits on the credential endpoints
  7. log_requests          -- one line per request

Lifespan builds every collaborator once and hangs it on app.state. Nothing in
auth/ or ratelimit/ reads configuration itself; secrets, clock and stores are
injected here.
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
from api.routes.v1.pro import router as pro_router
from auth.codec import FALLBACK_HEADERS
from auth.guard import AuthorizationGuard
from auth.revocation import SessionRevoker
from auth.store import UserStore
from auth.tokens import TokenIssuer, TokenVerifier
from core.clock import SystemClock
from core.config import get_settings
from ratelimit.limiter import RateLimiter
from ratelimit.store import UsageStore

__version__ = "0.3.0"

_settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.DEBUG if _settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("pcompass.api")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def wire_services(app: FastAPI, user_store: UserStore, usage_store: UsageStore, clock=None) -> None:
    """Build the verifier, guard, issuer, limiter and revoker on app.state.

    Shared by the real lifespan and the test lifespan so both wire the same
    object graph; only the stores and clock differ.
    """
    settings = get_settings()
    clock = clock or SystemClock()
    verifier = TokenVerifier(
        auth_secret=settings.auth_token_secret,
        pro_secret=settings.pro_token_secret,
        sessions=user_store,
        clock=clock,
        max_age_seconds=settings.token_max_age_seconds,
        max_skew_seconds=settings.token_max_skew_seconds,
    )
    app.state.settings = settings
    app.state.clock = clock
    app.state.user_store = user_store
    app.state.usage_store = usage_store
    app.state.issuer = TokenIssuer(settings.auth_token_secret, settings.pro_token_secret, clock=clock)
    app.state.verifier = verifier
    app.state.guard = AuthorizationGuard(verifier, licenses=user_store)
    app.state.rate_limiter = RateLimiter(
        usage_store,
        clock=clock,
        retention_seconds=settings.rate_limit_retention_seconds,
        prune_probability=settings.rate_limit_prune_probability,
    )
    app.state.revoker = SessionRevoker(user_store, usage_store)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Settings validation already ran at import, so a missing secret
    never gets this far in production.
    """
    logger.info("pcompass-auth starting up")
    settings = get_settings()
    user_store = UserStore(settings.database_url, settings.db_timeout_seconds)
    usage_store = UsageStore(settings.database_url, settings.db_timeout_seconds)
    wire_services(app, user_store, usage_store)
    logger.info("Stores initialized (%s)", user_store.engine.url.get_backend_name())

    yield

    app.state.rate_limiter.close(wait=False)
    usage_store.close()
    user_store.close()
    logger.info("pcompass-auth shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="pcompass-auth API",
    description="Token authentication, Pro entitlement and shared rate limiting.",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if _settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Starlette applies add_middleware() calls so that the LAST one added is the
# outermost. @app.middleware("http") functions are registered the same way.
# Registration below therefore runs innermost first.
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


app.add_middleware(SlowAPIMiddleware)
# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def limit_request_size(request: Request, call_next):
    """Reject bodies larger than MAX_REQUEST_BYTES before they are read."""
    declared = request.headers.get("content-length", "0")
    if declared.isdigit() and int(declared) > _settings.max_request_bytes:
        return _error_response(413, "payload_too_large", "Request too large.")
    return await call_next(request)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if _settings.secure_cookies:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


@app.middleware("http")
async def reject_foreign_origin(request: Request, call_next):
    """403 for any request that names an Origin outside the allow-list.

    CORSMiddleware only withholds the CORS headers; the request would still
    execute. Cookie-authenticated state changes must not run at all for a
    foreign origin. Requests without an Origin header (native clients,
    same-origin GETs) pass.
    """
    origin = request.headers.get("origin")
    if origin and origin not in _settings.allowed_origins:
        return _error_response(403, "origin_not_allowed", "Origin not allowed.")
    return await call_next(request)


app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", *FALLBACK_HEADERS],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(pro_router, prefix="/api/v1", tags=["Pro"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a slowapi limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", detail=str(exc.detail))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error_response(422, "validation_error", "Request validation failed.", detail=str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail={"code", "message"}. When
    detail is already a structured dict, use it directly as the error field.
    Headers on the exception (Retry-After) are carried over.
    """
    if isinstance(exc.detail, dict):
        response = JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    else:
        response = _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))
    for name, value in (exc.headers or {}).items():
        response.headers[name] = value
    return response


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit applied -- health checks from load balancers and monitoring
# systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, current version and a database probe."""
    try:
        database = "ok" if request.app.state.user_store.ping() else "error"
    except Exception as exc:
        logger.warning("Health check database probe failed (%s)", type(exc).__name__)
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=__version__,
        components={"app": "ok", "database": database},
    )
