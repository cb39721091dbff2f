"""
api/main.py -- FastAPI application entry point for Forge.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost; Starlette wraps the last one added
around the rest):
  1. log_requests       -- one log line per request with latency
  2. SessionMiddleware  -- signed cookie holding the OAuth state between
                           the provider redirect and the callback
  3. CORSMiddleware     -- adds CORS headers for allowed browser origins

Rate limiting is not middleware: each router carries the IP policy as a
dependency and protected routes add the role-derived policy through
require_roles(), so a request is counted only against the policies of the
route it actually hits.

Lifespan builds every service from Settings and stores it on app.state:
  user_store  -- IdentityStore
  tokens      -- TokenService
  limiter     -- RateLimiter
  oauth       -- authlib registry
  reconciler  -- ReconciliationEngine
Startup fails if the default role does not exist: registration could not
assign a role, and a roleless user is refused everywhere.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import RateLimiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.protected import router as protected_router
from api.routes.v1.roles import router as roles_router
from api.routes.v1.users import router as users_router
from auth.oauth import build_oauth_registry
from auth.reconcile import ReconciliationEngine
from auth.store import IdentityStore
from auth.tokens import TokenService
from core.config import get_settings
from core.errors import RateLimitError, ServiceError

API_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("forge.api")

settings = get_settings()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the services on startup and release the store on shutdown."""
    cfg = get_settings()
    logger.info("Forge API starting up")

    store = IdentityStore(cfg.database_url)
    if store.find_role_by_name(cfg.default_role) is None:
        store.close()
        raise RuntimeError(
            f"Default role '{cfg.default_role}' not found. Run `python main.py init-roles` before starting the API."
        )

    app.state.user_store = store
    app.state.tokens = TokenService.from_settings(cfg)
    app.state.limiter = RateLimiter.from_settings(cfg)
    app.state.oauth = build_oauth_registry(cfg)
    app.state.reconciler = ReconciliationEngine(store, app.state.tokens, default_role=cfg.default_role)
    logger.info("Services initialized (rate-limit storage: %s)", cfg.rate_limit_storage_uri)

    yield

    store.close()
    logger.info("Forge API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Forge API",
    description="Password and OAuth authentication, role-based authorization and adaptive rate limiting.",
    version=API_VERSION,
    lifespan=lifespan,
    # Interactive docs only in debug mode.
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    expose_headers=["Retry-After"],
    max_age=3600,
)

# authlib keeps the OAuth state (and Forge its linking marker) in this session
# between the authorization redirect and the callback.
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.session_secret,
    https_only=settings.secure_cookies,
    same_site="lax",
)


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

app.include_router(auth_router, tags=["Auth"])
app.include_router(protected_router, prefix="/api", tags=["Protected"])
app.include_router(users_router, prefix="/api", tags=["Users"])
app.include_router(roles_router, prefix="/api", tags=["Roles"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error leaves the service as {"error": {"code", "message"}}, whatever
# raised it.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message)).model_dump(),
    )


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Map the service error taxonomy onto its HTTP status.

    RateLimitError additionally carries Retry-After so clients know how long
    the current window has left.
    """
    response = _error(exc.status_code, exc.code, exc.message)
    if isinstance(exc, RateLimitError):
        response.headers["Retry-After"] = str(exc.retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with the first validation problem as the message."""
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg', 'invalid value')}" if field else first.get("msg", "invalid value")
    else:
        message = "Request validation failed."
    logger.info("Validation failed on %s %s: %s", request.method, request.url.path, message)
    return _error(400, "validation_error", message)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Structured errors for framework-raised HTTP exceptions (404 route, 405, ...)."""
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Lives on the app itself, outside every router, so no rate-limit dependency
# applies to it.
# ---------------------------------------------------------------------------


@app.get("/health", tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=API_VERSION)
