"""
api/main.py -- FastAPI application entry point for ScholarGate.

Run with:      uvicorn asgi:app --reload
               python main.py serve

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for the frontend origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds every service from Settings once (wire_services) and stores
them on app.state; routes only ever read app.state. Shutdown cancels the token
purge task and disposes the store engine.
"""

from __future__ import annotations

import asyncio
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
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.credentials import CredentialVerifier
from auth.errors import AuthError, Internal
from auth.models import TokenPurpose
from auth.recovery import RecoveryWorkflow
from auth.sessions import SessionService
from auth.store import PrincipalStore, TokenStore, create_store_engine
from auth.tokens import AssertionSigner
from auth.verification import VerificationWorkflow
from core.config import Settings, get_settings
from notify.gateway import NotificationGateway, build_gateway
from storage.objects import LocalObjectStore, ObjectStore

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("scholargate.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(
    state,
    settings: Settings,
    gateway: NotificationGateway | None = None,
    objects: ObjectStore | None = None,
) -> None:
    """Build the stores and workflows from settings and attach them to state.

    gateway and objects default to the configured backends; tests pass
    in-memory doubles instead.
    """
    engine = create_store_engine(settings.database_url, timeout=settings.store_timeout_seconds)
    principals = PrincipalStore(engine)
    tokens = TokenStore(
        engine,
        ttl_seconds={
            TokenPurpose.VERIFICATION: settings.verification_token_ttl_seconds,
            TokenPurpose.RECOVERY: settings.recovery_token_ttl_seconds,
        },
    )
    credentials = CredentialVerifier(rounds=settings.bcrypt_rounds)
    gateway = gateway or build_gateway(settings)
    verification = VerificationWorkflow(principals, tokens, credentials, gateway, settings.frontend_url)

    state.settings = settings
    state.engine = engine
    state.principals = principals
    state.tokens = tokens
    state.gateway = gateway
    state.objects = objects or LocalObjectStore(settings.document_storage_dir, settings.document_base_url)
    state.verification = verification
    state.recovery = RecoveryWorkflow(principals, tokens, credentials, gateway, settings.frontend_url)
    state.sessions = SessionService(principals, credentials, AssertionSigner(settings), verification)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired single-use tokens every TOKEN_PURGE_INTERVAL_SECONDS.

    Expired tokens already never resolve; this only keeps the table small.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    interval = app.state.settings.token_purge_interval_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(app.state.tokens.purge_expired)
        except SQLAlchemyError:
            logger.warning("Token purge failed; will retry next interval", exc_info=True)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build services on startup; tear them down symmetrically on shutdown."""
    logger.info("ScholarGate API starting up")
    wire_services(app.state, get_settings())
    logger.info("Stores initialized (%s)", app.state.engine.url.get_backend_name())
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.engine.dispose()
    logger.info("ScholarGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="ScholarGate API",
    description="Student and university accounts: registration, email verification, sessions, password recovery.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

# allow_credentials is required for the browser to send the refresh cookie
# on cross-origin calls from the frontend.
app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


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
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map a workflow failure to its stable code, status and message."""
    response = _error(exc.status_code, exc.code, exc.message)
    if isinstance(exc, Internal):
        response.headers["Retry-After"] = "5"
    return response


@app.exception_handler(OperationalError)
async def store_unavailable_handler(request: Request, exc: OperationalError) -> JSONResponse:
    """Store timed out or is unreachable: retriable 503, no driver detail in the body."""
    logger.error("Store unavailable on %s %s: %s", request.method, request.url.path, type(exc.orig).__name__)
    return await auth_error_handler(request, Internal())


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 when the request body, form, or path fails validation.

    Only field locations and messages are echoed back -- never the submitted
    values, which may include passwords.
    """
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', 'invalid')}" for err in exc.errors()
    )
    return _error(422, "validation_failed", "Request validation failed.", problems)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail))).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit -- health checks from load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and store reachability."""
    components = {"app": "ok"}
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        components["database"] = "ok"
    except SQLAlchemyError:
        components["database"] = "error"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
