"""
api/main.py -- FastAPI application entry point for credgate.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- method, path, status and latency per request
  2. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  3. CORSMiddleware        -- credentialed CORS for the frontend origin(s)
  4. TrustedHostMiddleware -- rejects requests with unexpected Host headers

Lifespan builds the process-wide collaborators once (store, signer, mailer,
uploader), injects them into a single CredentialService on app.state, and
disposes the store on shutdown.

Every response, success or failure, uses the {success, message, ...} envelope.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorResponse, HealthResponse
from api.routes.v1.users import router as users_router
from auth.errors import CredentialError
from auth.mailer import Mailer
from auth.service import CredentialService
from auth.store import AccountStore
from auth.tokens import TokenSigner
from auth.uploads import ImageUploader
from core.config import get_settings

VERSION = "0.1.0"

_settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.DEBUG if _settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("credgate.api")


# ---------------------------------------------------------------------------
# Lifespan -- startup / shutdown
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the shared collaborators and the credential service.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Tests replace this context manager to wire in-memory stores and
    fake transports (see tests/conftest.py).
    """
    logger.info("credgate API starting up")
    store = AccountStore(_settings.database_url)
    mailer = Mailer(_settings)
    uploader = ImageUploader(_settings)
    if not mailer.is_configured:
        logger.warning("SMTP_HOST not set -- verification, OTP and reset mails will be dropped")
    if not uploader.is_configured:
        logger.warning("S3_BUCKET not set -- profile images will be discarded")
    app.state.credentials = CredentialService(
        store=store,
        signer=TokenSigner(_settings),
        mailer=mailer,
        uploader=uploader,
        settings=_settings,
    )
    logger.info("Credential service initialized")

    yield

    store.close()
    logger.info("credgate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="credgate API",
    description="Username/password and email-OTP authentication.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Starlette wraps each add_middleware() around the previous ones, so the
# last registered runs first.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts_list,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins_list,
    allow_credentials=True,  # session cookies travel with cross-origin XHR
    allow_methods=["GET", "POST"],
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

app.include_router(users_router, prefix="/api/v1/users", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same envelope so clients can parse failures without
# inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, message: str, error=None) -> JSONResponse:
    body = ErrorResponse(message=message, error=error).model_dump(exclude_none=True)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


@app.exception_handler(CredentialError)
async def credential_error_handler(request: Request, exc: CredentialError) -> JSONResponse:
    """Business-rule failures from CredentialService (conflict, not found, bad code, ...)."""
    return _error(exc.status_code, exc.message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "Too many requests.", str(exc.detail))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Schema failures are rejected with 400 before any handler code runs."""
    issues = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]
    return _error(400, "input validation error", issues)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Route-level HTTP errors (401 from require_session, 404 for unknown paths, ...)."""
    response = _error(exc.status_code, str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for collaborator failures. The error text is echoed; tracebacks stay in the log."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "Internal Server error", str(exc))


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# No rate limit -- load balancer checks must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version and a database round-trip check."""
    db_ok = request.app.state.credentials.store.ping()
    return HealthResponse(
        version=VERSION,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
