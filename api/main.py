"""
api/main.py -- FastAPI application entry point for the campus auth service.

Run with:  uvicorn api.main:app --reload

Lifespan handles startup (store, signer, hasher, federation verifier,
notifiers, services, purge task) and shutdown (cancel purge task, close
store and push pool) symmetrically. Everything the routes need lives on
app.state, so tests can swap in their own wiring by replacing the lifespan.

Error envelope: every failure -- AuthError, validation, rate limit, store
outage, unexpected exception -- is returned as
    {"error": {"code": ..., "message": ..., "detail": ...}}
so clients parse errors uniformly.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import requests
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import AuthError
from auth.oauth import GoogleIdTokenVerifier
from auth.registration import RegistrationService
from auth.session import SessionService
from auth.store import CredentialStore
from auth.tokens import PasswordHasher, TokenSigner
from core.config import Settings, get_settings
from notify.email import EmailService
from notify.push import PushNotifier

_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("campus.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval_seconds: int) -> None:
    """Delete expired verification and refresh token rows every interval.

    The store call blocks, so it runs in a worker thread. CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep and unwinds
    the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await asyncio.to_thread(app.state.store.purge_expired, datetime.now(timezone.utc))
            logger.info("Purged %d expired token rows", removed)
        except SQLAlchemyError:
            logger.exception("Token purge failed; retrying next interval")


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def wire_state(app: FastAPI, settings: Settings) -> None:
    """Build every collaborator from settings and attach it to app.state."""
    store = CredentialStore(settings.database_url)
    signer = TokenSigner(settings.secret_key)
    hasher = PasswordHasher(rounds=settings.salt_rounds)
    email_service = EmailService(
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user,
        smtp_password=settings.smtp_password,
        smtp_use_tls=settings.smtp_use_tls,
        from_email=settings.email_from,
        from_name=settings.email_from_name,
    )
    push = PushNotifier(settings.push_gateway_url, settings.push_api_key)
    verifier = GoogleIdTokenVerifier(client_id=settings.google_client_id, allow_any_audience=settings.debug)

    app.state.store = store
    app.state.signer = signer
    app.state.push = push
    app.state.registration = RegistrationService(
        store,
        signer,
        hasher,
        email_service,
        app_url=settings.app_url,
        frontend_url_complete_signup=settings.frontend_url_complete_signup,
        mobile_url_complete_signup=settings.mobile_url_complete_signup,
        verification_ttl_seconds=settings.verification_token_ttl_seconds,
        completion_ttl_seconds=settings.completion_token_ttl_seconds,
    )
    app.state.sessions = SessionService(
        store,
        signer,
        hasher,
        verifier,
        push,
        access_ttl_seconds=settings.access_token_ttl_seconds,
        refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    logger.info("Campus auth API starting up")
    wire_state(app, settings)
    if not settings.google_client_id:
        logger.warning(
            "GOOGLE_CLIENT_ID not set -- Google sign-in is %s",
            "unpinned (DEBUG)" if settings.debug else "disabled",
        )
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.purge_interval_seconds))
    logger.info("Auth initialized (users=%d)", app.state.store.count_users())

    yield

    app.state.purge_task.cancel()
    app.state.push.close()
    app.state.store.close()
    logger.info("Campus auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Campus Logistics Auth API",
    description="Registration, sign-in and session tokens for the campus logistics app.",
    version=_VERSION,
    lifespan=lifespan,
)

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


app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map typed registration/session failures to their stable code and status."""
    resp = _error(exc.status_code, exc.code, exc.message)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Database failures are infrastructure errors, never auth errors."""
    logger.exception("Store failure on %s %s", request.method, request.url.path)
    return _error(503, "store_unavailable", "The service is temporarily unavailable.")


@app.exception_handler(requests.RequestException)
async def upstream_error_handler(request: Request, exc: requests.RequestException) -> JSONResponse:
    """Identity provider key fetch failed (network/HTTP), not a bad token."""
    logger.error("Upstream request failed on %s %s: %s", request.method, request.url.path, exc)
    return _error(502, "upstream_unavailable", "An upstream identity service is unavailable.")


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
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Dependencies raise HTTPException with detail already a {"code", "message"}
    dict; use it directly rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version and a cheap database probe."""
    database = "ok"
    try:
        request.app.state.store.count_users()
    except SQLAlchemyError:
        database = "error"
    return HealthResponse(version=_VERSION, components={"app": "ok", "database": database})
