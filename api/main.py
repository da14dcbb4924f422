"""
api/main.py -- FastAPI application entry point for AuthGate.

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. security_headers      -- nosniff / DENY / HSTS / referrer policy on every response
  2. log_requests          -- one access-log line per request, 429s included
  3. rate_limit            -- token bucket per client key; 429 before any route
  4. CORSMiddleware        -- CORS headers for allowed browser origins
  5. TrustedHostMiddleware -- rejects requests with unexpected Host headers

Composition root: the lifespan builds every stateful component (account
store, attempt ledger, revocation registry, bucket registry, token issuer,
auth service) and hangs them on app.state. Nothing stateful lives at module
level, so tests swap in isolated instances via configure_state().
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from api.limiter import BucketRegistry, client_key
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import AuthError, ErrorCode
from auth.ledger import LoginAttemptLedger
from auth.lockout import LockoutPolicy
from auth.maintenance import AccountMaintenance
from auth.revocation import RevocationRegistry
from auth.service import AuthService
from auth.store import AccountStore
from auth.tokens import TokenIssuer
from core.config import Settings, get_settings

VERSION = "0.1.0"

_settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=_settings.log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authgate.api")

_GENERIC_CREDENTIALS = "Invalid username or password."
_GENERIC_TOKEN = "Invalid or expired token."


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def configure_state(app: FastAPI, settings: Settings, accounts: AccountStore) -> None:
    """Build the auth components around accounts and attach them to app.state."""
    revocations = RevocationRegistry()
    ledger = LoginAttemptLedger(accounts.engine)
    tokens = TokenIssuer.from_settings(settings, revocations)
    policy = LockoutPolicy(ledger, accounts, max_attempts=settings.max_login_attempts)

    app.state.settings = settings
    app.state.accounts = accounts
    app.state.ledger = ledger
    app.state.revocations = revocations
    app.state.buckets = BucketRegistry.from_settings(settings)
    app.state.maintenance = AccountMaintenance.from_settings(accounts, settings)
    app.state.auth_service = AuthService(accounts, ledger, policy, tokens)


# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def sweep_once(app: FastAPI) -> None:
    """Purge expired revocations and idle buckets, then run account maintenance."""
    purged = app.state.revocations.purge()
    swept = app.state.buckets.sweep()
    logger.debug("Sweep: %d expired revocations, %d idle buckets", purged, swept)
    await asyncio.to_thread(app.state.maintenance.run)


async def _sweep_loop(app: FastAPI, interval: float) -> None:
    """Run sweep_once every interval seconds until cancelled.

    A failed cycle is logged and the loop carries on; the next cycle retries.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await sweep_once(app)
        except Exception:
            logger.exception("Sweep cycle failed; retrying next cycle")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build components on startup; cancel the sweep and close the DB on shutdown."""
    logger.info("AuthGate API starting up")
    accounts = AccountStore(_settings.database_url)
    configure_state(app, _settings, accounts)
    logger.info("Account store initialized (%s)", accounts.engine.url.render_as_string(hide_password=True))
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app, _settings.sweep_interval_seconds))

    yield

    app.state.sweep_task.cancel()
    app.state.accounts.close()
    logger.info("AuthGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AuthGate API",
    description="Account authentication, session tokens, login throttling and request rate limiting.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() and @app.middleware wrap the app from the inside out: the
# last one registered is the first to see a request.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.allowed_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)


@app.middleware("http")
async def rate_limit(request: Request, call_next):
    """Spend one credit per request; 429 with an empty body when the bucket is dry."""
    key = client_key(request)
    try:
        request.app.state.buckets.enforce(key)
    except AuthError as exc:
        logger.warning("Rate limit exceeded: client=%s path=%s", key, request.url.path)
        return await auth_error_handler(request, exc)
    return await call_next(request)


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
        client_key(request),
    )
    return response


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly. Internal detail goes to the log, never to the body.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> Response:
    """Map tagged auth errors to HTTP without leaking which check failed.

    Credential rejections (unknown user, wrong password, locked, inactive)
    all become the same 401 body. Token rejections likewise. Storage and
    signing failures are logged in full and surface as a generic 500.
    """
    if exc.is_credential_rejection:
        logger.info("Credential rejection on %s: %s", request.url.path, exc.message)
        resp = _error(401, ErrorCode.INVALID_CREDENTIALS.value, _GENERIC_CREDENTIALS)
        resp.headers["Cache-Control"] = "no-store"
        return resp
    if exc.is_token_rejection:
        logger.info("Token rejection on %s: %s", request.url.path, exc.message)
        resp = _error(401, "invalid_token", _GENERIC_TOKEN)
        resp.headers["WWW-Authenticate"] = "Bearer"
        return resp
    if exc.code is ErrorCode.RATE_LIMITED:
        return Response(status_code=429)
    if exc.code is ErrorCode.DEADLINE_EXCEEDED:
        return _error(503, "unavailable", "The request could not be completed in time.")
    logger.error("Internal auth failure on %s %s: %s", request.method, request.url.path, exc.message, exc_info=exc)
    return _error(500, "internal_error", "An unexpected error occurred.")


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with a structured error when the request body fails validation.

    Only field locations and messages are echoed back; submitted values
    (which may be passwords) are dropped.
    """
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', '')}" for err in exc.errors()
    )
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(code="validation_error", message="Request validation failed.", detail=problems)
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a dict detail; use it directly as
    the error field rather than stringifying it.
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
    """Catch-all for unexpected server errors. The traceback goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    db_ok = request.app.state.accounts.ping()
    return HealthResponse(version=VERSION, components={"app": "ok", "database": "ok" if db_ok else "error"})
