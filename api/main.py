"""
api/main.py -- FastAPI application entry point for EdgeAuth.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- builds the RequestContext (correlation id,
                              deadline), logs one line per request
  2. authenticate_request  -- runs RequestInterceptor; attaches the Principal
                              for the duration of the request, 401 on failure
  3. SlowAPIMiddleware     -- per-route rate limits from api.limiter
  4. CORSMiddleware

Lifespan wires the stores and services into app.state and runs the Secret
Cache sweep task; shutdown tears them down in reverse.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.engine import Engine
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ApiError, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.profile import router as profile_router
from auth.accounts import AccountService
from auth.authenticator import Authenticator
from auth.codec import TokenCodec
from auth.context import RequestContext, new_correlation_id
from auth.email_otp import EmailOtpEngine
from auth.errors import AuthError, UnauthorizedError
from auth.interceptor import RequestInterceptor
from auth.ledger import TokenLedger
from auth.mailer import EmailSender, MailDispatcher
from auth.proofs import ProofManager
from auth.store import ProofStore, TokenStore, UserStore, create_auth_engine
from auth.totp import TotpEngine
from cache.store import SecretCache
from core.clock import Clock
from core.config import Settings, get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("edgeauth.api")

# Paths that carry a bearer token the handler reads itself (a refresh token,
# or a token being logged out). The interceptor does not judge them.
_BEARER_EXEMPT = frozenset({"/api/v1/auth/refresh", "/api/v1/auth/logout"})

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def build_services(
    app: FastAPI,
    settings: Settings,
    *,
    engine: Engine | None = None,
    sender: EmailSender | None = None,
    clock: Clock | None = None,
) -> None:
    """Construct every collaborator and publish it on app.state.

    engine / sender / clock can be swapped (the test suite passes an
    in-memory engine, a recording sender and a movable clock).
    """
    clock = clock or Clock()
    engine = engine or create_auth_engine(settings.database_url)
    sender = sender or EmailSender(
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user,
        smtp_password=settings.smtp_password,
        smtp_use_tls=settings.smtp_use_tls,
        from_email=settings.mail_from,
    )

    users = UserStore(engine)
    ledger = TokenLedger(TokenStore(engine))
    proofs = ProofManager(ProofStore(engine), settings.secret_key, clock)
    codec = TokenCodec(
        public_key_pem=settings.jwt_public_key_pem,
        private_key_pem=settings.jwt_private_key_pem or None,
        issuer=settings.jwt_issuer,
        clock=clock,
    )
    totp = TotpEngine(settings.totp_issuer, settings.totp_label, clock, settings.totp_valid_window)
    secret_cache = SecretCache(ttl=settings.otp_expiration_minutes * 60, clock=clock)
    dispatcher = MailDispatcher(sender, max_workers=settings.mail_workers)

    app.state.engine = engine
    app.state.clock = clock
    app.state.users = users
    app.state.ledger = ledger
    app.state.codec = codec
    app.state.secret_cache = secret_cache
    app.state.dispatcher = dispatcher
    app.state.interceptor = RequestInterceptor(codec, ledger)
    app.state.authenticator = Authenticator(
        users=users,
        ledger=ledger,
        codec=codec,
        totp=totp,
        email_otp=EmailOtpEngine(secret_cache, dispatcher),
        access_ttl=timedelta(seconds=settings.access_token_expire_seconds),
        refresh_ttl=timedelta(seconds=settings.refresh_token_expire_seconds),
    )
    app.state.accounts = AccountService(
        users=users,
        ledger=ledger,
        proofs=proofs,
        totp=totp,
        sender=sender,
        dispatcher=dispatcher,
        public_base_url=settings.public_base_url,
        confirmation_window=timedelta(hours=settings.confirmation_expire_hours),
        reset_window=timedelta(hours=settings.password_reset_expire_hours),
        email_change_window=timedelta(minutes=settings.email_change_expire_minutes),
        clock=clock,
    )


def close_services(app: FastAPI) -> None:
    app.state.dispatcher.shutdown(wait=True)
    app.state.secret_cache.close()
    app.state.engine.dispose()


# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, interval: float) -> None:
    """Evict expired one-time codes every `interval` seconds.

    Reads already treat expired entries as absent; the sweep only bounds
    memory for codes that are never read again.
    """
    while True:
        await asyncio.sleep(interval)
        removed = app.state.secret_cache.purge_expired()
        if removed:
            logger.debug("Secret cache sweep removed %d entries", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    logger.info("EdgeAuth API starting up (debug=%s)", settings.debug)
    build_services(app, settings)
    logger.info("Auth services initialized")
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app, settings.cache_sweep_seconds))

    yield

    app.state.sweep_task.cancel()
    with suppress(asyncio.CancelledError):
        await app.state.sweep_task
    close_services(app)
    logger.info("EdgeAuth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="EdgeAuth API",
    description="Credential and session layer: bearer tokens, email proofs, and two-factor login.",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


def _error_response(path: str, message: str, status: int) -> JSONResponse:
    return JSONResponse(status_code=status, content=ApiError(path=path, error=message, status=status).model_dump())


# ---------------------------------------------------------------------------
# Authentication middleware
#
# Registered before log_requests, so it runs inside it and can rely on
# request.state.context. The principal lives on request.state only while
# this request is in flight; the finally block clears it whatever happens.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def authenticate_request(request: Request, call_next):
    path = request.url.path
    request.state.principal = None
    try:
        if path not in _BEARER_EXEMPT:
            interceptor: RequestInterceptor = request.app.state.interceptor
            try:
                request.state.principal = await run_in_threadpool(
                    interceptor.authenticate, request.headers.get("Authorization"), path
                )
            except UnauthorizedError as exc:
                ctx: RequestContext = request.state.context
                logger.info("401 on %s [%s]", path, ctx.correlation_id)
                return _error_response(path, exc.message, exc.status_code)
        return await call_next(request)
    finally:
        request.state.principal = None


# ---------------------------------------------------------------------------
# Request logging / correlation middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    correlation_id = request.headers.get("X-Request-ID") or new_correlation_id()
    client = request.client.host if request.client else "unknown"
    request.state.context = RequestContext.with_timeout(
        request.url.path,
        get_settings().request_timeout_seconds,
        correlation_id=correlation_id,
        client_ip=client,
    )
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    response.headers["X-Request-ID"] = correlation_id
    logger.info(
        "%s %s %d %.1fms %s [%s]",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        client,
        correlation_id,
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(profile_router, prefix="/api/v1", tags=["Profile"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every failure leaves as ApiError {path, error, status, timestamp}.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    exc.at(request.url.path)
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 with Retry-After (slowapi stores the window on exc.retry_after when known)."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(request.url.path, "Too many requests.", 429)
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = sorted({".".join(str(p) for p in err.get("loc", ())[1:]) for err in exc.errors()})
    message = "Request validation failed"
    if fields:
        message += ": " + ", ".join(f for f in fields if f)
    return _error_response(request.url.path, message + ".", 422)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error_response(request.url.path, str(exc.detail), exc.status_code)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all. The traceback goes to the log only, never to the client."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(request.url.path, "An unexpected error occurred.", 500)


# ---------------------------------------------------------------------------
# Health endpoint (no auth, no rate limit)
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and a database round-trip check."""
    components = {"app": "ok", "database": "ok"}
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Health check: database unreachable")
        components["database"] = "error"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
