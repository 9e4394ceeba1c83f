"""
api/routes/v1/auth.py -- Registration, login, second factor, and session endpoints.

Routes:
  POST /api/v1/auth/register                -- create a disabled account, email confirmation link
  POST /api/v1/auth/register/resend         -- re-send the confirmation link
  GET  /api/v1/auth/register/confirm?token= -- consume the confirmation link, enable the account
  POST /api/v1/auth/login                   -- password step; tokens, or an MFA challenge
  POST /api/v1/auth/login/send-code         -- email a one-time code (MFA accounts)
  POST /api/v1/auth/login/verify            -- second-factor step; tokens
  POST /api/v1/auth/refresh                 -- rotate tokens using the refresh token as bearer
  POST /api/v1/auth/logout                  -- end the bearer token's session (no-op without one)
  POST /api/v1/auth/forgot-password         -- email a password-reset link
  POST /api/v1/auth/reset-password?token=   -- consume the reset link, set a new password
  GET  /api/v1/auth/me                      -- current principal (requires access token)

Login, verify, send-code and forgot-password are rate-limited per client IP.
Responses that carry tokens are sent with Cache-Control: no-store.

Handlers are plain `def`: the services do blocking I/O (SQL, bcrypt, SMTP)
and FastAPI runs sync handlers in its threadpool.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, Response

from api.limiter import LOGIN_LIMIT, OTP_LIMIT, limiter
from api.models import (
    ApiResponse,
    EmailRequest,
    LoginRequest,
    LoginResponse,
    MeResponse,
    RegisterRequest,
    ResetPasswordRequest,
    SendCodeRequest,
    UserResponse,
    VerifyRequest,
)
from auth.accounts import AccountService
from auth.authenticator import Authenticator, LoginResult, TokenPair
from auth.context import RequestContext
from auth.dependencies import get_context, get_principal
from auth.errors import InvalidToken, UnauthorizedError
from auth.interceptor import GENERIC_MESSAGE, parse_bearer
from auth.models import Principal, User

router = APIRouter()

TokenParam = Annotated[str, Query(min_length=1, max_length=128)]


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------


def _authenticator(request: Request) -> Authenticator:
    return request.app.state.authenticator


def _accounts(request: Request) -> AccountService:
    return request.app.state.accounts


def user_response(ctx: RequestContext, user: User, message: str, status: int = 200) -> UserResponse:
    return UserResponse(
        path=ctx.path,
        message=message,
        status=status,
        user_id=user.id,
        username=user.username,
        email=user.email,
        enabled=user.enabled,
        mfa_enabled=user.mfa_enabled,
    )


def _tokens_response(ctx: RequestContext, pair: TokenPair, message: str, **extra) -> LoginResponse:
    return LoginResponse(
        path=ctx.path,
        message=message,
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
        **extra,
    )


def _login_response(ctx: RequestContext, result: LoginResult) -> LoginResponse:
    if result.mfa_required:
        return LoginResponse(
            path=ctx.path,
            message="Second factor required. Submit a TOTP code or request an email code.",
            mfa_enabled=True,
            provisioning_uri=result.provisioning_uri,
        )
    return _tokens_response(
        ctx,
        result.tokens,
        "Login successful.",
        mfa_enabled=result.user.mfa_enabled,
        verified_with=result.method.value if result.method else None,
    )


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: RegisterRequest, ctx: RequestContext = Depends(get_context)) -> UserResponse:
    """Create an account. It stays disabled until the emailed link is opened."""
    user = _accounts(request).register(ctx, body.username, body.email, body.password)
    return user_response(ctx, user, "Registration successful. Check your email to confirm your account.", 201)


@router.post("/auth/register/resend", response_model=UserResponse)
def resend_confirmation(
    request: Request, body: EmailRequest, ctx: RequestContext = Depends(get_context)
) -> UserResponse:
    user = _accounts(request).resend_confirmation(ctx, body.email)
    return user_response(ctx, user, "A new confirmation link has been sent.")


@router.get("/auth/register/confirm", response_model=UserResponse)
def confirm_registration(
    request: Request, token: TokenParam, ctx: RequestContext = Depends(get_context)
) -> UserResponse:
    user = _accounts(request).confirm_registration(ctx, token)
    return user_response(ctx, user, "Email confirmed. You can now log in.")


# ---------------------------------------------------------------------------
# Login and second factor
# ---------------------------------------------------------------------------


@limiter.limit(LOGIN_LIMIT)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse, response_model_exclude_none=True)
def login(
    request: Request, response: Response, body: LoginRequest, ctx: RequestContext = Depends(get_context)
) -> LoginResponse:
    result = _authenticator(request).login(ctx, body.username, body.password)
    response.headers["Cache-Control"] = "no-store"
    return _login_response(ctx, result)


@limiter.limit(OTP_LIMIT)
@router.post("/auth/login/send-code", response_model=ApiResponse)
def send_login_code(
    request: Request, body: SendCodeRequest, ctx: RequestContext = Depends(get_context)
) -> ApiResponse:
    """Queue an emailed one-time code. Returns before the email is sent."""
    _authenticator(request).send_login_code(ctx, body.username)
    return ApiResponse(path=ctx.path, message="A verification code has been sent to your email.")


@limiter.limit(OTP_LIMIT)
@router.post("/auth/login/verify", response_model=LoginResponse, response_model_exclude_none=True)
def verify(
    request: Request, response: Response, body: VerifyRequest, ctx: RequestContext = Depends(get_context)
) -> LoginResponse:
    """Accepts either the current TOTP code or the last emailed code."""
    result = _authenticator(request).verify(ctx, body.username, body.code)
    response.headers["Cache-Control"] = "no-store"
    return _login_response(ctx, result)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@router.post("/auth/refresh", response_model=LoginResponse, response_model_exclude_none=True)
def refresh(request: Request, response: Response, ctx: RequestContext = Depends(get_context)) -> LoginResponse:
    """Rotate the pair. Every token failure gets the interceptor's single 401 message."""
    try:
        pair = _authenticator(request).refresh(ctx, parse_bearer(request.headers.get("Authorization")))
    except InvalidToken:
        raise UnauthorizedError(GENERIC_MESSAGE, path=ctx.path) from None
    response.headers["Cache-Control"] = "no-store"
    return _tokens_response(ctx, pair, "Token refreshed.")


@router.post("/auth/logout", response_model=ApiResponse)
def logout(request: Request, ctx: RequestContext = Depends(get_context)) -> ApiResponse:
    """Revoke every live token of the bearer's owner. Missing, unknown or dead tokens still get 200."""
    _authenticator(request).logout(ctx, parse_bearer(request.headers.get("Authorization")))
    return ApiResponse(path=ctx.path, message="Logged out.")


@router.get("/auth/me", response_model=MeResponse)
def me(principal: Principal = Depends(get_principal), ctx: RequestContext = Depends(get_context)) -> MeResponse:
    return MeResponse(
        path=ctx.path,
        message="Authenticated.",
        user_id=principal.user_id,
        email=principal.email,
        roles=sorted(principal.roles),
        token_id=principal.token_id,
    )


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@limiter.limit(OTP_LIMIT)
@router.post("/auth/forgot-password", response_model=ApiResponse)
def forgot_password(request: Request, body: EmailRequest, ctx: RequestContext = Depends(get_context)) -> ApiResponse:
    _accounts(request).forgot_password(ctx, body.email)
    return ApiResponse(path=ctx.path, message="A password reset link has been sent to your email.")


@router.post("/auth/reset-password", response_model=ApiResponse)
def reset_password(
    request: Request,
    body: ResetPasswordRequest,
    token: TokenParam,
    ctx: RequestContext = Depends(get_context),
) -> ApiResponse:
    _accounts(request).reset_password(ctx, token, body.password, body.confirm_password)
    return ApiResponse(path=ctx.path, message="Password has been reset. Please log in again.")
