"""
api/routes/v1/profile.py -- Credential changes for the signed-in user.

Routes:
  POST  /api/v1/profile/password               -- change password (requires auth)
  POST  /api/v1/profile/email                  -- request an email change (requires auth)
  GET   /api/v1/profile/email/confirm?token=   -- confirm the new address (public; the link is the proof)
  PATCH /api/v1/profile/mfa                    -- enable / disable the second factor (requires auth)

Requesting an email change revokes every token of the user; the client must
log in again once the new address is confirmed.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import ChangeEmailRequest, ChangePasswordRequest, MfaResponse, MfaToggleRequest, UserResponse
from api.routes.v1.auth import TokenParam, user_response
from auth.accounts import AccountService
from auth.context import RequestContext
from auth.dependencies import get_context, get_principal
from auth.models import Principal

router = APIRouter()


def _accounts(request: Request) -> AccountService:
    return request.app.state.accounts


@router.post("/profile/password", response_model=UserResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    principal: Principal = Depends(get_principal),
    ctx: RequestContext = Depends(get_context),
) -> UserResponse:
    user = _accounts(request).change_password(
        ctx, principal, body.current_password, body.new_password, body.confirm_password
    )
    return user_response(ctx, user, "Password changed.")


@router.post("/profile/email", response_model=UserResponse)
def request_email_change(
    request: Request,
    body: ChangeEmailRequest,
    principal: Principal = Depends(get_principal),
    ctx: RequestContext = Depends(get_context),
) -> UserResponse:
    user = _accounts(request).request_email_change(ctx, principal, body.new_email, body.password)
    return user_response(ctx, user, "Check your new inbox for a confirmation link. You have been logged out.")


@router.get("/profile/email/confirm", response_model=UserResponse)
def confirm_email_change(
    request: Request,
    token: TokenParam,
    ctx: RequestContext = Depends(get_context),
) -> UserResponse:
    user = _accounts(request).confirm_email_change(ctx, token)
    return user_response(ctx, user, "Email address updated. Please log in again.")


@router.patch("/profile/mfa", response_model=MfaResponse, response_model_exclude_none=True)
def toggle_mfa(
    request: Request,
    body: MfaToggleRequest,
    principal: Principal = Depends(get_principal),
    ctx: RequestContext = Depends(get_context),
) -> MfaResponse:
    """When enabling, the response carries the provisioning URI to enroll an authenticator app."""
    accounts = _accounts(request)
    user = accounts.set_mfa(ctx, principal, body.enabled)
    return MfaResponse(
        path=ctx.path,
        message="Two-factor authentication enabled." if user.mfa_enabled else "Two-factor authentication disabled.",
        mfa_enabled=user.mfa_enabled,
        provisioning_uri=accounts.provisioning_uri(user) if user.mfa_enabled else None,
    )
