"""
auth/errors.py -- Domain exception hierarchy for the credential layer.

Every error carries a human-readable message, an HTTP status, the request
path (filled in by the service when a RequestContext is at hand) and the UTC
timestamp at which it was raised. api/main.py renders them as

    {"path": ..., "error": ..., "status": ..., "timestamp": ...}

Category            Status  Meaning
NotFoundError       404     user / token / proof absent
InvalidRequestError 400     business-rule failure (wrong OTP, spent proof)
ConflictError       400     duplicate username / email
UnauthorizedError   401     auth-boundary failure (bad password, bad token)
DeliveryFailure     500     email that *is* the deliverable could not be sent
DeadlineExceeded    503     request deadline passed before work started

Layer rule: stdlib only.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum


class AuthError(Exception):
    status_code: int = 400
    default_message: str = "Request could not be processed."

    def __init__(self, message: str | None = None, path: str | None = None) -> None:
        self.message = message or self.default_message
        self.path = path
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(self.message)

    def at(self, path: str) -> "AuthError":
        """Attach the request path unless one is already set; returns self."""
        if self.path is None:
            self.path = path
        return self

    def to_dict(self) -> dict:
        return {
            "path": self.path or "",
            "error": self.message,
            "status": self.status_code,
            "timestamp": self.timestamp.isoformat(),
        }


# ---------------------------------------------------------------------------
# 404
# ---------------------------------------------------------------------------


class NotFoundError(AuthError):
    status_code = 404
    default_message = "Resource not found."


class UserNotFound(NotFoundError):
    default_message = "User not found."


class ProofNotFound(NotFoundError):
    default_message = "Token not found or is already used."


class TokenNotFound(NotFoundError):
    default_message = "Token not found."


# ---------------------------------------------------------------------------
# 400
# ---------------------------------------------------------------------------


class InvalidRequestError(AuthError):
    status_code = 400


class AlreadyConsumed(InvalidRequestError):
    default_message = "The provided token has already been confirmed."


class ProofExpired(InvalidRequestError):
    default_message = "The provided token has expired. Please request a new one."


class InvalidOTP(InvalidRequestError):
    default_message = "Invalid OTP."


class NoActiveChallenge(InvalidRequestError):
    default_message = "No verification code is outstanding. Please request a new one."


class MfaNotEnabled(InvalidRequestError):
    default_message = "Two-factor authentication is not enabled for this account."


class AccountAlreadyEnabled(InvalidRequestError):
    default_message = "This account is already confirmed."


class PasswordMismatch(InvalidRequestError):
    default_message = "Password and confirmation do not match."


class SameEmail(InvalidRequestError):
    default_message = "The new email address is the same as the current one."


class ConflictReason(str, Enum):
    USERNAME_TAKEN = "Username is already taken."
    EMAIL_TAKEN = "Email is already registered."


class ConflictError(InvalidRequestError):
    """Duplicate identity attribute. The message is always a ConflictReason."""

    def __init__(self, reason: ConflictReason, path: str | None = None) -> None:
        self.reason = reason
        super().__init__(reason.value, path)


# ---------------------------------------------------------------------------
# 401
# ---------------------------------------------------------------------------


class UnauthorizedError(AuthError):
    status_code = 401
    default_message = "Authentication required."


class BadCredentials(UnauthorizedError):
    default_message = "Invalid username or password."


class AccountDisabled(UnauthorizedError):
    default_message = "Account is not confirmed. Check your email for the confirmation link."


class InvalidToken(UnauthorizedError):
    default_message = "Invalid or expired token."


class InvalidSignature(InvalidToken):
    default_message = "Token signature verification failed."


class MalformedToken(InvalidToken):
    default_message = "Token is malformed."


class TokenExpired(InvalidToken):
    default_message = "Token has expired."


class TokenRevoked(InvalidToken):
    default_message = "Token has been revoked."


class WrongTokenKind(InvalidToken):
    default_message = "Token cannot be used for this operation."


# ---------------------------------------------------------------------------
# 5xx
# ---------------------------------------------------------------------------


class DeliveryFailure(AuthError):
    status_code = 500
    default_message = "Email could not be delivered. Please try again later."


class DeadlineExceeded(AuthError):
    status_code = 503
    default_message = "Request deadline exceeded."
