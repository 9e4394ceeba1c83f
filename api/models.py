"""
API request and response models for EdgeAuth REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are kept
separate from the dataclasses in auth/models.py, which own the domain
representation; route handlers map between the two.

Every successful response carries path / message / status / timestamp so
clients can treat success and failure bodies alike (see ApiError).
"""

from datetime import datetime, timezone
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[A-Za-z0-9_.-]{3,50}$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
OTP_PATTERN = r"^\d{6}$"

# bcrypt only looks at the first 72 bytes.
_Password = Annotated[str, Field(min_length=8, max_length=72)]


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(pattern=USERNAME_PATTERN)
    email: str = Field(max_length=320, pattern=EMAIL_PATTERN)
    password: _Password

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()


class EmailRequest(BaseModel):
    """Body for resend-confirmation and forgot-password."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=320, pattern=EMAIL_PATTERN)


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=50)
    password: str = Field(min_length=1, max_length=72)


class SendCodeRequest(BaseModel):
    username: str = Field(min_length=1, max_length=50)


class VerifyRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=50)
    code: str = Field(pattern=OTP_PATTERN)


class ResetPasswordRequest(BaseModel):
    password: _Password
    confirm_password: str = Field(min_length=1, max_length=72)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=72)
    new_password: _Password
    confirm_password: str = Field(min_length=1, max_length=72)


class ChangeEmailRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    new_email: str = Field(max_length=320, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=72)


class MfaToggleRequest(BaseModel):
    enabled: bool


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class ApiResponse(BaseModel):
    """Common envelope fields for every successful response."""

    model_config = ConfigDict(frozen=True)

    path: str
    message: str
    status: int = 200
    timestamp: str = Field(default_factory=_utcnow)


class UserResponse(ApiResponse):
    user_id: int
    username: str
    email: str
    enabled: bool
    mfa_enabled: bool


class LoginResponse(ApiResponse):
    """Tokens when the login completed; only mfa_enabled + provisioning_uri when a second factor is due."""

    mfa_enabled: bool = False
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_in: Optional[int] = None
    provisioning_uri: Optional[str] = None
    verified_with: Optional[str] = None


class MfaResponse(ApiResponse):
    mfa_enabled: bool
    provisioning_uri: Optional[str] = None


class MeResponse(ApiResponse):
    user_id: int
    email: str
    roles: list[str]
    token_id: str


class ApiError(BaseModel):
    """Body of every 4xx/5xx response."""

    model_config = ConfigDict(frozen=True)

    path: str
    error: str
    status: int
    timestamp: str = Field(default_factory=_utcnow)


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
