"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services
do the work; these only own the shape.

Ownership: User is the root. LedgerEntry and EphemeralProof reference a
User by id, never the reverse.

Layer rule: no imports from api/, core/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    USER = "ROLE_USER"
    USER_EXTRA = "ROLE_USER_EXTRA"
    ADMIN = "ROLE_ADMIN"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class ProofKind(str, Enum):
    CONFIRMATION = "confirmation"
    PASSWORD_RESET = "password_reset"
    EMAIL_CHANGE = "email_change"


class ProofState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"


@dataclass
class User:
    """An identity that can sign in.

    mfa_secret is generated at registration and kept for the lifetime of the
    account; it only matters while mfa_enabled is true. enabled flips to true
    once the registration confirmation link is consumed.
    """

    username: str
    email: str
    hashed_password: str
    mfa_secret: str
    roles: list[str] = field(default_factory=lambda: [Role.USER.value])
    id: int | None = None
    enabled: bool = False
    mfa_enabled: bool = False
    created_at: str | None = None


@dataclass
class LedgerEntry:
    """One issued bearer token. Rows are never deleted (audit trail)."""

    user_id: int
    token: str
    kind: TokenKind
    jti: str | None = None
    id: int | None = None
    expired: bool = False
    revoked: bool = False
    created_at: str | None = None


@dataclass
class EphemeralProof:
    """A single-use, time-limited emailed token.

    value_hash is HMAC-SHA256(SECRET_KEY, raw value); the raw value only
    exists inside the emailed link. payload carries kind-specific data
    (the new address for EMAIL_CHANGE proofs).
    """

    user_id: int
    kind: ProofKind
    value_hash: str
    expires_at: datetime
    id: int | None = None
    confirmed_at: datetime | None = None
    payload: str | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class Principal:
    """The authenticated caller of one request, as vouched for by the interceptor."""

    user_id: int
    email: str
    roles: frozenset[str]
    token_id: str
    token: str
