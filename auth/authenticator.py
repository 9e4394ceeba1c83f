"""
auth/authenticator.py -- Login, second-factor verification, refresh, logout.

Per login attempt:

    CredentialsSubmitted --[MFA off]--> Authenticated
    CredentialsSubmitted --[MFA on]---> ChallengeIssued --verify()--> Authenticated

No token is issued before the last step. Reaching Authenticated always
goes through _start_session(): every live token of the user is revoked
first, then a new access + refresh pair is signed and both are recorded.
A user therefore has exactly one live session lineage.

Second-factor codes are tried in VERIFICATION_ORDER: TOTP first, then the
emailed code. Either one is sufficient.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from auth.codec import TokenCodec
from auth.context import RequestContext, operation
from auth.email_otp import EmailOtpEngine
from auth.errors import (
    AccountDisabled,
    BadCredentials,
    InvalidOTP,
    MfaNotEnabled,
    NoActiveChallenge,
    TokenRevoked,
    UnauthorizedError,
    UserNotFound,
    WrongTokenKind,
)
from auth.ledger import TokenLedger
from auth.models import TokenKind, User
from auth.passwords import verify_password
from auth.store import UserStore
from auth.totp import TotpEngine

logger = logging.getLogger("edgeauth.auth.authenticator")


class OtpMethod(str, Enum):
    TOTP = "totp"
    EMAIL = "email"


VERIFICATION_ORDER: tuple[OtpMethod, ...] = (OtpMethod.TOTP, OtpMethod.EMAIL)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


@dataclass(frozen=True)
class LoginResult:
    """Either tokens (Authenticated) or a provisioning URI (ChallengeIssued)."""

    user: User
    tokens: TokenPair | None = None
    provisioning_uri: str | None = None
    method: OtpMethod | None = None

    @property
    def mfa_required(self) -> bool:
        return self.tokens is None


class Authenticator:
    def __init__(
        self,
        users: UserStore,
        ledger: TokenLedger,
        codec: TokenCodec,
        totp: TotpEngine,
        email_otp: EmailOtpEngine,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
    ) -> None:
        self.users = users
        self.ledger = ledger
        self.codec = codec
        self.totp = totp
        self.email_otp = email_otp
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load(self, username: str) -> User:
        user = self.users.get_by_username(username)
        if user is None:
            raise UserNotFound()
        return user

    def _issue(self, user: User, kind: TokenKind, ttl: timedelta) -> str:
        claims = {"scope": " ".join(user.roles), "uid": user.id, "type": kind.value}
        token = self.codec.issue(claims, subject=user.email, expiry=ttl)
        self.ledger.record(token, user, kind, jti=self.codec.token_id(token))
        return token

    def _start_session(self, ctx: RequestContext, user: User) -> TokenPair:
        self.ledger.revoke_all_for_user(user.id)
        pair = TokenPair(
            access_token=self._issue(user, TokenKind.ACCESS, self.access_ttl),
            refresh_token=self._issue(user, TokenKind.REFRESH, self.refresh_ttl),
            expires_in=int(self.access_ttl.total_seconds()),
        )
        logger.info("Session started for user_id=%s [%s]", user.id, ctx.correlation_id)
        return pair

    def _match_code(self, user: User, code: str) -> OtpMethod | None:
        for method in VERIFICATION_ORDER:
            if method is OtpMethod.TOTP:
                if self.totp.verify(user.mfa_secret, code):
                    return method
            elif method is OtpMethod.EMAIL:
                try:
                    if self.email_otp.verify(user, code):
                        return method
                except NoActiveChallenge:
                    continue
        return None

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------

    @operation
    def login(self, ctx: RequestContext, username: str, password: str) -> LoginResult:
        user = self._load(username)
        if not verify_password(password, user.hashed_password):
            logger.info("Bad password for user_id=%s [%s]", user.id, ctx.correlation_id)
            raise BadCredentials()
        if not user.enabled:
            raise AccountDisabled()

        if user.mfa_enabled:
            if not user.mfa_secret:
                user.mfa_secret = self.totp.generate_secret()
                self.users.save(user)
            logger.info("MFA challenge issued for user_id=%s [%s]", user.id, ctx.correlation_id)
            return LoginResult(user=user, provisioning_uri=self.totp.provisioning_uri(user.mfa_secret, user.email))

        return LoginResult(user=user, tokens=self._start_session(ctx, user))

    @operation
    def send_login_code(self, ctx: RequestContext, username: str) -> Future:
        """Email a one-time code to an MFA user. Returns the delivery Future."""
        user = self._load(username)
        if not user.mfa_enabled:
            raise MfaNotEnabled()
        return self.email_otp.issue(user)

    @operation
    def verify(self, ctx: RequestContext, username: str, code: str) -> LoginResult:
        user = self._load(username)
        if not user.mfa_enabled:
            raise MfaNotEnabled()
        if not user.enabled:
            raise AccountDisabled()

        method = self._match_code(user, code)
        if method is None:
            logger.info("Second factor rejected for user_id=%s [%s]", user.id, ctx.correlation_id)
            raise InvalidOTP()
        return LoginResult(user=user, tokens=self._start_session(ctx, user), method=method)

    @operation
    def refresh(self, ctx: RequestContext, refresh_token: str | None) -> TokenPair:
        """Trade a live refresh token for a new pair; the old lineage is revoked."""
        if not refresh_token:
            raise UnauthorizedError("Refresh token required.")
        claims = self.codec.decode(refresh_token)
        if claims.get("type") != TokenKind.REFRESH.value:
            raise WrongTokenKind()

        entry = self.ledger.lookup(refresh_token)
        if entry is None or entry.expired or entry.revoked or entry.kind is not TokenKind.REFRESH:
            raise TokenRevoked()
        user = self.users.get_by_id(entry.user_id)
        if user is None:
            raise UserNotFound()
        if not user.enabled:
            raise AccountDisabled()
        return self._start_session(ctx, user)

    @operation
    def logout(self, ctx: RequestContext, token: str | None) -> bool:
        """End the session the presented token belongs to.

        Every live token of its owner is revoked, so the refresh token from
        the same login cannot mint a new pair. Returns False when there was
        nothing to end: no token, or one the ledger does not hold as live.
        """
        if not token:
            return False
        entry = self.ledger.lookup(token)
        if entry is None or entry.expired or entry.revoked:
            logger.info("Logout with unknown or dead token [%s]", ctx.correlation_id)
            return False
        count = self.ledger.revoke_all_for_user(entry.user_id)
        logger.info("Logout for user_id=%s revoked %d token(s) [%s]", entry.user_id, count, ctx.correlation_id)
        return count > 0
