"""
auth/accounts.py -- Account lifecycle flows built on ephemeral proofs.

  register / resend_confirmation / confirm_registration
  forgot_password / reset_password
  change_password / request_email_change / confirm_email_change / set_mfa

Emails that carry a link are sent synchronously through EmailSender and a
DeliveryFailure propagates: the link is the only copy, so the caller must
know it never left. The password-changed notice is best effort and goes
through MailDispatcher instead.

Addresses are compared and stored lower-cased.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from urllib.parse import urlencode

from sqlalchemy.exc import IntegrityError

from auth.context import RequestContext, operation
from auth.errors import (
    AccountAlreadyEnabled,
    BadCredentials,
    ConflictError,
    ConflictReason,
    PasswordMismatch,
    SameEmail,
    UserNotFound,
)
from auth.ledger import TokenLedger
from auth.mailer import (
    EmailSender,
    MailDispatcher,
    confirmation_email,
    email_change_email,
    password_changed_email,
    password_reset_email,
)
from auth.models import Principal, ProofKind, Role, User
from auth.passwords import hash_password, verify_password
from auth.proofs import ProofManager
from auth.store import UserStore
from auth.totp import TotpEngine
from core.clock import Clock

logger = logging.getLogger("edgeauth.auth.accounts")


class AccountService:
    def __init__(
        self,
        users: UserStore,
        ledger: TokenLedger,
        proofs: ProofManager,
        totp: TotpEngine,
        sender: EmailSender,
        dispatcher: MailDispatcher,
        public_base_url: str,
        confirmation_window: timedelta = timedelta(hours=24),
        reset_window: timedelta = timedelta(hours=24),
        email_change_window: timedelta = timedelta(minutes=15),
        clock: Clock | None = None,
    ) -> None:
        self.users = users
        self.ledger = ledger
        self.proofs = proofs
        self.totp = totp
        self.sender = sender
        self.dispatcher = dispatcher
        self.public_base_url = public_base_url.rstrip("/")
        self.confirmation_window = confirmation_window
        self.reset_window = reset_window
        self.email_change_window = email_change_window
        self._clock = clock or Clock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _link(self, path: str, token: str) -> str:
        return f"{self.public_base_url}{path}?{urlencode({'token': token})}"

    def _user_by_email(self, email: str) -> User:
        user = self.users.get_by_email(email.strip().lower())
        if user is None:
            raise UserNotFound()
        return user

    def _user_by_id(self, user_id: int) -> User:
        user = self.users.get_by_id(user_id)
        if user is None:
            raise UserNotFound()
        return user

    def _send_confirmation(self, user: User) -> None:
        raw = self.proofs.create(user, ProofKind.CONFIRMATION, self.confirmation_window)
        hours = int(self.confirmation_window.total_seconds() // 3600)
        subject, body = confirmation_email(user.username, self._link("/api/v1/auth/register/confirm", raw), hours)
        self.sender.send(user.email, body, subject)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    @operation
    def register(self, ctx: RequestContext, username: str, email: str, password: str) -> User:
        email = email.strip().lower()
        if self.users.username_exists(username):
            raise ConflictError(ConflictReason.USERNAME_TAKEN)
        if self.users.email_exists(email):
            raise ConflictError(ConflictReason.EMAIL_TAKEN)

        user = User(
            username=username,
            email=email,
            hashed_password=hash_password(password),
            mfa_secret=self.totp.generate_secret(),
            roles=[Role.USER.value],
            created_at=self._clock.now().isoformat(),
        )
        try:
            user.id = self.users.create_user(user)
        except IntegrityError:
            # Lost a race with a concurrent registration for the same identity.
            reason = (
                ConflictReason.USERNAME_TAKEN if self.users.username_exists(username) else ConflictReason.EMAIL_TAKEN
            )
            raise ConflictError(reason) from None

        logger.info("Registered user_id=%s [%s]", user.id, ctx.correlation_id)
        self._send_confirmation(user)
        return user

    @operation
    def resend_confirmation(self, ctx: RequestContext, email: str) -> User:
        user = self._user_by_email(email)
        if user.enabled:
            raise AccountAlreadyEnabled()
        self._send_confirmation(user)
        return user

    @operation
    def confirm_registration(self, ctx: RequestContext, token: str) -> User:
        proof = self.proofs.consume(token, ProofKind.CONFIRMATION)
        user = self._user_by_id(proof.user_id)
        if user.enabled:
            raise AccountAlreadyEnabled()
        self.users.enable(user.email)
        user.enabled = True
        logger.info("Confirmed user_id=%s [%s]", user.id, ctx.correlation_id)
        return user

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    @operation
    def forgot_password(self, ctx: RequestContext, email: str) -> User:
        user = self._user_by_email(email)
        raw = self.proofs.create(user, ProofKind.PASSWORD_RESET, self.reset_window)
        hours = int(self.reset_window.total_seconds() // 3600)
        subject, body = password_reset_email(user.username, self._link("/api/v1/auth/reset-password", raw), hours)
        self.sender.send(user.email, body, subject)
        return user

    @operation
    def reset_password(self, ctx: RequestContext, token: str, password: str, confirm: str) -> User:
        if password != confirm:
            raise PasswordMismatch()
        proof = self.proofs.consume(token, ProofKind.PASSWORD_RESET)
        user = self._user_by_id(proof.user_id)
        user.hashed_password = hash_password(password)
        self.users.save(user)
        self.ledger.revoke_all_for_user(user.id)
        logger.info("Password reset for user_id=%s [%s]", user.id, ctx.correlation_id)
        return user

    # ------------------------------------------------------------------
    # Authenticated profile operations
    # ------------------------------------------------------------------

    @operation
    def change_password(
        self, ctx: RequestContext, principal: Principal, current: str, new: str, confirm: str
    ) -> User:
        user = self._user_by_id(principal.user_id)
        if not verify_password(current, user.hashed_password):
            raise BadCredentials("Current password is incorrect.")
        if new != confirm:
            raise PasswordMismatch()
        user.hashed_password = hash_password(new)
        self.users.save(user)
        subject, body = password_changed_email(user.username)
        self.dispatcher.send_later(user.email, body, subject)
        logger.info("Password changed for user_id=%s [%s]", user.id, ctx.correlation_id)
        return user

    @operation
    def request_email_change(self, ctx: RequestContext, principal: Principal, new_email: str, password: str) -> User:
        """Mail a confirmation link to new_email. All of the user's tokens are revoked."""
        new_email = new_email.strip().lower()
        user = self._user_by_id(principal.user_id)
        if new_email == user.email:
            raise SameEmail()
        if self.users.email_exists(new_email):
            raise ConflictError(ConflictReason.EMAIL_TAKEN)
        if not verify_password(password, user.hashed_password):
            raise BadCredentials("Password is incorrect.")

        self.ledger.revoke_all_for_user(user.id)
        raw = self.proofs.create(user, ProofKind.EMAIL_CHANGE, self.email_change_window, payload=new_email)
        minutes = int(self.email_change_window.total_seconds() // 60)
        subject, body = email_change_email(user.username, self._link("/api/v1/profile/email/confirm", raw), minutes)
        self.sender.send(new_email, body, subject)
        logger.info("Email change requested for user_id=%s [%s]", user.id, ctx.correlation_id)
        return user

    @operation
    def confirm_email_change(self, ctx: RequestContext, token: str) -> User:
        """Apply the emailed change. A conflict found here leaves the link unspent."""
        pending = self.proofs.validate(token, ProofKind.EMAIL_CHANGE)
        new_email = pending.payload or ""
        if self.users.email_exists(new_email):
            raise ConflictError(ConflictReason.EMAIL_TAKEN)
        proof = self.proofs.consume(token, ProofKind.EMAIL_CHANGE)
        user = self._user_by_id(proof.user_id)
        user.email = new_email
        try:
            self.users.save(user)
        except IntegrityError:
            raise ConflictError(ConflictReason.EMAIL_TAKEN) from None
        logger.info("Email changed for user_id=%s [%s]", user.id, ctx.correlation_id)
        return user

    @operation
    def set_mfa(self, ctx: RequestContext, principal: Principal, enabled: bool) -> User:
        user = self._user_by_id(principal.user_id)
        user.mfa_enabled = enabled
        self.users.save(user)
        logger.info("MFA %s for user_id=%s [%s]", "enabled" if enabled else "disabled", user.id, ctx.correlation_id)
        return user

    def provisioning_uri(self, user: User) -> str:
        return self.totp.provisioning_uri(user.mfa_secret, user.email)
