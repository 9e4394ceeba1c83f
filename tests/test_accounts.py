"""Unit tests for auth/accounts.py -- registration, reset and profile flows.

Covers:
- register creates a disabled ROLE_USER account and emails a confirmation link
- duplicate username / email are ConflictErrors with distinct reasons
- confirmation enables the account exactly once
- resend invalidates the previous link
- password reset consumes its link and revokes every token
- change password / email and the MFA toggle
"""

from unittest.mock import MagicMock

import pytest

from auth.errors import (
    AccountAlreadyEnabled,
    AlreadyConsumed,
    BadCredentials,
    ConflictError,
    ConflictReason,
    DeliveryFailure,
    PasswordMismatch,
    ProofExpired,
    ProofNotFound,
    SameEmail,
    UserNotFound,
)
from auth.models import Principal, Role, TokenKind
from auth.passwords import verify_password
from conftest import link_token


def _principal(user) -> Principal:
    return Principal(user_id=user.id, email=user.email, roles=frozenset(user.roles), token_id="jti", token="tok")


class TestRegistration:
    def test_register_creates_disabled_user(self, accounts, users, sender, ctx):
        user = accounts.register(ctx, "alice", "Alice@X.com", "correct-horse")

        assert user.id is not None
        assert user.email == "alice@x.com"
        assert not user.enabled
        assert user.roles == [Role.USER.value]
        stored = users.get_by_username("alice")
        assert stored.mfa_secret
        assert verify_password("correct-horse", stored.hashed_password)

        mail = sender.last_to("alice@x.com")
        assert "http://testserver/api/v1/auth/register/confirm?token=" in mail.body
        assert "24 hours" in mail.body

    def test_duplicate_username(self, accounts, ctx):
        accounts.register(ctx, "alice", "alice@x.com", "correct-horse")
        with pytest.raises(ConflictError) as info:
            accounts.register(ctx, "alice", "other@x.com", "correct-horse")
        assert info.value.reason is ConflictReason.USERNAME_TAKEN
        assert info.value.status_code == 400

    def test_duplicate_email_case_insensitive(self, accounts, ctx):
        accounts.register(ctx, "alice", "alice@x.com", "correct-horse")
        with pytest.raises(ConflictError) as info:
            accounts.register(ctx, "alice2", "ALICE@x.com", "correct-horse")
        assert info.value.reason is ConflictReason.EMAIL_TAKEN

    def test_delivery_failure_propagates(self, accounts, sender, ctx):
        sender.fail = True
        with pytest.raises(DeliveryFailure):
            accounts.register(ctx, "alice", "alice@x.com", "correct-horse")

    def test_confirm_enables_once(self, accounts, users, sender, ctx, monkeypatch):
        accounts.register(ctx, "alice", "alice@x.com", "correct-horse")
        token = link_token(sender.last_to("alice@x.com").body)

        spy = MagicMock(wraps=users.enable)
        monkeypatch.setattr(users, "enable", spy)

        user = accounts.confirm_registration(ctx, token)
        assert user.enabled
        assert users.get_by_username("alice").enabled
        spy.assert_called_once_with("alice@x.com")

        with pytest.raises(AlreadyConsumed):
            accounts.confirm_registration(ctx, token)
        assert spy.call_count == 1

    def test_confirm_after_window(self, accounts, sender, clock, ctx):
        accounts.register(ctx, "alice", "alice@x.com", "correct-horse")
        token = link_token(sender.last_to("alice@x.com").body)
        clock.advance(hours=25)
        with pytest.raises(ProofExpired):
            accounts.confirm_registration(ctx, token)

    def test_confirm_unknown_token(self, accounts, ctx):
        with pytest.raises(ProofNotFound):
            accounts.confirm_registration(ctx, "no-such-token")

    def test_resend_replaces_link(self, accounts, sender, ctx):
        accounts.register(ctx, "alice", "alice@x.com", "correct-horse")
        first = link_token(sender.last_to("alice@x.com").body)
        accounts.resend_confirmation(ctx, "alice@x.com")
        second = link_token(sender.last_to("alice@x.com").body)

        assert first != second
        with pytest.raises(ProofNotFound):
            accounts.confirm_registration(ctx, first)
        assert accounts.confirm_registration(ctx, second).enabled

    def test_resend_for_enabled_account(self, accounts, ctx, make_user):
        make_user()
        with pytest.raises(AccountAlreadyEnabled):
            accounts.resend_confirmation(ctx, "alice@x.com")

    def test_resend_unknown_email(self, accounts, ctx):
        with pytest.raises(UserNotFound):
            accounts.resend_confirmation(ctx, "ghost@x.com")


class TestPasswordReset:
    def test_reset_flow(self, accounts, users, ledger, sender, ctx, make_user):
        user = make_user()
        ledger.record("live-token", user, TokenKind.ACCESS)

        accounts.forgot_password(ctx, "alice@x.com")
        mail = sender.last_to("alice@x.com")
        assert "/api/v1/auth/reset-password?token=" in mail.body
        token = link_token(mail.body)

        accounts.reset_password(ctx, token, "brand-new-pass", "brand-new-pass")
        assert verify_password("brand-new-pass", users.get_by_id(user.id).hashed_password)
        assert not ledger.is_valid("live-token")

        with pytest.raises(AlreadyConsumed):
            accounts.reset_password(ctx, token, "another-pass", "another-pass")

    def test_mismatch_does_not_spend_link(self, accounts, sender, ctx, make_user):
        make_user()
        accounts.forgot_password(ctx, "alice@x.com")
        token = link_token(sender.last_to("alice@x.com").body)

        with pytest.raises(PasswordMismatch):
            accounts.reset_password(ctx, token, "brand-new-pass", "different-pass")
        accounts.reset_password(ctx, token, "brand-new-pass", "brand-new-pass")

    def test_confirmation_link_cannot_reset(self, accounts, sender, ctx):
        accounts.register(ctx, "alice", "alice@x.com", "correct-horse")
        token = link_token(sender.last_to("alice@x.com").body)
        with pytest.raises(ProofNotFound):
            accounts.reset_password(ctx, token, "brand-new-pass", "brand-new-pass")

    def test_forgot_unknown_email(self, accounts, ctx):
        with pytest.raises(UserNotFound):
            accounts.forgot_password(ctx, "ghost@x.com")


class TestProfile:
    def test_change_password(self, accounts, users, dispatcher, sender, ctx, make_user):
        user = make_user()
        accounts.change_password(ctx, _principal(user), "correct-horse", "brand-new-pass", "brand-new-pass")
        assert verify_password("brand-new-pass", users.get_by_id(user.id).hashed_password)

        dispatcher.shutdown(wait=True)
        assert sender.last_to("alice@x.com").subject == "Your password was changed"

    def test_change_password_wrong_current(self, accounts, ctx, make_user):
        user = make_user()
        with pytest.raises(BadCredentials):
            accounts.change_password(ctx, _principal(user), "nope-nope", "brand-new-pass", "brand-new-pass")

    def test_change_password_mismatch(self, accounts, ctx, make_user):
        user = make_user()
        with pytest.raises(PasswordMismatch):
            accounts.change_password(ctx, _principal(user), "correct-horse", "brand-new-pass", "other-pass")

    def test_email_change_flow(self, accounts, users, ledger, sender, ctx, make_user):
        user = make_user()
        ledger.record("live-token", user, TokenKind.ACCESS)

        accounts.request_email_change(ctx, _principal(user), "New@X.com", "correct-horse")
        assert not ledger.is_valid("live-token")
        mail = sender.last_to("new@x.com")
        assert "/api/v1/profile/email/confirm?token=" in mail.body
        assert "15 minutes" in mail.body
        # Nothing changes until the link is opened.
        assert users.get_by_id(user.id).email == "alice@x.com"

        updated = accounts.confirm_email_change(ctx, link_token(mail.body))
        assert updated.email == "new@x.com"
        assert users.get_by_email("new@x.com").id == user.id
        assert users.get_by_email("alice@x.com") is None

    def test_email_change_link_expires(self, accounts, sender, clock, ctx, make_user):
        user = make_user()
        accounts.request_email_change(ctx, _principal(user), "new@x.com", "correct-horse")
        token = link_token(sender.last_to("new@x.com").body)
        clock.advance(minutes=16)
        with pytest.raises(ProofExpired):
            accounts.confirm_email_change(ctx, token)

    def test_same_email(self, accounts, ctx, make_user):
        user = make_user()
        with pytest.raises(SameEmail):
            accounts.request_email_change(ctx, _principal(user), "ALICE@x.com", "correct-horse")

    def test_email_taken(self, accounts, ctx, make_user):
        user = make_user()
        make_user(username="bob", email="bob@x.com")
        with pytest.raises(ConflictError) as info:
            accounts.request_email_change(ctx, _principal(user), "bob@x.com", "correct-horse")
        assert info.value.reason is ConflictReason.EMAIL_TAKEN

    def test_email_taken_before_confirmation(self, accounts, users, sender, ctx, make_user):
        user = make_user()
        accounts.request_email_change(ctx, _principal(user), "new@x.com", "correct-horse")
        token = link_token(sender.last_to("new@x.com").body)
        bob = make_user(username="bob", email="new@x.com")
        with pytest.raises(ConflictError):
            accounts.confirm_email_change(ctx, token)

        # The link survives the conflict and works once the address is free.
        bob.email = "bob@x.com"
        users.save(bob)
        assert accounts.confirm_email_change(ctx, token).email == "new@x.com"

    def test_email_change_wrong_password(self, accounts, ledger, ctx, make_user):
        user = make_user()
        ledger.record("live-token", user, TokenKind.ACCESS)
        with pytest.raises(BadCredentials):
            accounts.request_email_change(ctx, _principal(user), "new@x.com", "nope-nope")
        assert ledger.is_valid("live-token")

    def test_toggle_mfa(self, accounts, users, ctx, make_user):
        user = make_user()
        assert accounts.set_mfa(ctx, _principal(user), True).mfa_enabled
        assert users.get_by_id(user.id).mfa_enabled
        assert accounts.provisioning_uri(user).startswith("otpauth://totp/")
        assert not accounts.set_mfa(ctx, _principal(user), False).mfa_enabled

    def test_unknown_principal(self, accounts, ctx, make_user):
        user = make_user()
        ghost = Principal(user_id=user.id + 100, email="g@x.com", roles=frozenset(), token_id="j", token="t")
        with pytest.raises(UserNotFound):
            accounts.set_mfa(ctx, ghost, True)
