"""Unit tests for auth/mailer.py -- sender modes, dispatcher, message bodies."""

import logging
import smtplib

import pytest

from auth.errors import DeliveryFailure
from auth.mailer import (
    EmailSender,
    MailDispatcher,
    confirmation_email,
    otp_email,
    password_changed_email,
    redact_email,
)


class _RefusingSMTP:
    def __init__(self, *args, **kwargs):
        raise ConnectionRefusedError("connection refused")


class TestEmailSender:
    def test_redact_email(self):
        assert redact_email("alice@example.com") == "al***@example.com"
        assert redact_email("nonsense") == "redacted"

    def test_dev_mode_logs_instead_of_sending(self, caplog):
        sender = EmailSender()
        assert not sender.is_configured
        with caplog.at_level(logging.INFO, logger="edgeauth.auth.mailer"):
            sender.send("alice@example.com", "<p>hello</p>", "Subject")
        assert "dev mode" in caplog.text
        assert "alice@example.com" not in caplog.text

    def test_smtp_failure_raises_delivery_failure(self, monkeypatch):
        monkeypatch.setattr(smtplib, "SMTP", _RefusingSMTP)
        sender = EmailSender(smtp_host="mail.invalid", smtp_port=587)
        with pytest.raises(DeliveryFailure):
            sender.send("alice@example.com", "<p>hello</p>", "Subject")


class TestMailDispatcher:
    def test_send_later_delivers(self, sender):
        dispatcher = MailDispatcher(sender, max_workers=1)
        try:
            assert dispatcher.send_later("a@x.com", "<p>x</p>", "S").result(timeout=5) is True
        finally:
            dispatcher.shutdown()
        assert sender.last_to("a@x.com").subject == "S"

    def test_failure_is_contained(self, sender, caplog):
        sender.fail = True
        dispatcher = MailDispatcher(sender, max_workers=1)
        try:
            with caplog.at_level(logging.WARNING, logger="edgeauth.auth.mailer"):
                assert dispatcher.send_later("a@x.com", "<p>x</p>", "S").result(timeout=5) is False
        finally:
            dispatcher.shutdown()
        assert "not delivered" in caplog.text


class TestTemplates:
    def test_confirmation_escapes_username(self):
        subject, body = confirmation_email("<script>", "http://h/confirm?token=abc", 24)
        assert subject == "Confirm your email"
        assert "<script>" not in body
        assert "&lt;script&gt;" in body
        assert "http://h/confirm?token=abc" in body
        assert "24 hours" in body

    def test_otp_email(self):
        _subject, body = otp_email("042917", 5)
        assert ">042917<" in body
        assert "5 minutes" in body

    def test_password_changed(self):
        subject, _body = password_changed_email("alice")
        assert subject == "Your password was changed"
