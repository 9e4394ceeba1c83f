"""
auth/mailer.py -- Outbound transactional email.

Two delivery modes, chosen by the caller:

  EmailSender.send()          synchronous; raises DeliveryFailure. Used where
                              the email *is* the deliverable (confirmation,
                              reset, email-change links) so the caller can
                              report the failure.

  MailDispatcher.send_later() fire-and-forget on a small worker pool. Used for
                              one-time codes and notifications; failures are
                              logged and never reach the request that
                              triggered them.

With no SMTP_HOST configured the sender runs in dev mode and logs a preview
instead of connecting anywhere.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from concurrent.futures import Future, ThreadPoolExecutor
from email.message import EmailMessage
from html import escape

from auth.errors import DeliveryFailure

logger = logging.getLogger("edgeauth.auth.mailer")


def redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailSender:
    def __init__(
        self,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        smtp_use_tls: bool = True,
        from_email: str = "no-reply@edgeauth.local",
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send(self, to: str, body: str, subject: str) -> None:
        """Deliver one HTML email or raise DeliveryFailure."""
        if not self.is_configured:
            logger.info("Email (dev mode) to=%s subject=%r body=%s", redact_email(to), subject, body[:200])
            return

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = to
        msg.set_content("This message requires an HTML-capable mail client.")
        msg.add_alternative(body, subtype="html")

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.send_message(msg)
            else:
                with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=self.timeout) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Email to %s failed: %s: %s", redact_email(to), type(exc).__name__, exc)
            raise DeliveryFailure() from exc
        logger.info("Email sent to=%s subject=%r", redact_email(to), subject)


class MailDispatcher:
    """Runs EmailSender.send on a worker pool without blocking the caller."""

    def __init__(self, sender: EmailSender, max_workers: int = 4) -> None:
        self.sender = sender
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="edgeauth-mail")

    def _deliver(self, to: str, body: str, subject: str) -> bool:
        try:
            self.sender.send(to, body, subject)
        except DeliveryFailure:
            logger.warning("Background email to %s was not delivered (subject=%r)", redact_email(to), subject)
            return False
        return True

    def send_later(self, to: str, body: str, subject: str) -> Future:
        """Queue an email. The returned Future resolves to True if it was delivered."""
        return self._pool.submit(self._deliver, to, body, subject)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)


# ---------------------------------------------------------------------------
# Message bodies
# ---------------------------------------------------------------------------

_LAYOUT = """<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2933; line-height: 1.6;">
  <div style="max-width: 560px; margin: 0 auto; padding: 24px;">
    <h2 style="margin-top: 0;">{title}</h2>
    {content}
    <p style="color: #7b8794; font-size: 12px;">If you did not request this, you can ignore this email.</p>
  </div>
</body>
</html>"""


def _link(url: str, label: str) -> str:
    return (
        f'<p><a href="{url}" style="background: #2563eb; color: #fff; padding: 10px 18px; '
        f'border-radius: 6px; text-decoration: none;">{label}</a></p>'
        f'<p style="font-size: 12px;">Or paste this link into your browser:<br>{url}</p>'
    )


def confirmation_email(username: str, url: str, hours: int) -> tuple[str, str]:
    content = (
        f"<p>Hi {escape(username)},</p><p>Thanks for registering. Confirm your email address to activate your account.</p>"
        + _link(url, "Confirm email")
        + f"<p>This link will expire in {hours} hours.</p>"
    )
    return "Confirm your email", _LAYOUT.format(title="Confirm your email", content=content)


def password_reset_email(username: str, url: str, hours: int) -> tuple[str, str]:
    content = (
        f"<p>Hi {escape(username)},</p><p>We received a request to reset your password.</p>"
        + _link(url, "Reset password")
        + f"<p>This link will expire in {hours} hours.</p>"
    )
    return "Reset your password", _LAYOUT.format(title="Reset your password", content=content)


def email_change_email(username: str, url: str, minutes: int) -> tuple[str, str]:
    content = (
        f"<p>Hi {escape(username)},</p><p>Confirm this address to make it the new email for your account.</p>"
        + _link(url, "Confirm new email")
        + f"<p>This link will expire in {minutes} minutes.</p>"
    )
    return "Confirm your new email", _LAYOUT.format(title="Confirm your new email", content=content)


def otp_email(code: str, minutes: int) -> tuple[str, str]:
    content = (
        "<p>Your verification code is:</p>"
        f'<p style="font-size: 28px; letter-spacing: 6px; font-weight: bold;">{code}</p>'
        f"<p>This code will expire in {minutes} minutes.</p>"
    )
    return "Your verification code", _LAYOUT.format(title="Your verification code", content=content)


def password_changed_email(username: str) -> tuple[str, str]:
    content = f"<p>Hi {escape(username)},</p><p>The password for your account was just changed.</p>"
    return "Your password was changed", _LAYOUT.format(title="Password changed", content=content)
