"""
auth/email_otp.py -- Emailed 6-digit one-time codes.

issue() always evicts before inserting, so at most one code per user is
outstanding and an old code cannot validate once a newer one exists. The
email goes out through MailDispatcher and issue() returns as soon as the
code is cached.

verify() is single-use: a matching code is removed in the same locked step
that compares it (SecretCache.consume), so a code cannot be replayed for
the rest of its TTL.
"""

from __future__ import annotations

import logging
import secrets
from concurrent.futures import Future

from auth.errors import NoActiveChallenge
from auth.mailer import MailDispatcher, otp_email
from auth.models import User
from cache.store import SecretCache

logger = logging.getLogger("edgeauth.auth.email_otp")

CODE_DIGITS = 6


def generate_code() -> str:
    return f"{secrets.randbelow(10**CODE_DIGITS):0{CODE_DIGITS}d}"


class EmailOtpEngine:
    def __init__(self, cache: SecretCache, dispatcher: MailDispatcher) -> None:
        self._cache = cache
        self._dispatcher = dispatcher

    def issue(self, user: User) -> Future:
        """Cache a fresh code for user and queue the email. Returns the delivery Future."""
        code = generate_code()
        self._cache.evict(user.email)
        self._cache.set(user.email, code)
        subject, body = otp_email(code, max(1, int(self._cache.ttl // 60)))
        logger.info("Issued email OTP for user_id=%s", user.id)
        return self._dispatcher.send_later(user.email, body, subject)

    def verify(self, user: User, code: str) -> bool:
        """True iff code matches the outstanding code; the match spends it.

        Raises NoActiveChallenge when no unexpired code is cached.
        """
        result = self._cache.consume(user.email, code or "")
        if result is None:
            raise NoActiveChallenge()
        return result
