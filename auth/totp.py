"""
auth/totp.py -- Time-based one-time codes (RFC 6238) via pyotp.

Fixed parameters: SHA-1, 6 digits, 30-second step. These are what every
authenticator app assumes by default, so the provisioning URI leaves no
room for client disagreement.

The secret is generated once at registration and never rotated here.
verify() is pure: secret + code + the injected clock, no I/O.
"""

from __future__ import annotations

import hashlib
from datetime import datetime

import pyotp

from core.clock import Clock

DIGITS = 6
INTERVAL = 30


class TotpEngine:
    def __init__(self, issuer: str, label: str, clock: Clock | None = None, valid_window: int = 1) -> None:
        self.issuer = issuer
        self.label = label
        self.valid_window = valid_window
        self._clock = clock or Clock()

    @staticmethod
    def _totp(secret: str) -> pyotp.TOTP:
        return pyotp.TOTP(secret, digits=DIGITS, digest=hashlib.sha1, interval=INTERVAL)

    def generate_secret(self) -> str:
        """Return a new base32 secret (32 chars, 160 bits)."""
        return pyotp.random_base32()

    def provisioning_uri(self, secret: str, account: str | None = None) -> str:
        """otpauth:// URI for QR rendering or manual entry in an authenticator app.

        pyotp omits algorithm/digits/period when they are the RFC defaults;
        they are spelled out here so no client has to assume them.
        """
        uri = self._totp(secret).provisioning_uri(name=account or self.label, issuer_name=self.issuer)
        for param, value in (("algorithm", "SHA1"), ("digits", DIGITS), ("period", INTERVAL)):
            if f"{param}=" not in uri:
                uri += f"&{param}={value}"
        return uri

    def code_at(self, secret: str, when: datetime) -> str:
        return self._totp(secret).at(when)

    def verify(self, secret: str, code: str) -> bool:
        """True if code matches the current step (+/- valid_window steps)."""
        if not code or len(code) != DIGITS or not code.isdigit():
            return False
        return self._totp(secret).verify(code, for_time=self._clock.now(), valid_window=self.valid_window)
