"""Unit tests for auth/totp.py -- RFC 6238 codes via pyotp.

The clock is pinned to 12:00:10 UTC so step boundaries are predictable:
the current 30-second step started at 12:00:00, the previous one at 11:59:30.

Window and clock tests use step_codes, which makes every step's code its
counter, so codes of nearby steps never collide. The real algorithm is
checked against the RFC 6238 reference vectors.
"""

import re
from datetime import datetime, timedelta, timezone

import pyotp
import pytest

from auth.totp import DIGITS, TotpEngine
from conftest import FakeClock

NOW = datetime(2024, 1, 1, 12, 0, 10, tzinfo=timezone.utc)

# RFC 6238 appendix B, SHA-1 seed "12345678901234567890". The 6-digit codes
# are the last six digits of the published 8-digit values.
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
RFC_VECTORS = [
    (59, "287082"),
    (1111111109, "081804"),
    (1111111111, "050471"),
    (1234567890, "005924"),
    (2000000000, "279037"),
]


def _at(epoch: int) -> datetime:
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


@pytest.fixture
def pinned():
    return FakeClock(NOW)


@pytest.fixture
def engine(pinned):
    return TotpEngine("EdgeAuth-Test", "EdgeAuth 2FA", pinned, valid_window=1)


@pytest.fixture
def secret(engine):
    return engine.generate_secret()


@pytest.fixture
def step_codes(monkeypatch):
    monkeypatch.setattr(pyotp.TOTP, "generate_otp", lambda self, counter: f"{counter % 10**DIGITS:0{DIGITS}d}")


class TestReferenceVectors:
    @pytest.mark.parametrize("epoch,code", RFC_VECTORS)
    def test_code_at(self, engine, epoch, code):
        assert engine.code_at(RFC_SECRET, _at(epoch)) == code

    @pytest.mark.parametrize("epoch,code", RFC_VECTORS)
    def test_verify_at(self, epoch, code):
        strict = TotpEngine("EdgeAuth-Test", "EdgeAuth 2FA", FakeClock(_at(epoch)), valid_window=0)
        assert strict.verify(RFC_SECRET, code)

    def test_previous_step_rejected_without_window(self):
        # 1111111109 and 1111111111 straddle a step boundary.
        strict = TotpEngine("EdgeAuth-Test", "EdgeAuth 2FA", FakeClock(_at(1111111111)), valid_window=0)
        assert strict.verify(RFC_SECRET, "050471")
        assert not strict.verify(RFC_SECRET, "081804")

    def test_previous_step_accepted_with_window(self):
        lenient = TotpEngine("EdgeAuth-Test", "EdgeAuth 2FA", FakeClock(_at(1111111111)), valid_window=1)
        assert lenient.verify(RFC_SECRET, "081804")


class TestVerify:
    def test_current_code(self, engine, secret):
        assert engine.verify(secret, engine.code_at(secret, NOW))

    def test_previous_step_inside_window(self, engine, secret):
        assert engine.verify(secret, engine.code_at(secret, NOW - timedelta(seconds=30)))

    def test_next_step_inside_window(self, engine, secret):
        assert engine.verify(secret, engine.code_at(secret, NOW + timedelta(seconds=30)))

    def test_two_steps_back_rejected(self, engine, secret, step_codes):
        assert engine.verify(secret, engine.code_at(secret, NOW - timedelta(seconds=30)))
        assert not engine.verify(secret, engine.code_at(secret, NOW - timedelta(seconds=60)))

    def test_two_steps_ahead_rejected(self, engine, secret, step_codes):
        assert not engine.verify(secret, engine.code_at(secret, NOW + timedelta(seconds=60)))

    def test_follows_the_clock(self, engine, pinned, secret, step_codes):
        code = engine.code_at(secret, NOW)
        assert engine.verify(secret, code)
        pinned.advance(minutes=10)
        assert not engine.verify(secret, code)
        assert engine.verify(secret, engine.code_at(secret, pinned.now()))

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef", "12 345"])
    def test_malformed_codes(self, engine, secret, code):
        assert not engine.verify(secret, code)


class TestSecretsAndUri:
    def test_secret_is_base32(self, engine):
        secret = engine.generate_secret()
        assert len(secret) == 32
        assert re.fullmatch(r"[A-Z2-7]+", secret)

    def test_secrets_differ(self, engine):
        assert engine.generate_secret() != engine.generate_secret()

    def test_provisioning_uri(self, engine, secret):
        uri = engine.provisioning_uri(secret, "alice@x.com")
        assert uri.startswith("otpauth://totp/")
        assert f"secret={secret}" in uri
        assert "issuer=EdgeAuth-Test" in uri
        for param in ("algorithm=SHA1", "digits=6", "period=30"):
            assert param in uri

    def test_provisioning_uri_defaults_to_label(self, engine, secret):
        uri = engine.provisioning_uri(secret)
        assert "EdgeAuth%202FA" in uri
