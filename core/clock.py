"""
core/clock.py -- Injectable wall clock.

Every expiry comparison in EdgeAuth (token exp, proof windows, OTP TTLs,
TOTP time steps) reads the time through a Clock instance handed in at
construction, never through datetime.now() directly. Tests substitute a
clock they can move.
"""

from __future__ import annotations

from datetime import datetime, timezone


class Clock:
    """System clock. now() is always timezone-aware UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def timestamp(self) -> float:
        return self.now().timestamp()
