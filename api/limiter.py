"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and the v1 routers
(to apply per-route limits with @limiter.limit()).

A single shared instance keeps one in-memory counter store for all routes.
RATE_LIMIT_ENABLED=false turns every limit into a no-op (the test suite
does this so repeated logins do not trip 429s).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_settings = get_settings()

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://", enabled=_settings.rate_limit_enabled)

LOGIN_LIMIT = _settings.login_rate_limit
OTP_LIMIT = _settings.otp_rate_limit
