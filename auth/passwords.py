"""
auth/passwords.py -- bcrypt password hashing and comparison.

bcrypt is used directly (no passlib wrapper): passlib's wrap-bug probe builds
a >72-byte password that bcrypt 4.x rejects outright. The API layer caps
password fields at 72 characters, so nothing is ever silently truncated.

Cost factor comes from Settings.bcrypt_rounds (tests lower it to 4).
"""

from __future__ import annotations

import bcrypt

from core.config import get_settings

_settings = get_settings()


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A corrupt stored hash counts as a mismatch rather than a server error.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False
