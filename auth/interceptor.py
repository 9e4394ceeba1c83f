"""
auth/interceptor.py -- The per-request authentication decision.

    no bearer header                    -> None (unauthenticated, pass through)
    bearer present, decode fails        -> Unauthorized
    decoded, not an access token        -> Unauthorized
    decoded, ledger says dead/unknown   -> Unauthorized
    decoded and live                    -> Principal

Every failure raises the same UnauthorizedError with the same message, so a
caller cannot tell a forged signature from a revoked token. The specific
reason is logged server side at DEBUG.

The interceptor only computes the Principal. Attaching it to the request and
clearing it afterwards is the HTTP middleware's job (api/main.py).
"""

from __future__ import annotations

import logging

from auth.codec import TokenCodec
from auth.errors import InvalidToken, UnauthorizedError
from auth.ledger import TokenLedger
from auth.models import Principal, TokenKind

logger = logging.getLogger("edgeauth.auth.interceptor")

GENERIC_MESSAGE = "Invalid or expired authentication token."


def parse_bearer(header: str | None) -> str | None:
    """Return the token from an 'Authorization: Bearer <token>' value, else None."""
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class RequestInterceptor:
    def __init__(self, codec: TokenCodec, ledger: TokenLedger) -> None:
        self._codec = codec
        self._ledger = ledger

    def _reject(self, reason: str, path: str | None) -> UnauthorizedError:
        logger.debug("Rejected bearer token on %s: %s", path or "?", reason)
        return UnauthorizedError(GENERIC_MESSAGE, path=path)

    def authenticate(self, authorization: str | None, path: str | None = None) -> Principal | None:
        token = parse_bearer(authorization)
        if token is None:
            return None

        try:
            claims = self._codec.decode(token)
        except InvalidToken as exc:
            raise self._reject(type(exc).__name__, path) from None

        if claims.get("type") != TokenKind.ACCESS.value:
            raise self._reject("not an access token", path)

        entry = self._ledger.lookup(token)
        if entry is None or entry.expired or entry.revoked:
            raise self._reject("not live in ledger", path)
        if entry.kind is not TokenKind.ACCESS or entry.user_id != claims.get("uid"):
            raise self._reject("ledger entry does not match claims", path)

        return Principal(
            user_id=entry.user_id,
            email=claims["sub"],
            roles=frozenset(str(claims.get("scope", "")).split()),
            token_id=claims["jti"],
            token=token,
        )
