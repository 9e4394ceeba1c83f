"""
auth/ledger.py -- Authoritative record of which issued tokens are live.

A signature alone never makes a token usable: the interceptor also asks the
ledger. Revocation is a single UPDATE against TokenStore, so it is visible
to the very next is_valid() call.
"""

from __future__ import annotations

import logging

from auth.models import LedgerEntry, TokenKind, User
from auth.store import TokenStore

logger = logging.getLogger("edgeauth.auth.ledger")


class TokenLedger:
    def __init__(self, store: TokenStore) -> None:
        self._store = store

    def record(self, token: str, user: User, kind: TokenKind, jti: str | None = None) -> LedgerEntry:
        """Persist a freshly issued token as live (expired=False, revoked=False)."""
        entry = LedgerEntry(user_id=user.id, token=token, kind=kind, jti=jti)
        entry.id = self._store.save(entry)
        logger.debug("Recorded %s token jti=%s for user_id=%s", kind.value, jti, user.id)
        return entry

    def lookup(self, token: str) -> LedgerEntry | None:
        return self._store.find_by_value(token)

    def is_valid(self, token: str) -> bool:
        entry = self._store.find_by_value(token)
        return entry is not None and not entry.expired and not entry.revoked

    def live_tokens(self, user_id: int) -> list[LedgerEntry]:
        return self._store.find_all_valid_for_user(user_id)

    def revoke_all_for_user(self, user_id: int) -> int:
        """Expire and revoke every live token of user_id. Returns how many."""
        count = self._store.revoke_all_for_user(user_id)
        if count:
            logger.info("Revoked %d live token(s) for user_id=%s", count, user_id)
        return count

    def revoke(self, token: str) -> bool:
        """Expire and revoke one token. Returns False if unknown or already dead."""
        return self._store.revoke(token)
