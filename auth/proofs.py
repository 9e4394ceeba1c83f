"""
auth/proofs.py -- Lifecycle of emailed single-use proofs.

States (computed, never stored):

    PENDING   confirmed_at is None and now <= expires_at
    CONFIRMED confirmed_at is set                         terminal
    EXPIRED   confirmed_at is None and now > expires_at   terminal

PENDING -> CONFIRMED happens only in consume(), through the store's
conditional UPDATE, so an expired or already-spent proof cannot be
confirmed even when two requests race on the same link.

create() is delete-then-insert: at most one live proof per (user, kind).

Raw proof values are secrets.token_urlsafe(32) (256 bits). Only
HMAC-SHA256(SECRET_KEY, raw) is persisted, so a leaked database does not
yield usable links.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta

from auth.errors import AlreadyConsumed, ProofExpired, ProofNotFound
from auth.models import EphemeralProof, ProofKind, ProofState, User
from auth.store import ProofStore
from core.clock import Clock

logger = logging.getLogger("edgeauth.auth.proofs")


def proof_state(proof: EphemeralProof, now: datetime) -> ProofState:
    if proof.confirmed_at is not None:
        return ProofState.CONFIRMED
    if now > proof.expires_at:
        return ProofState.EXPIRED
    return ProofState.PENDING


class ProofManager:
    def __init__(self, store: ProofStore, secret_key: str, clock: Clock | None = None) -> None:
        self._store = store
        self._key = secret_key.encode()
        self._clock = clock or Clock()

    def _digest(self, raw: str) -> str:
        return hmac.new(self._key, raw.encode(), hashlib.sha256).hexdigest()

    def create(self, user: User, kind: ProofKind, window: timedelta, payload: str | None = None) -> str:
        """Replace the user's outstanding proofs of this kind with a new one.

        Returns the raw value for the emailed link. It is not recoverable
        afterwards.
        """
        removed = self._store.delete_all_for_user(user.id, kind)
        raw = secrets.token_urlsafe(32)
        now = self._clock.now()
        self._store.save(
            EphemeralProof(
                user_id=user.id,
                kind=kind,
                value_hash=self._digest(raw),
                expires_at=now + window,
                payload=payload,
                created_at=now.isoformat(),
            )
        )
        logger.info("Created %s proof for user_id=%s (replaced %d)", kind.value, user.id, removed)
        return raw

    def _find(self, raw: str, kind: ProofKind | None) -> EphemeralProof:
        proof = self._store.find_by_value(self._digest(raw)) if raw else None
        if proof is None or (kind is not None and proof.kind != kind):
            raise ProofNotFound()
        return proof

    def validate(self, raw: str, kind: ProofKind | None = None) -> EphemeralProof:
        """Return the proof if it is PENDING, otherwise raise. Does not mutate."""
        proof = self._find(raw, kind)
        state = proof_state(proof, self._clock.now())
        if state is ProofState.CONFIRMED:
            raise AlreadyConsumed()
        if state is ProofState.EXPIRED:
            raise ProofExpired()
        return proof

    def consume(self, raw: str, kind: ProofKind | None = None) -> EphemeralProof:
        """Transition PENDING -> CONFIRMED exactly once.

        Raises ProofNotFound, AlreadyConsumed or ProofExpired. When the
        conditional UPDATE loses (concurrent consumer, or the window closed
        between the read and the write) the row is re-read to report which
        terminal state won.
        """
        proof = self.validate(raw, kind)
        now = self._clock.now()
        if self._store.mark_confirmed(proof.value_hash, now):
            proof.confirmed_at = now
            logger.info("Consumed %s proof for user_id=%s", proof.kind.value, proof.user_id)
            return proof

        current = self._store.find_by_value(proof.value_hash)
        if current is None:
            raise ProofNotFound()
        if current.confirmed_at is not None:
            raise AlreadyConsumed()
        raise ProofExpired()
