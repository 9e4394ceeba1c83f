"""
cache/store.py -- In-process TTL store for emailed one-time codes.

One entry per user email: (code, inserted_at). Reads past the TTL treat the
entry as absent and drop it (lazy expiry); purge_expired() is the periodic
sweep run by the API lifespan task.

All mutations hold one lock, so a read can never observe a code that was
replaced by a concurrent set(). consume() is the check-and-delete used by
the Email-OTP engine to make codes single-use.

Usage:
    cache = SecretCache(ttl=300)
    cache.set("alice@x.com", "042917")
    cache.consume("alice@x.com", "042917")   # True, entry gone
    cache.purge_expired()

Layer rule: may import from core/ only.
"""

from __future__ import annotations

import hmac
import threading
from typing import NamedTuple, Optional

from core.clock import Clock

_DEFAULT_TTL = 5 * 60  # seconds


class _Entry(NamedTuple):
    value: str
    inserted_at: float


class SecretCache:
    def __init__(self, ttl: float = _DEFAULT_TTL, clock: Optional[Clock] = None) -> None:
        self.ttl = ttl
        self._clock = clock or Clock()
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(key: str) -> str:
        return key.strip().lower()

    def _live(self, key: str, now: float) -> Optional[_Entry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if now - entry.inserted_at >= self.ttl:
            del self._entries[key]
            return None
        return entry

    def get(self, key: str) -> Optional[str]:
        """Return the cached value if present and not expired."""
        with self._lock:
            entry = self._live(self._key(key), self._clock.timestamp())
        return entry.value if entry else None

    def set(self, key: str, value: str) -> None:
        """Store value under key, replacing any existing entry."""
        with self._lock:
            self._entries[self._key(key)] = _Entry(value, self._clock.timestamp())

    def evict(self, key: str) -> bool:
        """Remove key. Returns True if something was removed."""
        with self._lock:
            return self._entries.pop(self._key(key), None) is not None

    def consume(self, key: str, expected: str) -> Optional[bool]:
        """Compare expected against the cached value and remove it on match.

        Returns None when nothing live is cached, False on mismatch (entry
        kept), True on match (entry removed).
        """
        k = self._key(key)
        with self._lock:
            entry = self._live(k, self._clock.timestamp())
            if entry is None:
                return None
            if not hmac.compare_digest(entry.value.encode(), expected.encode()):
                return False
            del self._entries[k]
            return True

    def purge_expired(self) -> int:
        """Delete all entries older than TTL. Returns number of entries removed."""
        cutoff = self._clock.timestamp() - self.ttl
        with self._lock:
            stale = [k for k, e in self._entries.items() if e.inserted_at <= cutoff]
            for k in stale:
                del self._entries[k]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def close(self) -> None:
        with self._lock:
            self._entries.clear()
