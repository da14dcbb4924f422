"""
auth/revocation.py -- In-memory registry of revoked token ids.

A revoked id stays until the token it belonged to would have expired on its
own; after that the signature check rejects the token anyway, so keeping the
id is pointless. Expired ids are dropped lazily:

  - is_revoked() discards the looked-up id if it has expired, and runs a
    full purge every PURGE_EVERY lookups (amortized cleanup).
  - purge() is also called from the background sweep to bound memory, but
    correctness never depends on it.

One threading.Lock guards the map. Lookups can delete entries, so there is
no read-only path that could share a lock.

Construct one per application (see api/main.py lifespan) and inject it. No
module-level instance exists so each test gets an isolated registry.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import datetime

PURGE_EVERY = 256


class RevocationRegistry:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: dict[str, float] = {}  # token id -> expiry (epoch seconds)
        self._lookups = 0
        self._lock = threading.Lock()

    def revoke(self, token_id: str, expires_at: datetime | float) -> None:
        """Record token_id as revoked until expires_at."""
        expiry = expires_at.timestamp() if isinstance(expires_at, datetime) else float(expires_at)
        with self._lock:
            # Never shorten an existing entry
            self._entries[token_id] = max(expiry, self._entries.get(token_id, expiry))

    def is_revoked(self, token_id: str) -> bool:
        now = self._clock()
        with self._lock:
            self._lookups += 1
            if self._lookups % PURGE_EVERY == 0:
                self._purge_locked(now)
            expiry = self._entries.get(token_id)
            if expiry is None:
                return False
            if expiry <= now:
                del self._entries[token_id]
                return False
            return True

    def purge(self) -> int:
        """Drop every expired id. Returns the number removed."""
        with self._lock:
            return self._purge_locked(self._clock())

    def _purge_locked(self, now: float) -> int:
        expired = [tid for tid, expiry in self._entries.items() if expiry <= now]
        for tid in expired:
            del self._entries[tid]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
