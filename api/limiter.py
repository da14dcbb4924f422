"""
api/limiter.py -- Per-client token-bucket request throttle.

Every request spends one credit from the bucket of its client key. A bucket
holds up to `capacity` credits and regains one credit every
`refill_seconds`. An empty bucket means HTTP 429 with no body.

Client key: the first entry of X-Forwarded-For when present (the original
client as recorded by the first proxy), otherwise the socket peer address.

BucketRegistry owns all buckets behind one threading.Lock. Buckets are created on
first sight of a key; sweep() drops buckets that are full again (idle
clients) so memory stays bounded. The registry is constructed in the
application lifespan and stored on app.state -- there is no module-level
instance, so each test builds an isolated one.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from starlette.requests import Request

from auth.errors import AuthError, ErrorCode

logger = logging.getLogger("authgate.ratelimit")


def client_key(request: Request) -> str:
    """Derive the rate-limit key for a request."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


class TokenBucket:
    """A single client's credits. Not thread-safe on its own; BucketRegistry locks around it."""

    def __init__(self, capacity: int, refill_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.capacity = capacity
        self.refill_seconds = refill_seconds
        self._clock = clock
        self._available = float(capacity)
        self._last_refill = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._available = min(float(self.capacity), self._available + elapsed / self.refill_seconds)
        self._last_refill = now

    @property
    def available(self) -> float:
        self._refill()
        return self._available

    def is_full(self) -> bool:
        return self.available >= self.capacity

    def take_token(self) -> bool:
        """Spend one credit. Returns False (and spends nothing) when under one credit remains."""
        self._refill()
        if self._available < 1.0:
            return False
        self._available -= 1.0
        return True


class BucketRegistry:
    def __init__(self, capacity: int, refill_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.capacity = capacity
        self.refill_seconds = refill_seconds
        self._clock = clock
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings) -> BucketRegistry:
        return cls(settings.rate_limit_capacity, settings.rate_limit_refill_seconds)

    def take(self, key: str) -> bool:
        """Spend one credit from key's bucket, creating the bucket on first use."""
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = TokenBucket(self.capacity, self.refill_seconds, self._clock)
                self._buckets[key] = bucket
                logger.debug("Rate limit bucket created for client=%s", key)
            return bucket.take_token()

    def enforce(self, key: str) -> None:
        """Like take(), but raises AuthError(RATE_LIMITED) when key is out of credits."""
        if not self.take(key):
            raise AuthError(ErrorCode.RATE_LIMITED, f"rate limit exceeded for client {key}")

    def sweep(self) -> int:
        """Drop buckets that have refilled completely. Returns the number removed."""
        with self._lock:
            idle = [key for key, bucket in self._buckets.items() if bucket.is_full()]
            for key in idle:
                del self._buckets[key]
        if idle:
            logger.info("Swept %d idle rate limit buckets", len(idle))
        return len(idle)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)
