from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Optional

from authguard.logging import get_logger
from authguard.service.clock import Clock, SystemClock
from authguard.service.models import Bucket

logger = get_logger(__name__)

# Absorbs float error in elapsed * rate so a full refill interval yields a whole token
_EPSILON = 1e-9


class TokenBucketLimiter:
    """Per-key token bucket rate limiter.

    Each key gets a bucket holding up to ``capacity`` tokens that refills at
    ``rate`` tokens per second. Buckets are created full on first use and
    dropped by ``cleanup_expired_entries`` once idle, so an unbounded key space
    (client IPs, account names) does not grow memory without bound.

    The refill, the check and the decrement run under one lock, so two callers
    racing for the last token cannot both win.
    """

    def __init__(
        self,
        rate: float,
        capacity: int,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.rate = float(rate)
        self.capacity = int(capacity)
        self._clock = clock or SystemClock()
        self._buckets: dict[str, Bucket] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def _refilled(self, key: str, now: datetime) -> Bucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = Bucket(tokens=float(self.capacity), last_refill=now, last_seen=now)
            self._buckets[key] = bucket
            return bucket
        elapsed = (now - bucket.last_refill).total_seconds()
        if elapsed > 0:
            bucket.tokens = min(float(self.capacity), bucket.tokens + elapsed * self.rate)
            bucket.last_refill = now
        return bucket

    def allow(self, key: str) -> bool:
        with self._lock:
            now = self._clock.now()
            bucket = self._refilled(key, now)
            bucket.last_seen = now
            if bucket.tokens + _EPSILON >= 1.0:
                bucket.tokens = max(0.0, bucket.tokens - 1.0)
                return True
        logger.debug("rate_limit_denied", key=key)
        return False

    def tokens(self, key: str) -> float:
        """Tokens currently available for ``key``, without consuming any."""
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                return float(self.capacity)
            now = self._clock.now()
            elapsed = max(0.0, (now - bucket.last_refill).total_seconds())
            return min(float(self.capacity), bucket.tokens + elapsed * self.rate)

    def reset(self, key: str) -> None:
        with self._lock:
            self._buckets.pop(key, None)

    def cleanup_expired_entries(self, expiration: timedelta | float) -> int:
        """Drop buckets untouched for longer than ``expiration``.

        Returns the number of keys removed.
        """
        if not isinstance(expiration, timedelta):
            expiration = timedelta(seconds=expiration)
        with self._lock:
            cutoff = self._clock.now() - expiration
            stale = [key for key, b in self._buckets.items() if b.last_seen < cutoff]
            for key in stale:
                del self._buckets[key]
        if stale:
            logger.debug("rate_limit_entries_cleaned", count=len(stale))
        return len(stale)
