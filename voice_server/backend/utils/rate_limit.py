"""Token-bucket admission limiter keyed by client address."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict


@dataclass
class _Bucket:
    tokens: float
    updated_at: float


class KeyedRateLimiter:
    """Per-key token bucket; a non-positive rate disables limiting."""

    def __init__(
        self,
        rate_per_sec: float,
        burst: float | None = None,
        time_fn: Callable[[], float] | None = None,
        *,
        max_keys: int = 10000,
        idle_ttl_sec: float = 300.0,
    ) -> None:
        self._rate = max(0.0, float(rate_per_sec))
        self._capacity = float(burst) if burst and burst > 0 else self._rate
        self._time_fn = time_fn or time.monotonic
        self._max_keys = max(1, int(max_keys))
        self._idle_ttl_sec = max(0.0, float(idle_ttl_sec))
        self._lock = threading.Lock()
        self._buckets: Dict[str, _Bucket] = {}

    @property
    def enabled(self) -> bool:
        return self._rate > 0 and self._capacity > 0

    def allow(self, key: str, amount: float = 1.0) -> bool:
        """Take ``amount`` tokens from ``key``'s bucket if available."""
        if not self.enabled or amount <= 0:
            return True
        now = self._time_fn()
        with self._lock:
            bucket = self._refill(key, now)
            if bucket.tokens < amount:
                return False
            bucket.tokens -= amount
            return True

    def retry_after(self, key: str, amount: float = 1.0) -> float:
        """Seconds until ``amount`` tokens are available for ``key``."""
        if not self.enabled:
            return 0.0
        now = self._time_fn()
        with self._lock:
            bucket = self._refill(key, now)
            missing = amount - bucket.tokens
        return max(0.0, missing / self._rate)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def _refill(self, key: str, now: float) -> _Bucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            if len(self._buckets) >= self._max_keys:
                self._evict(now)
            bucket = _Bucket(tokens=self._capacity, updated_at=now)
            self._buckets[key] = bucket
            return bucket
        elapsed = max(0.0, now - bucket.updated_at)
        bucket.tokens = min(self._capacity, bucket.tokens + elapsed * self._rate)
        bucket.updated_at = now
        return bucket

    def _evict(self, now: float) -> None:
        if self._idle_ttl_sec > 0:
            cutoff = now - self._idle_ttl_sec
            for stale in [k for k, b in self._buckets.items() if b.updated_at < cutoff]:
                del self._buckets[stale]
        overflow = len(self._buckets) - self._max_keys + 1
        if overflow > 0:
            oldest = sorted(self._buckets.items(), key=lambda item: item[1].updated_at)
            for stale, _bucket in oldest[:overflow]:
                del self._buckets[stale]


__all__ = ["KeyedRateLimiter"]
