"""
core/ratelimit.py -- Fixed-window rate limiter with cooldown.

One algorithm, two deployments:
  - api/limiter.py gates inbound API requests, one bucket per client id.
  - core/notifier.py gates outbound webhook sends with a single shared key;
    a denied decision simply drops the notification.

Per-key state is {count, window_start, blocked_until}. On each hit:
  1. blocked and cooldown still running   -> deny, retry after the remainder
  2. blocked and cooldown elapsed         -> clear block, start a fresh window
  3. window older than window_seconds     -> start a fresh window
  4. count += 1
  5. count exceeds max_per_window         -> block for cooldown_seconds, deny
  6. otherwise                            -> allow

The window is fixed, not sliding: it resets on the first hit after it
expires, so a client can burst up to 2 * max_per_window across a boundary.

All bucket mutations happen under one lock. Contention is low (the critical
section is a dict lookup and a few integer updates) and a lost update would
let a client exceed its quota.

Times are seconds from an injectable clock (time.monotonic by default), so
tests drive the limiter with explicit `now` values instead of sleeping.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from core.errors import RateLimitError

logger = logging.getLogger("outr.ratelimit")


@dataclass
class RateLimitBucket:
    count: int = 0
    window_start: float = 0.0
    blocked_until: float | None = None


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int = 0


class FixedWindowRateLimiter:
    """Per-key fixed-window counter with a cooldown once the quota is exceeded.

    Usage:
        limiter = FixedWindowRateLimiter(max_per_window=45, window_seconds=60, cooldown_seconds=180)
        decision = limiter.hit("203.0.113.7")
        if not decision.allowed:
            ...  # respond 429 with decision.retry_after_seconds
    """

    def __init__(
        self,
        max_per_window: int = 45,
        window_seconds: float = 60,
        cooldown_seconds: float = 180,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_per_window < 1:
            raise ValueError("max_per_window must be at least 1")
        self.max_per_window = max_per_window
        self.window_seconds = window_seconds
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._buckets: dict[str, RateLimitBucket] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, now: float | None = None) -> RateLimitDecision:
        """Record one request for `key` and decide whether it may proceed."""
        if now is None:
            now = self._clock()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = RateLimitBucket(window_start=now)
                self._buckets[key] = bucket

            if bucket.blocked_until is not None:
                if bucket.blocked_until > now:
                    # Denied hits leave count and window untouched.
                    return RateLimitDecision(False, math.ceil(bucket.blocked_until - now))
                bucket.blocked_until = None
                bucket.count = 0
                bucket.window_start = now

            if now - bucket.window_start > self.window_seconds:
                bucket.window_start = now
                bucket.count = 0

            bucket.count += 1

            if bucket.count > self.max_per_window:
                bucket.blocked_until = now + self.cooldown_seconds
                logger.info("Rate limit exceeded for %s; blocked for %ss", key, self.cooldown_seconds)
                return RateLimitDecision(False, math.ceil(self.cooldown_seconds))

            return RateLimitDecision(True)

    def enforce(self, key: str, now: float | None = None) -> None:
        """Like hit(), but raise RateLimitError when the request is denied."""
        decision = self.hit(key, now)
        if not decision.allowed:
            raise RateLimitError(decision.retry_after_seconds)

    def sweep(self, now: float | None = None) -> int:
        """Evict buckets whose cooldown has elapsed or whose window went stale.

        A bucket with no block is stale once its window started more than two
        window lengths ago. Returns the number of evicted keys.
        """
        if now is None:
            now = self._clock()
        stale_after = 2 * self.window_seconds
        with self._lock:
            stale = [
                key
                for key, bucket in self._buckets.items()
                if (bucket.blocked_until is not None and bucket.blocked_until <= now)
                or (bucket.blocked_until is None and now - bucket.window_start > stale_after)
            ]
            for key in stale:
                del self._buckets[key]
        if stale:
            logger.debug("Evicted %d rate limit buckets", len(stale))
        return len(stale)

    def bucket(self, key: str) -> RateLimitBucket | None:
        """Return a copy of the bucket for `key`, or None if it has none."""
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                return None
            return RateLimitBucket(bucket.count, bucket.window_start, bucket.blocked_until)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)
