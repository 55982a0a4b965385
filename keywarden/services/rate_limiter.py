"""Per-key token bucket rate limiter shared by all sensitive operations."""

import asyncio
import logging
import threading
import time
from typing import Callable, Dict, Optional

from keywarden.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)


class TokenBucket:
    """Token bucket with a fixed-window reset."""

    def __init__(self, capacity: int, now: float) -> None:
        """Initialize token bucket.

        Args:
            capacity: Maximum tokens in bucket
            now: Clock reading at creation
        """
        self.capacity = capacity
        self.tokens = capacity
        self.last_refill = now
        self.last_seen = now

    def refill(self, now: float, window_seconds: float) -> None:
        """Fully refill once the window has elapsed since the last refill."""
        if now - self.last_refill > window_seconds:
            self.tokens = self.capacity
            self.last_refill = now

    def consume(self) -> bool:
        """Take one token if available."""
        if self.tokens >= 1:
            self.tokens -= 1
            return True
        return False


class RateLimiter:
    """Admission control keyed by an opaque string such as ``user:resource:action``.

    Each key gets ``capacity`` tokens per ``window_seconds``; the bucket is
    fully refilled once the window has elapsed since its last refill. Calls
    never block. Buckets untouched for more than two windows are evicted by
    a periodic sweep.

    One instance is created per process and passed to call sites; the bucket
    map is the only shared mutable state and every refill+consume runs under
    a lock.
    """

    def __init__(
        self,
        capacity: int = 10,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: Optional[float] = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.capacity = capacity
        self.window_seconds = window_seconds
        self.sweep_interval = sweep_interval or max(window_seconds, 1.0) * 5
        self._clock = clock
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()
        self._sweep_task: Optional[asyncio.Task] = None

    def check(self, key: str) -> bool:
        """Consume a token for ``key``.

        Returns:
            True if the call is allowed, False if the bucket is empty
        """
        with self._lock:
            now = self._clock()
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = TokenBucket(self.capacity, now)
                self._buckets[key] = bucket

            bucket.refill(now, self.window_seconds)
            bucket.last_seen = now
            allowed = bucket.consume()

        if not allowed:
            logger.warning("Rate limit exceeded for key: %s", sanitize_log_message(key))
        return allowed

    def remaining(self, key: str) -> int:
        """Tokens left for ``key`` without consuming (full capacity if unseen)."""
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                return self.capacity
            bucket.refill(self._clock(), self.window_seconds)
            return int(bucket.tokens)

    def evict_stale(self) -> int:
        """Remove buckets untouched for more than two windows.

        Returns:
            Number of buckets removed
        """
        with self._lock:
            now = self._clock()
            cutoff = self.window_seconds * 2
            expired_keys = [
                key for key, bucket in self._buckets.items()
                if now - bucket.last_seen > cutoff
            ]
            for key in expired_keys:
                del self._buckets[key]

        if expired_keys:
            logger.debug(f"Cleaned up {len(expired_keys)} inactive rate limit buckets")
        return len(expired_keys)

    def __len__(self) -> int:
        return len(self._buckets)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.evict_stale()

    def start(self) -> None:
        """Start the periodic eviction sweep on the running event loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info(
                "Rate limiter started (%d per %.0fs, sweep every %.0fs)",
                self.capacity, self.window_seconds, self.sweep_interval,
            )

    async def stop(self) -> None:
        """Cancel the eviction sweep."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
