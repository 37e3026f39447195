"""
rate_limit.py - fixed-window request admission control.

Design:
  - One bucket per key ("<caller>:<action>"), created on the first request of a window
  - Requests inside windowMs of window_start increment count until limit, then are denied
  - The first request after the window elapses resets the bucket (no smoothing)
  - Process-local only: correct for a single server process, NOT across instances
  - Constructed in the lifespan and stored on app.state (no module-level global state)
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: int   # ms epoch when the current window rolls over

    def retry_after_seconds(self, now: Optional[int] = None) -> int:
        """Whole seconds until reset, at least 1 (used for the Retry-After header)."""
        current = now_ms() if now is None else now
        return max(1, -(-(self.reset_at - current) // 1000))


@dataclass
class RateLimitBucket:
    count: int
    window_start: int


class RateLimiter:
    """Fixed-window limiter keyed by caller identity and action."""

    def __init__(self, clock: Callable[[], int] = now_ms) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: dict[str, RateLimitBucket] = {}

    def check(self, key: str, limit: int, window_ms: int) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None or now - bucket.window_start >= window_ms:
                bucket = RateLimitBucket(count=1, window_start=now)
                self._buckets[key] = bucket
                return RateLimitDecision(True, max(0, limit - 1), now + window_ms)
            reset_at = bucket.window_start + window_ms
            if bucket.count >= limit:
                return RateLimitDecision(False, 0, reset_at)
            bucket.count += 1
            return RateLimitDecision(True, max(0, limit - bucket.count), reset_at)

    def prune(self, window_ms: int) -> int:
        """Drop buckets whose window has long elapsed. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, b in self._buckets.items() if now - b.window_start >= window_ms]
            for k in expired:
                del self._buckets[k]
        return len(expired)

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()

    def __len__(self) -> int:
        return len(self._buckets)


def client_key(request: Request) -> str:
    """
    Best-effort caller identity: proxy headers first, then the socket peer,
    then a truncated user agent so the key is never blank.
    """
    headers = request.headers
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return f"ip:{first}"
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = (headers.get(header) or "").strip()
        if value:
            return f"ip:{value}"
    if request.client and request.client.host:
        return f"ip:{request.client.host}"
    ua = headers.get("user-agent") or "unknown"
    return f"ua:{ua[:120]}"
