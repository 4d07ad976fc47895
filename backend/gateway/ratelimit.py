"""Fixed-window request limiting keyed by client address and method."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

# Counters outlive their window slightly so a late increment never resets a window.
_EXPIRY_GRACE_SECONDS = 10


class CounterStore(Protocol):
    def incr(self, key: str, ttl: int) -> int:
        ...


class MemoryCounterStore:
    """Process-local counter store. Increment and expiry happen under one lock."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._counters: Dict[str, Tuple[int, float]] = {}

    def incr(self, key: str, ttl: int) -> int:
        now = self._clock()
        with self._lock:
            self._purge(now)
            count, expires_at = self._counters.get(key, (0, now + ttl))
            count += 1
            self._counters[key] = (count, expires_at)
            return count

    def _purge(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._counters.items() if expires_at <= now]
        for key in expired:
            del self._counters[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset: int
    error: Optional[str] = None

    def retry_after(self, now: Optional[float] = None) -> int:
        current = int(now if now is not None else time.time())
        return max(1, self.reset - current)


class RateLimiter:
    def __init__(
        self,
        store: CounterStore,
        prefix: str,
        window: int = 60,
        max_requests: int = 100,
        max_posts: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.prefix = prefix
        self.window = window
        self.max_requests = max_requests
        self.max_posts = max_posts
        self._clock = clock

    def limit_for(self, method: str) -> int:
        return self.max_posts if method.upper() == "POST" else self.max_requests

    def check(self, client_ip: str, method: str) -> RateLimitResult:
        now = int(self._clock())
        window_start = now - (now % self.window)
        reset = window_start + self.window
        limit = self.limit_for(method)
        key = f"ratelimit:{self.prefix}:{method.upper()}:{client_ip}:{window_start}"

        try:
            count = self.store.incr(key, self.window + _EXPIRY_GRACE_SECONDS)
        except Exception:
            # Fail closed: an unreachable counter store denies the request.
            logger.exception("Rate limit counter unavailable for %s", key)
            return RateLimitResult(False, limit, 0, reset, error="Rate limiting unavailable")

        if count > limit:
            logger.info("Rate limit exceeded for %s (%s %s)", client_ip, self.prefix, method)
            return RateLimitResult(False, limit, 0, reset)
        return RateLimitResult(True, limit, limit - count, reset)
