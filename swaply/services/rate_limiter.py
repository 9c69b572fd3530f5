"""
Per-user request rate limiting.

WHAT: allow(user_id) -> bool over a sliding window
WHY: Caps message traffic per user (RATE_LIMIT_MAX_REQUESTS per RATE_LIMIT_WINDOW_SECONDS)
HOW: Process-local timestamp log per user behind a lock

InMemoryRateLimiter is correct for a single process only; a multi-instance
deployment needs a shared-cache implementation of RateLimiter.
"""

import math
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

from ..core.config import settings


class RateLimiter:
    """Interface for rate limiters."""

    def allow(self, user_id: str) -> bool:
        raise NotImplementedError

    def retry_after(self, user_id: str) -> int:
        """Seconds until the next request would be allowed."""
        return 0

    def reset(self):
        pass


class InMemoryRateLimiter(RateLimiter):
    """Sliding-window log limiter."""

    def __init__(
        self,
        max_requests: Optional[int] = None,
        window_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests if max_requests is not None else settings.RATE_LIMIT_MAX_REQUESTS
        self.window_seconds = window_seconds if window_seconds is not None else settings.RATE_LIMIT_WINDOW_SECONDS
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def _prune(self, user_id: str, hits: Deque[float], now: float):
        while hits and now - hits[0] >= self.window_seconds:
            hits.popleft()
        # Idle users leave no entry behind
        if not hits:
            self._hits.pop(user_id, None)

    def allow(self, user_id: str) -> bool:
        now = self._clock()
        with self._lock:
            hits = self._hits.get(user_id, deque())
            self._prune(user_id, hits, now)
            if len(hits) >= self.max_requests:
                return False
            hits.append(now)
            self._hits[user_id] = hits
            return True

    def retry_after(self, user_id: str) -> int:
        now = self._clock()
        with self._lock:
            hits = self._hits.get(user_id)
            if not hits:
                return 0
            self._prune(user_id, hits, now)
            if len(hits) < self.max_requests:
                return 0
            return max(1, math.ceil(self.window_seconds - (now - hits[0])))

    def reset(self):
        with self._lock:
            self._hits.clear()
