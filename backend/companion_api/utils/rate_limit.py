"""In-memory rate limiter guarding the provider-backed endpoints.

Quiz generation and PDF extraction are the two calls that cost real
money or CPU per request, so they are limited per user and per bucket.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass


@dataclass(frozen=True)
class RateRule:
    max_requests: int
    window_seconds: int


class InMemoryRateLimiter:
    """Sliding-window limiter keyed by `(bucket, caller)`."""

    def __init__(self, clock=time.monotonic):
        self._hits: dict[tuple[str, str], deque] = defaultdict(deque)
        self._lock = threading.Lock()
        self._clock = clock

    def allow(self, bucket: str, caller: str, rule: RateRule) -> tuple[bool, int]:
        """Record a hit and return `(allowed, retry_after_seconds)`."""
        if rule.max_requests <= 0:
            return True, 0
        now = self._clock()
        with self._lock:
            hits = self._hits[(bucket, caller)]
            cutoff = now - rule.window_seconds
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= rule.max_requests:
                return False, max(1, int(rule.window_seconds - (now - hits[0])))
            hits.append(now)
        return True, 0

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
