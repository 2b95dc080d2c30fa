"""
Cronkeeper: Token-Bucket Rate Limiter

Process-local throttle applied to every outbound upstream call. The
bucket holds ``requests_per_minute`` permits and refills continuously at
the same rate; independently of the fill level, two grants are never
closer together than ``min_interval_ms``.

Key responsibilities:
- Block the caller until a permit is available, then consume it
- Enforce a minimum spacing between consecutive grants
- Expose basic wait statistics for diagnostics

External dependencies:
- threading: Serialises callers within one process

Database tables accessed:
- None (state is in-process only and not shared across workers)

Thread safety: Thread-safe within one process; not shared across
processes.

Author: Cronkeeper Team
Created: 2026-10-19
Last Modified: 2026-10-19
Status: Development
Version: v0.1.0
"""

# ============================================================================
# Imports
# ============================================================================

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Optional

from cronkeeper.core.config import RateLimitConfig
from cronkeeper.core.logging import get_logger

# ============================================================================
# Module Setup
# ============================================================================

logger = get_logger(__name__)

DEFAULT_REQUESTS_PER_MINUTE = 60
DEFAULT_MIN_INTERVAL_MS = 1000


class RateLimiter:
    """Blocking token-bucket limiter with a minimum request interval.

    Example::

        limiter = RateLimiter(requests_per_minute=60, min_interval_ms=1000)
        limiter.acquire()
        session.get(url)

    ``clock`` and ``sleep`` default to :func:`time.monotonic` and
    :func:`time.sleep`; tests inject a fake pair to avoid real waiting.
    """

    def __init__(
        self,
        requests_per_minute: int = DEFAULT_REQUESTS_PER_MINUTE,
        min_interval_ms: int = DEFAULT_MIN_INTERVAL_MS,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        if min_interval_ms < 0:
            raise ValueError("min_interval_ms must be non-negative")

        self.capacity = float(requests_per_minute)
        self.min_interval_seconds = min_interval_ms / 1000.0
        self._seconds_per_token = 60.0 / requests_per_minute
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()

        self._tokens = self.capacity
        self._last_refill = self._clock()
        self._last_request: Optional[float] = None

        self.total_calls = 0
        self.wait_events = 0
        self.total_wait_seconds = 0.0

    @classmethod
    def from_config(cls, config: RateLimitConfig, **kwargs: Any) -> "RateLimiter":
        return cls(
            requests_per_minute=config.requests_per_minute,
            min_interval_ms=config.min_interval_ms,
            **kwargs,
        )

    # ======================================================================
    # Internal helpers
    # ======================================================================

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self.capacity, self._tokens + elapsed / self._seconds_per_token)
        self._last_refill = now

    def _wait_seconds(self) -> float:
        """Return how long the next grant must wait.

        The token wait and the minimum-interval wait are evaluated together
        so a single sleep satisfies both.
        """

        token_wait = 0.0
        if self._tokens < 1.0:
            token_wait = (1.0 - self._tokens) * self._seconds_per_token

        interval_wait = 0.0
        if self._last_request is not None:
            since_last = self._clock() - self._last_request
            interval_wait = max(0.0, self.min_interval_seconds - since_last)

        return max(token_wait, interval_wait)

    # ======================================================================
    # Public API
    # ======================================================================

    def acquire(self) -> float:
        """Block until a permit is available and consume it.

        Returns:
            The number of seconds the caller was delayed.
        """

        with self._lock:
            self.total_calls += 1
            self._refill()
            wait = self._wait_seconds()
            if wait > 0:
                self.wait_events += 1
                self.total_wait_seconds += wait
                logger.debug("Rate limit: waiting %.3fs before next request", wait)
                self._sleep(wait)
                self._refill()

            self._tokens = max(0.0, self._tokens - 1.0)
            self._last_request = self._clock()
            return wait

    @property
    def available_tokens(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens

    def reset(self) -> None:
        """Refill the bucket and forget the previous grant."""

        with self._lock:
            self._tokens = self.capacity
            self._last_refill = self._clock()
            self._last_request = None

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            avg_wait = self.total_wait_seconds / self.wait_events if self.wait_events else 0.0
            return {
                "calls_total": self.total_calls,
                "wait_events": self.wait_events,
                "total_wait_seconds": round(self.total_wait_seconds, 6),
                "avg_wait_seconds": round(avg_wait, 6),
                "tokens": round(self._tokens, 6),
            }
