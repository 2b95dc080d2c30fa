"""
Cronkeeper: Retry with Exponential Backoff

This module wraps unreliable upstream operations in a bounded retry loop.
Errors are classified as retryable (network failures, 429, 5xx) or
non-retryable (other 4xx, declared application errors); only the former
consume retries.

Key responsibilities:
- Classify errors and HTTP status codes as retryable or not
- Compute exponential backoff delays with additive jitter
- Apply the same policy to HTTP request/response pairs

External dependencies:
- requests: Network error types and the HTTP session used by the wrapper

Database tables accessed:
- None

Thread safety: Thread-safe (executors hold no mutable state)

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

import random
import time
from dataclasses import dataclass
from typing import Any, Callable, FrozenSet, Optional, TypeVar

import requests

from cronkeeper.core.config import RetryConfig
from cronkeeper.core.logging import get_logger

# ============================================================================
# Module Setup
# ============================================================================

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_STATUS_CODES: FrozenSet[int] = frozenset({429, 500, 502, 503, 504})

NETWORK_ERRORS = (
    requests.ConnectionError,
    requests.Timeout,
    ConnectionError,
    TimeoutError,
)

OnRetry = Callable[[int, BaseException, float], None]


class RetryableError(Exception):
    """Transient failure that may succeed when retried."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NonRetryableError(Exception):
    """Permanent failure; retrying would not help."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters.

    Attributes:
        max_retries: Retries after the first attempt (total calls are at
            most ``1 + max_retries``).
        base_delay_ms: Delay before the first retry.
        max_delay_ms: Upper bound on the exponential component.
        jitter_ms: Upper bound of the uniform jitter added to each delay.
        retry_status_codes: HTTP status codes treated as transient.
    """

    max_retries: int = 5
    base_delay_ms: int = 500
    max_delay_ms: int = 32000
    jitter_ms: int = 100
    retry_status_codes: FrozenSet[int] = DEFAULT_RETRY_STATUS_CODES

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            base_delay_ms=config.base_delay_ms,
            max_delay_ms=config.max_delay_ms,
            jitter_ms=config.jitter_ms,
            retry_status_codes=frozenset(config.retry_status_codes),
        )


def extract_status_code(exc: BaseException) -> Optional[int]:
    """Return the HTTP status carried by ``exc``, if any.

    Looks at a ``status_code`` attribute first, then at a ``response``
    attribute as set by :class:`requests.HTTPError`.
    """

    status = getattr(exc, "status_code", None)
    if status is not None:
        return int(status)

    response = getattr(exc, "response", None)
    if response is not None:
        status = getattr(response, "status_code", None)
        if status is not None:
            return int(status)
    return None


class RetryExecutor:
    """Run operations under a :class:`RetryPolicy`.

    ``sleep`` and ``rand`` are injectable so tests can observe delays
    without waiting and without randomness.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rand = rand

    def compute_delay_ms(self, attempt: int) -> float:
        """Return the delay before retry number ``attempt`` (0-based)."""

        exponential = min(self.policy.max_delay_ms, self.policy.base_delay_ms * (2 ** attempt))
        return exponential + self._rand() * self.policy.jitter_ms

    def is_retryable(self, exc: BaseException) -> bool:
        if isinstance(exc, NonRetryableError):
            return False
        if isinstance(exc, RetryableError):
            return True

        status = extract_status_code(exc)
        if status is not None:
            return status in self.policy.retry_status_codes

        return isinstance(exc, NETWORK_ERRORS)

    def run(self, operation: Callable[[], T], on_retry: Optional[OnRetry] = None) -> T:
        """Invoke ``operation`` until it succeeds or retries run out.

        Args:
            operation: Zero-argument callable to invoke.
            on_retry: Optional observer called as
                ``on_retry(retry_number, error, delay_ms)`` before each
                backoff sleep; ``retry_number`` starts at 1.

        Returns:
            The value returned by the first successful invocation.

        Raises:
            Exception: The last error raised by ``operation`` when it is
                non-retryable or when retries are exhausted.
        """

        attempt = 0
        while True:
            try:
                return operation()
            except Exception as exc:
                if not self.is_retryable(exc):
                    raise
                if attempt >= self.policy.max_retries:
                    logger.error(
                        "Giving up after %d retries: %s", self.policy.max_retries, exc
                    )
                    raise

                delay_ms = self.compute_delay_ms(attempt)
                logger.warning(
                    "Retryable error (retry %d/%d in %.0fms): %s",
                    attempt + 1,
                    self.policy.max_retries,
                    delay_ms,
                    exc,
                )
                if on_retry is not None:
                    on_retry(attempt + 1, exc, delay_ms)
                self._sleep(delay_ms / 1000.0)
                attempt += 1


def request_with_retry(
    session: requests.Session,
    method: str,
    url: str,
    executor: RetryExecutor,
    *,
    timeout: float,
    before_attempt: Optional[Callable[[], Any]] = None,
    on_retry: Optional[OnRetry] = None,
    **kwargs: Any,
) -> requests.Response:
    """Issue an HTTP request under the executor's retry policy.

    Non-2xx responses are converted to :class:`RetryableError` or
    :class:`NonRetryableError` (carrying ``status_code``) before
    classification. ``before_attempt`` runs ahead of every attempt, which
    is where callers plug in a rate limiter.
    """

    def attempt() -> requests.Response:
        if before_attempt is not None:
            before_attempt()

        response = session.request(method, url, timeout=timeout, **kwargs)
        status = response.status_code
        if 200 <= status < 300:
            return response

        body_preview = response.text[:200] if response.text else ""
        message = f"HTTP {status} for {method} {url}: {body_preview}"
        if status in executor.policy.retry_status_codes:
            raise RetryableError(message, status_code=status)
        raise NonRetryableError(message, status_code=status)

    return executor.run(attempt, on_retry=on_retry)
