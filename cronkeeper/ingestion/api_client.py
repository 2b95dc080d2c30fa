"""Cronkeeper – upstream data API client.

Thin HTTP client shared by ingestion jobs. Every HTTP attempt (including
retries) takes a permit from the injected :class:`RateLimiter` and runs
through the :class:`RetryExecutor`, so the upstream never sees more than
the configured request rate from one worker.

Paginated endpoints return an opaque ``pagination_key`` alongside each
page of data; the client follows it until it is absent, with a hard cap
on the number of pages as protection against a looping upstream.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

import requests

from cronkeeper.coordination.rate_limiter import RateLimiter
from cronkeeper.coordination.retry import RetryExecutor, RetryPolicy, request_with_retry
from cronkeeper.core.config import CronkeeperConfig
from cronkeeper.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_PAGES = 1000
PAGINATION_KEY = "pagination_key"


class ApiClientError(Exception):
    """Raised when an upstream response cannot be used."""


@dataclass(frozen=True)
class Page:
    """One page of a paginated response."""

    number: int
    items: List[Dict[str, Any]]
    pagination_key: Optional[str]


class ApiClient:
    """HTTP client for a key-authenticated JSON API.

    Parameters
    ----------
    base_url:
        API root, e.g. ``"https://api.example.com/v2"``.
    api_key:
        Sent in the ``api_key_header`` header when set.
    rate_limiter:
        Throttle shared by every call this client makes.
    retry_executor:
        Retry policy applied to each request.
    timeout_seconds:
        Per-request timeout.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        *,
        rate_limiter: RateLimiter,
        retry_executor: RetryExecutor,
        timeout_seconds: float = 30.0,
        api_key_header: str = "x-api-key",
        max_pages: int = DEFAULT_MAX_PAGES,
        session: requests.Session | None = None,
    ) -> None:
        if not base_url:
            raise ApiClientError("Upstream base URL is not set; cannot initialise ApiClient")

        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._max_pages = max_pages
        self.rate_limiter = rate_limiter
        self.retry_executor = retry_executor
        self._session = session or requests.Session()
        if api_key:
            self._session.headers[api_key_header] = api_key

    @classmethod
    def from_config(cls, config: CronkeeperConfig, **kwargs: Any) -> "ApiClient":
        upstream = config.upstream
        return cls(
            upstream.base_url,
            upstream.api_key,
            rate_limiter=RateLimiter.from_config(config.rate_limit),
            retry_executor=RetryExecutor(RetryPolicy.from_config(config.retry)),
            timeout_seconds=upstream.timeout_seconds,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def request(
        self,
        endpoint: str,
        params: Dict[str, Any] | None = None,
        pagination_key: str | None = None,
    ) -> Dict[str, Any]:
        """GET ``endpoint`` and return the decoded JSON object.

        Raises
        ------
        RetryableError / NonRetryableError
            When the upstream keeps failing or rejects the request.
        ApiClientError
            When the body is not a JSON object.
        """

        query = dict(params or {})
        if pagination_key:
            query[PAGINATION_KEY] = pagination_key

        url = f"{self._base_url}/{endpoint.lstrip('/')}"
        logger.debug("ApiClient.request: GET %s params=%s", url, query)

        response = request_with_retry(
            self._session,
            "GET",
            url,
            self.retry_executor,
            timeout=self._timeout_seconds,
            before_attempt=self.rate_limiter.acquire,
            params=query,
        )

        try:
            payload = response.json()
        except ValueError as exc:
            logger.error("Failed to decode JSON from %s: %s", url, exc)
            raise ApiClientError(f"Invalid JSON in response from {endpoint!r}") from exc

        if not isinstance(payload, dict):
            raise ApiClientError(f"Unexpected payload type from {endpoint!r}: {type(payload).__name__}")
        return payload

    def iter_pages(
        self,
        endpoint: str,
        data_key: str,
        params: Dict[str, Any] | None = None,
    ) -> Iterator[Page]:
        """Yield successive pages until no continuation token is returned."""

        pagination_key: str | None = None
        number = 0
        while True:
            payload = self.request(endpoint, params, pagination_key)
            number += 1
            items = payload.get(data_key) or []
            pagination_key = payload.get(PAGINATION_KEY) or None
            yield Page(number=number, items=list(items), pagination_key=pagination_key)

            if pagination_key is None:
                return
            if number >= self._max_pages:
                logger.warning(
                    "Stopping pagination of %s after %d pages (safety limit)",
                    endpoint,
                    self._max_pages,
                )
                return

    def fetch_all(
        self,
        endpoint: str,
        data_key: str,
        params: Dict[str, Any] | None = None,
    ) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        for page in self.iter_pages(endpoint, data_key, params):
            items.extend(page.items)
        return items

    def close(self) -> None:
        self._session.close()
