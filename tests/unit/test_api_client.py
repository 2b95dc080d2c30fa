"""
Cronkeeper: Tests for the Upstream API Client

Uses a mocked ``requests.Session`` so no network access is needed.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from cronkeeper.coordination.retry import NonRetryableError, RetryExecutor, RetryPolicy
from cronkeeper.core.config import CronkeeperConfig
from cronkeeper.ingestion.api_client import ApiClient, ApiClientError


def _response(status: int, payload=None) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.text = "" if payload is None else str(payload)
    response.json.return_value = payload
    return response


@pytest.fixture
def session() -> MagicMock:
    session = MagicMock()
    session.headers = {}
    return session


@pytest.fixture
def limiter() -> MagicMock:
    return MagicMock()


def _client(session: MagicMock, limiter: MagicMock, **kwargs) -> ApiClient:
    executor = RetryExecutor(
        RetryPolicy(max_retries=2, base_delay_ms=1, jitter_ms=0),
        sleep=lambda seconds: None,
        rand=lambda: 0.0,
    )
    return ApiClient(
        "https://api.example.com/v2/",
        "secret",
        rate_limiter=limiter,
        retry_executor=executor,
        session=session,
        **kwargs,
    )


class TestApiClient:
    def test_requires_base_url(self, session: MagicMock, limiter: MagicMock) -> None:
        with pytest.raises(ApiClientError):
            ApiClient("", rate_limiter=limiter, retry_executor=RetryExecutor(), session=session)

    def test_api_key_sent_as_header(self, session: MagicMock, limiter: MagicMock) -> None:
        _client(session, limiter)

        assert session.headers == {"x-api-key": "secret"}

    def test_request_builds_url_and_params(self, session: MagicMock, limiter: MagicMock) -> None:
        session.request.return_value = _response(200, {"daily_quotes": []})
        client = _client(session, limiter)

        payload = client.request("/equities/bars/daily", {"date": "20250106"}, pagination_key="abc")

        assert payload == {"daily_quotes": []}
        session.request.assert_called_once_with(
            "GET",
            "https://api.example.com/v2/equities/bars/daily",
            timeout=30.0,
            params={"date": "20250106", "pagination_key": "abc"},
        )

    def test_rate_limiter_consulted_on_every_attempt(
        self, session: MagicMock, limiter: MagicMock
    ) -> None:
        """Retries are throttled like first attempts."""

        session.request.side_effect = [
            _response(429, {"message": "slow down"}),
            _response(503, {"message": "busy"}),
            _response(200, {"items": []}),
        ]
        client = _client(session, limiter)

        client.request("items")

        assert limiter.acquire.call_count == 3

    def test_client_error_not_retried(self, session: MagicMock, limiter: MagicMock) -> None:
        session.request.return_value = _response(403, {"message": "forbidden"})
        client = _client(session, limiter)

        with pytest.raises(NonRetryableError):
            client.request("items")
        assert session.request.call_count == 1

    def test_non_object_payload_rejected(self, session: MagicMock, limiter: MagicMock) -> None:
        session.request.return_value = _response(200, [1, 2, 3])

        with pytest.raises(ApiClientError):
            _client(session, limiter).request("items")

    def test_invalid_json_rejected(self, session: MagicMock, limiter: MagicMock) -> None:
        response = _response(200, None)
        response.json.side_effect = ValueError("no json")
        session.request.return_value = response

        with pytest.raises(ApiClientError):
            _client(session, limiter).request("items")

    def test_pagination_follows_key_until_absent(
        self, session: MagicMock, limiter: MagicMock
    ) -> None:
        session.request.side_effect = [
            _response(200, {"items": [{"id": 1}, {"id": 2}], "pagination_key": "p2"}),
            _response(200, {"items": [{"id": 3}], "pagination_key": "p3"}),
            _response(200, {"items": []}),
        ]
        client = _client(session, limiter)

        pages = list(client.iter_pages("items", "items", {"date": "20250106"}))

        assert [p.number for p in pages] == [1, 2, 3]
        assert [len(p.items) for p in pages] == [2, 1, 0]
        params = [c.kwargs["params"] for c in session.request.call_args_list]
        assert params == [
            {"date": "20250106"},
            {"date": "20250106", "pagination_key": "p2"},
            {"date": "20250106", "pagination_key": "p3"},
        ]

    def test_pagination_stops_at_page_limit(self, session: MagicMock, limiter: MagicMock) -> None:
        session.request.return_value = _response(200, {"items": [{"id": 1}], "pagination_key": "again"})
        client = _client(session, limiter, max_pages=3)

        assert len(client.fetch_all("items", "items")) == 3
        assert session.request.call_count == 3

    def test_from_config(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("UPSTREAM_BASE_URL", "https://api.example.com")
        monkeypatch.setenv("RATE_LIMIT_REQUESTS_PER_MINUTE", "30")
        monkeypatch.setenv("RETRY_MAX_RETRIES", "1")

        client = ApiClient.from_config(CronkeeperConfig(), session=MagicMock(headers={}))

        assert client.rate_limiter.capacity == 30.0
        assert client.retry_executor.policy.max_retries == 1
