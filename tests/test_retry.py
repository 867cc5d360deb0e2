"""Tests for exponential backoff on source-system calls."""

from __future__ import annotations

from unittest.mock import MagicMock

import httpx
import pytest

from ordersync.sources.retry import call_with_backoff, compute_delay

_REQUEST = httpx.Request("GET", "https://eco.test/orders")


def _status_error(code: int, headers: dict | None = None) -> httpx.HTTPStatusError:
    response = httpx.Response(code, headers=headers or {}, request=_REQUEST)
    return httpx.HTTPStatusError(f"HTTP {code}", request=_REQUEST, response=response)


class TestCallWithBackoff:
    def test_success_first_try(self):
        fn = MagicMock(return_value="ok")
        sleep = MagicMock()
        assert call_with_backoff(fn, sleep=sleep) == "ok"
        fn.assert_called_once()
        sleep.assert_not_called()

    def test_retries_then_succeeds(self):
        fn = MagicMock(side_effect=[_status_error(503), httpx.ReadTimeout("slow"), "ok"])
        sleep = MagicMock()
        assert call_with_backoff(fn, sleep=sleep, max_retries=3) == "ok"
        assert fn.call_count == 3
        assert sleep.call_count == 2

    def test_gives_up_after_max_retries(self):
        fn = MagicMock(side_effect=_status_error(500))
        with pytest.raises(httpx.HTTPStatusError):
            call_with_backoff(fn, sleep=MagicMock(), max_retries=2)
        assert fn.call_count == 3

    def test_non_retryable_status_raises_immediately(self):
        fn = MagicMock(side_effect=_status_error(401))
        sleep = MagicMock()
        with pytest.raises(httpx.HTTPStatusError):
            call_with_backoff(fn, sleep=sleep)
        fn.assert_called_once()
        sleep.assert_not_called()

    def test_connect_error_retried(self):
        fn = MagicMock(side_effect=[httpx.ConnectError("refused"), "ok"])
        assert call_with_backoff(fn, sleep=MagicMock()) == "ok"


class TestComputeDelay:
    def test_exponential_growth_within_jitter(self):
        for attempt in range(4):
            delay = compute_delay(attempt, 1.0, 60.0, 0.3)
            expected = 2**attempt
            assert expected * 0.7 <= delay <= expected * 1.3

    def test_capped_at_max_delay(self):
        assert compute_delay(10, 1.0, 5.0, 0.0) == 5.0

    def test_retry_after_honored(self):
        response = httpx.Response(429, headers={"Retry-After": "7"})
        assert compute_delay(0, 1.0, 60.0, 0.3, response) == 7.0

    def test_retry_after_capped(self):
        response = httpx.Response(429, headers={"Retry-After": "600"})
        assert compute_delay(0, 1.0, 60.0, 0.3, response) == 60.0

    def test_unparseable_retry_after_falls_back(self):
        response = httpx.Response(429, headers={"Retry-After": "Wed, 21 Oct 2026 07:28:00 GMT"})
        assert compute_delay(0, 1.0, 60.0, 0.0, response) == 1.0
