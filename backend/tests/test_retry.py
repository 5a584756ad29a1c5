"""
Tests for retry with exponential backoff.
"""

import asyncio
import pytest

from scrapers.base import BlockedError
from scrapers.stealth.retry import (
    RetryConfig,
    calculate_backoff,
    is_retryable_error,
    is_block_error,
    with_retry,
    retry_navigation,
)


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


NO_JITTER = RetryConfig(enable_jitter=False)


class TestBackoff:

    @pytest.mark.parametrize("attempt, expected", [
        (1, 2000),
        (2, 4000),
        (3, 8000),
        (4, 16000),
        (5, 30000),
        (9, 30000),
    ])
    def test_exponential_and_capped(self, attempt, expected):
        assert calculate_backoff(attempt, NO_JITTER) == expected

    def test_jitter_bounds(self):
        config = RetryConfig()
        assert calculate_backoff(2, config, rng=lambda: 0.0) == 3000
        assert calculate_backoff(2, config, rng=lambda: 1.0) == 5000
        assert 3000 <= calculate_backoff(2, config) <= 5000


class TestClassification:

    @pytest.mark.parametrize("message, expected", [
        ("Timeout 30000ms exceeded", True),
        ("net::ERR_CONNECTION_RESET network changed", True),
        ("HTTP 503 Service Unavailable", True),
        ("HTTP 404 for https://x", False),
        ("HTTP 401 unauthorized", False),
        ("something unexpected", True),
    ])
    def test_retryable(self, message, expected):
        assert is_retryable_error(Exception(message)) is expected

    def test_block_errors(self):
        assert is_block_error(BlockedError("blocked")) is True
        assert is_block_error(Exception("Request unsuccessful. Incapsula incident")) is True
        assert is_block_error(Exception("HTTP 403 Forbidden")) is True
        assert is_block_error(Exception("Timeout")) is False


class TestWithRetry:

    def test_succeeds_after_failures(self):
        attempts = []
        sleep = SleepRecorder()

        async def operation(ctx):
            attempts.append(ctx.attempt)
            if ctx.attempt < 3:
                raise RuntimeError("timeout")
            return "ok"

        result = asyncio.run(with_retry(operation, NO_JITTER, "op", sleep=sleep))

        assert result == "ok"
        assert attempts == [1, 2, 3]
        assert sleep.calls == [2.0, 4.0]

    def test_raises_original_error_after_last_attempt(self):
        sleep = SleepRecorder()

        async def operation(ctx):
            raise ValueError(f"timeout on attempt {ctx.attempt}")

        with pytest.raises(ValueError, match="attempt 3"):
            asyncio.run(with_retry(operation, NO_JITTER, "op", sleep=sleep))
        assert len(sleep.calls) == 2

    def test_non_retryable_raised_immediately(self):
        attempts = []
        sleep = SleepRecorder()

        async def operation(ctx):
            attempts.append(ctx.attempt)
            raise RuntimeError("HTTP 404 not found")

        with pytest.raises(RuntimeError):
            asyncio.run(with_retry(operation, NO_JITTER, "op", should_retry=is_retryable_error, sleep=sleep))
        assert attempts == [1]
        assert sleep.calls == []

    def test_context_carries_last_error(self):
        seen = []

        async def operation(ctx):
            seen.append(ctx.last_error)
            if ctx.attempt == 1:
                raise RuntimeError("first")
            return ctx.max_attempts

        assert asyncio.run(with_retry(operation, NO_JITTER, sleep=SleepRecorder())) == 3
        assert seen[0] is None
        assert str(seen[1]) == "first"


class TestRetryNavigation:

    def test_block_becomes_blocked_error(self):
        async def navigate():
            raise RuntimeError("Access Denied by Incapsula")

        with pytest.raises(BlockedError) as exc_info:
            asyncio.run(retry_navigation(navigate, NO_JITTER, "https://www.realtor.ca/x", sleep=SleepRecorder()))
        assert exc_info.value.url == "https://www.realtor.ca/x"

    def test_blocked_error_passes_through(self):
        async def navigate():
            raise BlockedError("HTTP 403", url="https://a", http_status=403)

        with pytest.raises(BlockedError) as exc_info:
            asyncio.run(retry_navigation(navigate, NO_JITTER, "https://a", sleep=SleepRecorder()))
        assert exc_info.value.http_status == 403

    def test_other_errors_unchanged(self):
        async def navigate():
            raise TimeoutError("Timeout 30000ms exceeded")

        with pytest.raises(TimeoutError):
            asyncio.run(retry_navigation(navigate, NO_JITTER, "https://a", sleep=SleepRecorder()))

    def test_returns_result(self):
        calls = []

        async def navigate():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("net::ERR_TIMED_OUT")
            return "<html></html>"

        assert asyncio.run(retry_navigation(navigate, NO_JITTER, "https://a", sleep=SleepRecorder())) == "<html></html>"
