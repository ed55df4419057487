"""
Tests for collector.retry_config module - per-provider tenacity policies.
"""

import pytest
from tenacity import wait_exponential, wait_fixed

from llm_answer_collector.collector.retry_config import (
    RETRYABLE_ERRORS,
    create_async_retrying,
    create_retry_decorator,
)
from llm_answer_collector.config.schema import ProviderConfig
from llm_answer_collector.exceptions import (
    ProviderHardError,
    ProviderRateLimitedError,
    ProviderResponseError,
    ProviderTimeoutError,
    ProviderTransientError,
)


def _provider(**overrides):
    data = {
        "name": "p1",
        "service": "serpapi",
        "priority": 1,
        "endpoint": "https://p1.test/ask",
        "retry_count": 2,
        "retry_delay_seconds": 0,
        "retry_backoff": "fixed",
    }
    data.update(overrides)
    return ProviderConfig(**data)


async def _run(retrying, outcomes):
    """Drive a retrying controller over scripted outcomes; return attempts made."""
    calls = []

    async for attempt in retrying:
        with attempt:
            calls.append(attempt.retry_state.attempt_number)
            outcome = outcomes[len(calls) - 1]
            if isinstance(outcome, Exception):
                raise outcome
            return calls, outcome
    return calls, None


class TestRetryableErrors:
    """Test which errors trigger a local retry."""

    def test_retryable_classes(self):
        assert ProviderTimeoutError in RETRYABLE_ERRORS
        assert ProviderRateLimitedError in RETRYABLE_ERRORS
        assert ProviderTransientError in RETRYABLE_ERRORS
        assert ProviderHardError not in RETRYABLE_ERRORS
        assert ProviderResponseError not in RETRYABLE_ERRORS


class TestCreateAsyncRetrying:
    """Test create_async_retrying()."""

    @pytest.mark.asyncio
    async def test_retries_timeouts_then_succeeds(self):
        calls, result = await _run(
            create_async_retrying(_provider()),
            [ProviderTimeoutError("slow"), ProviderTransientError("502"), "answer"],
        )
        assert calls == [1, 2, 3]
        assert result == "answer"

    @pytest.mark.asyncio
    async def test_stops_after_retry_count_plus_one(self):
        with pytest.raises(ProviderTimeoutError, match="third"):
            await _run(
                create_async_retrying(_provider(retry_count=2)),
                [
                    ProviderTimeoutError("first"),
                    ProviderTimeoutError("second"),
                    ProviderTimeoutError("third"),
                    "never",
                ],
            )

    @pytest.mark.asyncio
    async def test_zero_retries_makes_single_attempt(self):
        with pytest.raises(ProviderRateLimitedError):
            await _run(
                create_async_retrying(_provider(retry_count=0)),
                [ProviderRateLimitedError("429"), "never"],
            )

    @pytest.mark.asyncio
    async def test_hard_errors_are_not_retried(self):
        outcomes = [ProviderHardError("401", credential_failure=True), "never"]
        with pytest.raises(ProviderHardError):
            await _run(create_async_retrying(_provider()), outcomes)

    def test_fixed_backoff(self):
        retrying = create_async_retrying(_provider(retry_delay_seconds=2))
        assert isinstance(retrying.wait, wait_fixed)

    def test_exponential_backoff(self):
        retrying = create_async_retrying(
            _provider(retry_backoff="exponential", retry_delay_seconds=1)
        )
        assert isinstance(retrying.wait, wait_exponential)


class TestCreateRetryDecorator:
    """Test create_retry_decorator() for auxiliary calls."""

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        calls = []

        @create_retry_decorator(max_attempts=3, min_wait_seconds=0)
        async def flaky():
            calls.append(1)
            if len(calls) < 2:
                raise ProviderTransientError("503")
            return "ok"

        assert await flaky() == "ok"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_reraises_non_retryable(self):
        calls = []

        @create_retry_decorator(max_attempts=3, min_wait_seconds=0)
        async def broken():
            calls.append(1)
            raise ProviderHardError("400")

        with pytest.raises(ProviderHardError):
            await broken()
        assert len(calls) == 1
