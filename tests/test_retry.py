"""Tests for the retry combinator and provider error classification."""

import asyncio

import litellm
import pytest

from vectorize.core.exceptions import ConfigurationError, ProviderError, TransientProviderError
from vectorize.services.retry import RetryPolicy, classify_provider_error, retry_async


class FakeClock:
    def __init__(self):
        self.delays: list[float] = []

    async def sleep(self, delay: float) -> None:
        self.delays.append(delay)


def _flaky(failures: list[Exception], result="ok"):
    calls = {"count": 0}

    async def operation():
        calls["count"] += 1
        if failures:
            raise failures.pop(0)
        return result

    return operation, calls


def test_delay_grows_linearly_and_doubles_when_rate_limited():
    policy = RetryPolicy(max_attempts=3, base_delay=1.0)
    assert policy.delay_for(1, rate_limited=False) == 1.0
    assert policy.delay_for(2, rate_limited=False) == 2.0
    assert policy.delay_for(2, rate_limited=True) == 4.0


@pytest.mark.asyncio
async def test_retries_transient_errors_until_success():
    clock = FakeClock()
    operation, calls = _flaky([TransientProviderError("503"), TransientProviderError("503")])

    result = await retry_async(operation, RetryPolicy(max_attempts=3), sleep=clock.sleep)

    assert result == "ok"
    assert calls["count"] == 3
    assert clock.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_rate_limit_waits_longer():
    clock = FakeClock()
    operation, _ = _flaky([TransientProviderError("429", rate_limited=True)])

    await retry_async(operation, RetryPolicy(max_attempts=3, base_delay=0.5), sleep=clock.sleep)

    assert clock.delays == [1.0]


@pytest.mark.asyncio
async def test_exhausted_attempts_raise_provider_error():
    clock = FakeClock()
    operation, calls = _flaky([TransientProviderError(f"fail {i}") for i in range(5)])

    with pytest.raises(ProviderError) as exc_info:
        await retry_async(operation, RetryPolicy(max_attempts=3), sleep=clock.sleep)

    assert not isinstance(exc_info.value, TransientProviderError)
    assert isinstance(exc_info.value.__cause__, TransientProviderError)
    assert calls["count"] == 3
    assert len(clock.delays) == 2


@pytest.mark.asyncio
async def test_non_transient_errors_are_not_retried():
    clock = FakeClock()
    operation, calls = _flaky([ConfigurationError("bad key")])

    with pytest.raises(ConfigurationError):
        await retry_async(operation, sleep=clock.sleep)

    assert calls["count"] == 1
    assert clock.delays == []


def test_classify_rate_limit():
    exc = litellm.RateLimitError(message="slow down", llm_provider="openai", model="text-embedding-3-small")
    classified = classify_provider_error(exc)
    assert isinstance(classified, TransientProviderError)
    assert classified.rate_limited


def test_classify_authentication_is_configuration():
    exc = litellm.AuthenticationError(message="bad key", llm_provider="openai", model="gpt")
    assert isinstance(classify_provider_error(exc), ConfigurationError)


def test_classify_timeout_is_transient():
    classified = classify_provider_error(asyncio.TimeoutError(), "embedding")
    assert isinstance(classified, TransientProviderError)
    assert not classified.rate_limited


def test_classify_unknown_is_permanent():
    classified = classify_provider_error(ValueError("malformed response"), "embedding")
    assert type(classified) is ProviderError
    assert "embedding" in str(classified)


@pytest.mark.asyncio
async def test_accepts_a_plain_callable_returning_an_awaitable():
    clock = FakeClock()
    operation, calls = _flaky([TransientProviderError("503")], result="context")

    result = await retry_async(lambda: operation(), RetryPolicy(max_attempts=3), sleep=clock.sleep)

    assert result == "context"
    assert calls["count"] == 2
    assert clock.delays == [1.0]
