"""Retry combinator for provider calls: linear backoff, longer on rate limits."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import litellm
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
)

from vectorize.core.exceptions import ConfigurationError, ProviderError, TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    rate_limit_multiplier: float = 2.0

    def delay_for(self, attempt: int, rate_limited: bool) -> float:
        """Delay after the given (1-based) failed attempt."""
        delay = self.base_delay * attempt
        if rate_limited:
            delay *= self.rate_limit_multiplier
        return delay


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: str = "provider call",
) -> T:
    """Run ``operation`` until it succeeds or the attempts are used up.

    Only :class:`TransientProviderError` is retried; anything else propagates
    on the first failure.

    Raises:
        ProviderError: Attempts exhausted. Chained to the last failure.
    """
    policy = policy or RetryPolicy()

    def wait(retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception()
        return policy.delay_for(retry_state.attempt_number, getattr(exc, "rate_limited", False))

    def log_retry(retry_state: RetryCallState) -> None:
        logger.warning(
            "%s failed (attempt %d/%d): %s; retrying in %.1fs",
            description,
            retry_state.attempt_number,
            policy.max_attempts,
            retry_state.outcome.exception(),
            retry_state.next_action.sleep,
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait,
        retry=retry_if_exception_type(TransientProviderError),
        before_sleep=log_retry,
        sleep=sleep,
    )

    async def attempt() -> T:
        return await operation()

    try:
        return await retrying(attempt)
    except RetryError as exc:
        last_error = exc.last_attempt.exception()
        raise ProviderError(
            f"{description} failed after {policy.max_attempts} attempts: {last_error}"
        ) from last_error


def classify_provider_error(exc: Exception, description: str = "provider call") -> Exception:
    """Map a LiteLLM (or asyncio) failure onto the engine's error taxonomy."""
    message = f"{description}: {exc}"
    if isinstance(exc, litellm.RateLimitError):
        return TransientProviderError(message, rate_limited=True)
    if isinstance(exc, (litellm.AuthenticationError, litellm.PermissionDeniedError)):
        return ConfigurationError(message)
    if isinstance(exc, (
        litellm.APIConnectionError,
        litellm.Timeout,
        litellm.InternalServerError,
        litellm.ServiceUnavailableError,
        asyncio.TimeoutError,
    )):
        return TransientProviderError(message)
    return ProviderError(message)
