"""
Retry configuration for provider attempts.

Local retry (same provider, same timeout, possibly a different key) is
distinct from fallback (next provider in the chain). This module builds the
tenacity retry policy of one provider:

- stop after 1 initial attempt + provider.retry_count retries
- fixed or exponential delay, capped at MAX_RETRY_DELAY_SECONDS
- retry only timeouts, rate limits and transient (5xx/connection) errors
- hard errors (bad credentials, bad request) and malformed payloads are
  never retried locally

Example:
    >>> retrying = create_async_retrying(provider)
    >>> async for attempt in retrying:
    ...     with attempt:
    ...         response = await attempt_once()
"""

from tenacity import (
    AsyncRetrying,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from llm_answer_collector.config.constants import MAX_RETRY_DELAY_SECONDS
from llm_answer_collector.config.schema import ProviderConfig
from llm_answer_collector.exceptions import (
    ProviderRateLimitedError,
    ProviderTimeoutError,
    ProviderTransientError,
)

# HTTP status codes classified as rate limiting
RATE_LIMIT_STATUS_CODES = frozenset([429])

# HTTP status codes classified as transient (retried locally)
RETRY_STATUS_CODES = frozenset([500, 502, 503, 504])

# HTTP status codes that reject the credential itself (key marked error)
CREDENTIAL_STATUS_CODES = frozenset([401, 403])

# HTTP status codes that should NOT trigger a retry
NO_RETRY_STATUS_CODES = frozenset([400, 401, 403, 404, 422])

RETRYABLE_ERRORS = (ProviderTimeoutError, ProviderRateLimitedError, ProviderTransientError)


def create_async_retrying(provider: ProviderConfig) -> AsyncRetrying:
    """
    Create the tenacity retry controller for one provider.

    Args:
        provider: Provider whose retry_count / retry_delay_seconds /
            retry_backoff drive the policy

    Returns:
        AsyncRetrying that re-raises the last error once attempts are exhausted
    """
    if provider.retry_backoff == "fixed":
        wait = wait_fixed(min(provider.retry_delay_seconds, MAX_RETRY_DELAY_SECONDS))
    else:
        wait = wait_exponential(
            multiplier=provider.retry_delay_seconds,
            min=provider.retry_delay_seconds,
            max=MAX_RETRY_DELAY_SECONDS,
        )

    return AsyncRetrying(
        stop=stop_after_attempt(provider.retry_count + 1),
        wait=wait,
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        reraise=True,
    )


def create_retry_decorator(max_attempts: int = 3, min_wait_seconds: float = 1.0):
    """
    Create a tenacity retry decorator for auxiliary calls (analysis backend).

    Retries the same error classes as provider attempts with exponential
    backoff capped at MAX_RETRY_DELAY_SECONDS.

    Example:
        >>> @create_retry_decorator()
        ... async def call_backend():
        ...     ...
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait_seconds, max=MAX_RETRY_DELAY_SECONDS),
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        reraise=True,
    )
