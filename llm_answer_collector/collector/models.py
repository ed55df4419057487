"""
Provider backend abstraction and factory for LLM Answer Collector.

Every backend that can service a collector conforms to the ProviderClient
Protocol. Sync backends answer directly; async backends answer with a
DeferredHandle and additionally implement check_status for the poller.

Key components:
- ProviderResponse: Immediate answer payload {text, citations, urls}
- DeferredHandle: Reference to a submitted async job
- JobStatus: One status check of a deferred job
- ProviderClient / AsyncProviderClient: Protocols for backends
- build_provider_client: Factory mapping a ProviderConfig to a client
"""

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, runtime_checkable

from llm_answer_collector.config.schema import ProviderConfig


@dataclass
class ProviderResponse:
    """
    Immediate answer returned by a provider (or by a finished async job).

    Attributes:
        text: Answer text
        citations: Cited sources as returned by the provider
        urls: URLs referenced in the answer
        metadata: Provider-specific extras stored with the Result; an
            "error" entry marks the payload as a captured failure
    """

    text: str
    citations: list[Any] = field(default_factory=list)
    urls: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeferredHandle:
    """
    Reference to an async provider job.

    Attributes:
        job_id: Provider job/snapshot identifier
        provider: Provider name that owns the job
        operation: Key-pool operation used for status checks
    """

    job_id: str
    provider: str
    operation: str


JobState = Literal["running", "done", "failed"]


@dataclass
class JobStatus:
    """
    Outcome of one status check.

    Attributes:
        state: running (keep polling), done (response set) or failed (error set)
        response: Final payload when state is done
        error: Provider failure detail when state is failed
    """

    state: JobState
    response: ProviderResponse | None = None
    error: str | None = None


class ProviderClient(Protocol):
    """
    Interface for provider backends.

    Implementations MUST:
    - Use async/await for I/O (httpx.AsyncClient)
    - Raise ProviderTimeoutError / ProviderRateLimitedError /
      ProviderHardError / ProviderTransientError / ProviderResponseError
      so the fallback chain can apply its retry policy
    - Leave retries to the fallback chain (no internal retry loop)
    - Never log API keys
    """

    async def submit(self, prompt: str, api_key: str) -> ProviderResponse | DeferredHandle:
        """
        Send a query to the provider.

        Returns:
            ProviderResponse for sync backends, DeferredHandle for async backends
        """
        ...


@runtime_checkable
class AsyncProviderClient(ProviderClient, Protocol):
    """Provider backend with a separate status-check endpoint."""

    async def check_status(self, handle: DeferredHandle, api_key: str) -> JobStatus:
        """
        Check a deferred job once.

        Raises:
            ProviderError: If the status call itself failed (the poller keeps
                polling until its max wait)
        """
        ...


def build_provider_client(
    provider: ProviderConfig, poll_timeout_seconds: float | None = None
) -> ProviderClient:
    """
    Create the HTTP client for a configured provider.

    Args:
        provider: Resolved provider configuration
        poll_timeout_seconds: Deadline of one status check (async providers)

    Returns:
        HTTPProviderClient or HTTPAsyncProviderClient
    """
    # Lazy import keeps httpx client construction out of config-only code paths
    from .http_client import HTTPAsyncProviderClient, HTTPProviderClient

    if provider.kind == "async":
        return HTTPAsyncProviderClient(
            name=provider.name,
            operation=provider.service,
            endpoint=provider.endpoint,
            status_endpoint=provider.status_endpoint,
            request_options=provider.request_options,
            request_timeout=provider.timeout_seconds,
            poll_timeout=poll_timeout_seconds or provider.timeout_seconds,
        )

    return HTTPProviderClient(
        name=provider.name,
        endpoint=provider.endpoint,
        request_options=provider.request_options,
        request_timeout=provider.timeout_seconds,
    )
