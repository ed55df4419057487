"""
Mock provider backends for testing and dry runs.

MockProviderClient and MockAsyncProviderClient implement the provider
Protocols without making HTTP calls. Outcomes can be scripted per call
(answers or exceptions), which makes fallback, retry, key-rotation and
polling behavior deterministic to exercise.

Example:
    >>> from llm_answer_collector.exceptions import ProviderTimeoutError
    >>> client = MockProviderClient(
    ...     name="serpapi_bing",
    ...     outcomes=[ProviderTimeoutError("slow"), "Copilot answer"],
    ... )
    >>> await client.submit("best crm", "key-1")   # raises ProviderTimeoutError
    >>> (await client.submit("best crm", "key-2")).text
    'Copilot answer'
    >>> [key for _, key in client.calls]
    ['key-1', 'key-2']
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field

from .models import DeferredHandle, JobStatus, ProviderResponse

logger = logging.getLogger(__name__)

Outcome = str | ProviderResponse | BaseException


def _resolve_outcome(outcome: Outcome, provider: str) -> ProviderResponse:
    if isinstance(outcome, BaseException):
        raise outcome
    if isinstance(outcome, ProviderResponse):
        return outcome
    return ProviderResponse(
        text=outcome,
        citations=[{"title": "Mock source", "url": "https://example.com/source"}],
        urls=["https://example.com/source"],
        metadata={"provider": provider},
    )


@dataclass
class MockProviderClient:
    """
    Sync mock backend.

    Attributes:
        name: Provider name reported in payload metadata
        responses: Dict mapping prompts to answers
        default_response: Answer for prompts not in responses
        outcomes: Scripted per-call outcomes consumed in order (answer text,
            ProviderResponse, or exception to raise); once exhausted,
            responses/default_response apply
        delay_seconds: Simulated latency per call
        calls: Recorded (prompt, api_key) pairs
    """

    name: str = "mock"
    responses: dict[str, str] | None = None
    default_response: str = "Mock provider answer."
    outcomes: list[Outcome] = field(default_factory=list)
    delay_seconds: float = 0.0
    calls: list[tuple[str, str]] = field(default_factory=list)

    def __post_init__(self):
        if self.responses is None:
            self.responses = {}
        self._outcomes = iter(list(self.outcomes))

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def _next_outcome(self, prompt: str) -> Outcome:
        outcome = next(self._outcomes, None)
        if outcome is None:
            outcome = self.responses.get(prompt, self.default_response)
        return outcome

    async def submit(self, prompt: str, api_key: str) -> ProviderResponse | DeferredHandle:
        self.calls.append((prompt, api_key))
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)

        logger.debug(f"{self.name} returning mock answer for prompt: {prompt[:50]}...")
        return _resolve_outcome(self._next_outcome(prompt), self.name)


@dataclass
class MockAsyncProviderClient(MockProviderClient):
    """
    Async mock backend: submit returns a handle, check_status walks a script.

    Attributes:
        operation: Key-pool operation recorded on handles
        statuses: Scripted status-check results consumed in order (JobStatus
            or exception); once exhausted, checks report done with the
            prompt's answer
        status_calls: Recorded job ids of every status check
    """

    operation: str = "mock"
    statuses: list[JobStatus | BaseException] = field(default_factory=list)
    status_calls: list[str] = field(default_factory=list)

    def __post_init__(self):
        super().__post_init__()
        self._statuses = iter(list(self.statuses))
        self._job_ids = itertools.count(1)
        self._prompts: dict[str, str] = {}

    async def submit(self, prompt: str, api_key: str) -> DeferredHandle:
        self.calls.append((prompt, api_key))
        outcome = next(self._outcomes, None)
        if isinstance(outcome, BaseException):
            raise outcome

        job_id = f"{self.name}-job-{next(self._job_ids)}"
        self._prompts[job_id] = prompt
        return DeferredHandle(job_id=job_id, provider=self.name, operation=self.operation)

    async def check_status(self, handle: DeferredHandle, api_key: str) -> JobStatus:
        self.status_calls.append(handle.job_id)
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)

        status = next(self._statuses, None)
        if isinstance(status, BaseException):
            raise status
        if status is not None:
            return status

        prompt = self._prompts.get(handle.job_id, "")
        answer = self.responses.get(prompt, self.default_response)
        return JobStatus(state="done", response=_resolve_outcome(answer, self.name))
