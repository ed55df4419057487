"""
HTTP provider backends for LLM Answer Collector.

Two backends cover the provider shapes the orchestrator consumes:

HTTPProviderClient (sync):
    POST {endpoint} with {"prompt": ..., **request_options}
    200 -> {"text"|"answer": str, "citations": [...], "urls": [...], ...}

HTTPAsyncProviderClient (submit now, fetch later):
    POST {endpoint} -> {"job_id"|"snapshot_id": str}
    GET  {status_endpoint} with {job_id} substituted:
        202                                 -> still running
        200 {"status": "running"|...}       -> still running
        200 {"status": "failed", "error"}   -> job failed
        200 payload                         -> done
        200 unreadable payload              -> job failed

Status codes are classified into the provider error taxonomy; retrying is
left to the fallback chain.

Security:
    - Keys are sent in the Authorization header only
    - Keys are NEVER logged, even in error messages
"""

import logging
from typing import Any

import httpx

from llm_answer_collector.exceptions import (
    ProviderHardError,
    ProviderRateLimitedError,
    ProviderResponseError,
    ProviderTimeoutError,
    ProviderTransientError,
)

from .models import DeferredHandle, JobStatus, ProviderResponse
from .retry_config import (
    CREDENTIAL_STATUS_CODES,
    NO_RETRY_STATUS_CODES,
    RATE_LIMIT_STATUS_CODES,
)

logger = logging.getLogger(__name__)

RUNNING_JOB_STATES = frozenset(["running", "pending", "processing", "building", "queued"])
FAILED_JOB_STATES = frozenset(["failed", "error", "cancelled"])


def _extract_error_detail(response: httpx.Response) -> str:
    """Extract an error message from a provider error response."""
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] if response.text else "No error details"

    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error)
        if error:
            return str(error)
        if data.get("message"):
            return str(data["message"])
    return str(data)[:200]


def _parse_retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def raise_for_provider_status(response: httpx.Response, provider: str) -> None:
    """
    Map an HTTP error status onto the provider error taxonomy.

    Raises:
        ProviderRateLimitedError: 429
        ProviderHardError: 400/401/403/404/422 (credential_failure on 401/403)
        ProviderTransientError: 5xx and any other unexpected error status
    """
    status = response.status_code
    if status < 400:
        return

    detail = _extract_error_detail(response)
    message = f"{provider} returned HTTP {status}: {detail}"

    if status in RATE_LIMIT_STATUS_CODES:
        raise ProviderRateLimitedError(
            message,
            provider=provider,
            status_code=status,
            retry_after=_parse_retry_after(response),
        )

    if status in NO_RETRY_STATUS_CODES:
        raise ProviderHardError(
            message,
            provider=provider,
            status_code=status,
            credential_failure=status in CREDENTIAL_STATUS_CODES,
        )

    raise ProviderTransientError(message, provider=provider, status_code=status)


def parse_provider_payload(data: Any, provider: str) -> ProviderResponse:
    """
    Build a ProviderResponse from a provider JSON payload.

    Accepts a dict or a list whose first element is the record (snapshot
    downloads return lists). Unknown fields are kept in metadata.

    Raises:
        ProviderResponseError: If the payload has no answer field
    """
    if isinstance(data, list):
        if not data:
            raise ProviderResponseError(f"{provider} returned an empty list", provider=provider)
        data = data[0]

    if not isinstance(data, dict):
        raise ProviderResponseError(
            f"{provider} returned unexpected payload type {type(data).__name__}",
            provider=provider,
        )

    text = None
    for field_name in ("text", "answer", "answer_text"):
        if field_name in data:
            text = data[field_name]
            break

    if text is None and "error" not in data:
        raise ProviderResponseError(
            f"{provider} response missing 'text' field", provider=provider
        )

    citations = data.get("citations") or []
    urls = data.get("urls") or []
    if not isinstance(citations, list) or not isinstance(urls, list):
        raise ProviderResponseError(
            f"{provider} response has non-list citations/urls", provider=provider
        )

    known = {"text", "answer", "answer_text", "citations", "urls", "metadata"}
    metadata = dict(data.get("metadata") or {})
    metadata.update({k: v for k, v in data.items() if k not in known})
    metadata.setdefault("provider", provider)

    return ProviderResponse(
        text=str(text or ""),
        citations=citations,
        urls=[str(u) for u in urls],
        metadata=metadata,
    )


class HTTPProviderClient:
    """
    Sync provider backend: one POST returns the final answer.

    Attributes:
        name: Provider name (used in errors and logs)
        endpoint: URL the query is POSTed to
        request_options: Opaque fields merged into the request body
        request_timeout: httpx timeout of the request in seconds
    """

    def __init__(
        self,
        name: str,
        endpoint: str,
        request_options: dict[str, Any] | None = None,
        request_timeout: float = 30.0,
    ):
        self.name = name
        self.endpoint = endpoint
        self.request_options = dict(request_options or {})
        self.request_timeout = request_timeout

    def _headers(self, api_key: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    async def _post(self, api_key: str, payload: dict[str, Any]) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.request_timeout) as client:
                response = await client.post(
                    self.endpoint, json=payload, headers=self._headers(api_key)
                )
        except httpx.TimeoutException as e:
            logger.error(f"{self.name} request timed out: {e}")
            raise ProviderTimeoutError(
                f"{self.name} timed out after {self.request_timeout}s", provider=self.name
            ) from e
        except httpx.TransportError as e:
            logger.error(f"{self.name} connection error: {e}")
            raise ProviderTransientError(
                f"{self.name} connection error: {e}", provider=self.name
            ) from e

        if response.status_code >= 400:
            logger.error(
                f"{self.name} HTTP error: status={response.status_code}, "
                f"detail={_extract_error_detail(response)}"
            )
        raise_for_provider_status(response, self.name)
        return response

    def _json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ProviderResponseError(
                f"Failed to parse {self.name} response JSON: {e}", provider=self.name
            ) from e

    async def submit(self, prompt: str, api_key: str) -> ProviderResponse:
        """
        Send the prompt and return the answer.

        Raises:
            ProviderHardError: If prompt is empty
            ProviderError: Classified failure (see raise_for_provider_status)
        """
        if not prompt or prompt.isspace():
            raise ProviderHardError("Prompt cannot be empty", provider=self.name)

        logger.debug(f"Sending request to {self.name}")
        response = await self._post(api_key, {"prompt": prompt, **self.request_options})
        return parse_provider_payload(self._json(response), self.name)


class HTTPAsyncProviderClient(HTTPProviderClient):
    """
    Async provider backend: submission returns a job handle that the poller
    checks through the status endpoint.

    Attributes:
        operation: Key-pool operation recorded on handles
        status_endpoint: Status URL template with a {job_id} placeholder
        poll_timeout: httpx timeout of one status check
    """

    def __init__(
        self,
        name: str,
        operation: str,
        endpoint: str,
        status_endpoint: str,
        request_options: dict[str, Any] | None = None,
        request_timeout: float = 30.0,
        poll_timeout: float = 30.0,
    ):
        super().__init__(name, endpoint, request_options, request_timeout)
        self.operation = operation
        self.status_endpoint = status_endpoint
        self.poll_timeout = poll_timeout

    async def submit(self, prompt: str, api_key: str) -> DeferredHandle:
        """
        Trigger the job and return its handle without waiting for completion.

        Raises:
            ProviderResponseError: If the trigger response carries no job id
        """
        if not prompt or prompt.isspace():
            raise ProviderHardError("Prompt cannot be empty", provider=self.name)

        response = await self._post(api_key, {"prompt": prompt, **self.request_options})
        data = self._json(response)

        job_id = None
        if isinstance(data, dict):
            job_id = data.get("job_id") or data.get("snapshot_id")
        if not job_id:
            raise ProviderResponseError(
                f"{self.name} trigger response missing job id", provider=self.name
            )

        logger.info(f"{self.name} accepted job {job_id}")
        return DeferredHandle(job_id=str(job_id), provider=self.name, operation=self.operation)

    async def check_status(self, handle: DeferredHandle, api_key: str) -> JobStatus:
        """
        Check a job once.

        Raises:
            ProviderError: If the status call itself failed
        """
        url = self.status_endpoint.format(job_id=handle.job_id)

        try:
            async with httpx.AsyncClient(timeout=self.poll_timeout) as client:
                response = await client.get(url, headers=self._headers(api_key))
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(
                f"{self.name} status check timed out for job {handle.job_id}",
                provider=self.name,
            ) from e
        except httpx.TransportError as e:
            raise ProviderTransientError(
                f"{self.name} status check connection error: {e}", provider=self.name
            ) from e

        if response.status_code == 202:
            return JobStatus(state="running")

        raise_for_provider_status(response, self.name)
        data = self._json(response)

        if isinstance(data, dict):
            state = str(data.get("status", "")).lower()
            if state in RUNNING_JOB_STATES:
                return JobStatus(state="running")
            if state in FAILED_JOB_STATES:
                error = data.get("error") or data.get("message") or f"job {state}"
                return JobStatus(state="failed", error=str(error))
            if "data" in data and "text" not in data and "answer" not in data:
                data = data["data"]

        # The job finished; an unreadable result will not improve on a re-poll
        try:
            response = parse_provider_payload(data, self.name)
        except ProviderResponseError as e:
            logger.warning(f"{self.name} job {handle.job_id} finished with a malformed result: {e}")
            return JobStatus(state="failed", error=f"malformed result payload: {e}")

        return JobStatus(state="done", response=response)
