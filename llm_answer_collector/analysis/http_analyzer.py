"""
HTTP backend for the consolidated analysis call.

One POST replaces the separate entity, citation and sentiment calls:

    POST {endpoint}
    {"result_id": ..., "text": ..., "citations": [...], "urls": [...], **request_options}

    200 -> {"entities": [...], "citation_categories": {...},
            "sentiment_by_entity": {...}}

Transient failures are retried with tenacity; the cache never stores a
failed computation.
"""

import logging
from typing import Any

import httpx

from llm_answer_collector.collector.http_client import raise_for_provider_status
from llm_answer_collector.collector.retry_config import create_retry_decorator
from llm_answer_collector.exceptions import (
    AnalysisBackendError,
    ProviderTimeoutError,
    ProviderTransientError,
)
from llm_answer_collector.utils.logging import register_secret

logger = logging.getLogger(__name__)

ANALYZER_NAME = "consolidated-analyzer"


class HTTPConsolidatedAnalyzer:
    """
    Calls the consolidated analysis endpoint for one Result.

    Attributes:
        endpoint: URL the Result is POSTed to
        api_key: Bearer credential (never logged)
        request_options: Opaque fields merged into the request body
        request_timeout: httpx timeout in seconds
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        request_options: dict[str, Any] | None = None,
        request_timeout: float = 60.0,
    ):
        self.endpoint = endpoint
        self.api_key = api_key
        self.request_options = dict(request_options or {})
        self.request_timeout = request_timeout
        register_secret(api_key)

    @create_retry_decorator()
    async def analyze(self, result: dict[str, Any]) -> dict[str, Any]:
        """
        Run the consolidated analysis of a stored Result.

        Args:
            result: Result dict as returned by storage.db.get_result

        Returns:
            Payload with entities, citation_categories and sentiment_by_entity

        Raises:
            AnalysisBackendError: Non-retryable failure or malformed payload
        """
        payload = {
            "result_id": result["id"],
            "text": result["text"],
            "citations": result.get("citations") or [],
            "urls": result.get("urls") or [],
            **self.request_options,
        }

        try:
            async with httpx.AsyncClient(timeout=self.request_timeout) as client:
                response = await client.post(
                    self.endpoint,
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                )
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(
                f"Analysis request timed out after {self.request_timeout}s",
                provider=ANALYZER_NAME,
            ) from e
        except httpx.TransportError as e:
            raise ProviderTransientError(
                f"Analysis backend connection error: {e}", provider=ANALYZER_NAME
            ) from e

        if response.status_code >= 400:
            logger.error(f"Analysis backend returned HTTP {response.status_code}")
        raise_for_provider_status(response, ANALYZER_NAME)

        try:
            data = response.json()
        except ValueError as e:
            raise AnalysisBackendError(f"Failed to parse analysis response JSON: {e}") from e

        if not isinstance(data, dict):
            raise AnalysisBackendError("Analysis response must be a JSON object")

        logger.debug(
            f"Analysis of result {result['id']}: {len(data.get('entities') or [])} entities"
        )
        return data
