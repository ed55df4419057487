"""
Tests for collector.http_client module - HTTP provider backends.

Uses pytest-httpx to mock provider endpoints; no real network calls.
"""

import json

import httpx
import pytest

from llm_answer_collector.collector.http_client import (
    HTTPAsyncProviderClient,
    HTTPProviderClient,
    parse_provider_payload,
)
from llm_answer_collector.collector.models import DeferredHandle, build_provider_client
from llm_answer_collector.config.schema import ProviderConfig
from llm_answer_collector.exceptions import (
    ProviderHardError,
    ProviderRateLimitedError,
    ProviderResponseError,
    ProviderTimeoutError,
    ProviderTransientError,
)

SYNC_URL = "https://provider.test/ask"
TRIGGER_URL = "https://provider.test/trigger"
STATUS_URL = "https://provider.test/snapshot/{job_id}"


@pytest.fixture
def sync_client():
    return HTTPProviderClient(
        name="serpapi_chatgpt",
        endpoint=SYNC_URL,
        request_options={"country": "us"},
        request_timeout=5.0,
    )


@pytest.fixture
def async_client():
    return HTTPAsyncProviderClient(
        name="brightdata_chatgpt",
        operation="brightdata",
        endpoint=TRIGGER_URL,
        status_endpoint=STATUS_URL,
        request_timeout=5.0,
        poll_timeout=5.0,
    )


# ============================================================================
# Sync client
# ============================================================================


class TestHTTPProviderClient:
    """Test HTTPProviderClient.submit()."""

    @pytest.mark.asyncio
    async def test_success(self, httpx_mock, sync_client):
        httpx_mock.add_response(
            method="POST",
            url=SYNC_URL,
            json={
                "text": "Acme is popular.",
                "citations": [{"url": "https://acme.test"}],
                "urls": ["https://acme.test"],
                "model": "gpt-4o",
            },
        )

        response = await sync_client.submit("best crm", "serp-key-00000001")

        assert response.text == "Acme is popular."
        assert response.urls == ["https://acme.test"]
        assert response.metadata["model"] == "gpt-4o"
        assert response.metadata["provider"] == "serpapi_chatgpt"

        request = httpx_mock.get_request()
        assert request.headers["Authorization"] == "Bearer serp-key-00000001"
        assert json.loads(request.content) == {"prompt": "best crm", "country": "us"}

    @pytest.mark.asyncio
    async def test_rate_limit_carries_retry_after(self, httpx_mock, sync_client):
        httpx_mock.add_response(
            url=SYNC_URL, status_code=429, headers={"Retry-After": "12"}, json={"error": "slow down"}
        )

        with pytest.raises(ProviderRateLimitedError) as exc_info:
            await sync_client.submit("best crm", "serp-key-00000001")

        assert exc_info.value.retry_after == 12.0
        assert exc_info.value.provider == "serpapi_chatgpt"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [401, 403])
    async def test_credential_failures(self, httpx_mock, sync_client, status_code):
        httpx_mock.add_response(url=SYNC_URL, status_code=status_code, json={"error": "bad key"})

        with pytest.raises(ProviderHardError) as exc_info:
            await sync_client.submit("best crm", "serp-key-00000001")

        assert exc_info.value.credential_failure is True
        assert "bad key" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_bad_request_is_hard_error(self, httpx_mock, sync_client):
        httpx_mock.add_response(url=SYNC_URL, status_code=400, text="missing prompt")

        with pytest.raises(ProviderHardError) as exc_info:
            await sync_client.submit("best crm", "serp-key-00000001")

        assert exc_info.value.credential_failure is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [500, 502, 503])
    async def test_server_errors_are_transient(self, httpx_mock, sync_client, status_code):
        httpx_mock.add_response(url=SYNC_URL, status_code=status_code)

        with pytest.raises(ProviderTransientError):
            await sync_client.submit("best crm", "serp-key-00000001")

    @pytest.mark.asyncio
    async def test_timeout(self, httpx_mock, sync_client):
        httpx_mock.add_exception(httpx.ReadTimeout("timed out"))

        with pytest.raises(ProviderTimeoutError):
            await sync_client.submit("best crm", "serp-key-00000001")

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, httpx_mock, sync_client):
        httpx_mock.add_exception(httpx.ConnectError("refused"))

        with pytest.raises(ProviderTransientError, match="connection error"):
            await sync_client.submit("best crm", "serp-key-00000001")

    @pytest.mark.asyncio
    async def test_invalid_json(self, httpx_mock, sync_client):
        httpx_mock.add_response(url=SYNC_URL, text="<html>oops</html>")

        with pytest.raises(ProviderResponseError, match="parse"):
            await sync_client.submit("best crm", "serp-key-00000001")

    @pytest.mark.asyncio
    async def test_rejects_empty_prompt(self, sync_client):
        with pytest.raises(ProviderHardError, match="Prompt cannot be empty") as exc_info:
            await sync_client.submit("  ", "serp-key-00000001")

        assert exc_info.value.provider == "serpapi_chatgpt"


# ============================================================================
# Async client
# ============================================================================


class TestHTTPAsyncProviderClient:
    """Test HTTPAsyncProviderClient.submit() and check_status()."""

    def _handle(self, job_id="snap-1"):
        return DeferredHandle(job_id=job_id, provider="brightdata_chatgpt", operation="brightdata")

    @pytest.mark.asyncio
    async def test_submit_returns_handle(self, httpx_mock, async_client):
        httpx_mock.add_response(method="POST", url=TRIGGER_URL, json={"snapshot_id": "snap-1"})

        handle = await async_client.submit("best crm", "bd-key-00000001")

        assert handle == self._handle()

    @pytest.mark.asyncio
    async def test_submit_without_job_id(self, httpx_mock, async_client):
        httpx_mock.add_response(method="POST", url=TRIGGER_URL, json={"accepted": True})

        with pytest.raises(ProviderResponseError, match="missing job id"):
            await async_client.submit("best crm", "bd-key-00000001")

    @pytest.mark.asyncio
    async def test_submit_rejects_empty_prompt(self, async_client):
        with pytest.raises(ProviderHardError, match="Prompt cannot be empty"):
            await async_client.submit("", "bd-key-00000001")

    @pytest.mark.asyncio
    async def test_check_status_202_is_running(self, httpx_mock, async_client):
        httpx_mock.add_response(
            method="GET", url="https://provider.test/snapshot/snap-1", status_code=202
        )

        status = await async_client.check_status(self._handle(), "bd-key-00000001")

        assert status.state == "running"

    @pytest.mark.asyncio
    async def test_check_status_running_state(self, httpx_mock, async_client):
        httpx_mock.add_response(
            url="https://provider.test/snapshot/snap-1", json={"status": "building"}
        )

        status = await async_client.check_status(self._handle(), "bd-key-00000001")

        assert status.state == "running"

    @pytest.mark.asyncio
    async def test_check_status_failed_state(self, httpx_mock, async_client):
        httpx_mock.add_response(
            url="https://provider.test/snapshot/snap-1",
            json={"status": "failed", "error": "captcha"},
        )

        status = await async_client.check_status(self._handle(), "bd-key-00000001")

        assert status.state == "failed"
        assert status.error == "captcha"

    @pytest.mark.asyncio
    async def test_check_status_done_with_list_payload(self, httpx_mock, async_client):
        httpx_mock.add_response(
            url="https://provider.test/snapshot/snap-1",
            json=[{"answer_text": "Acme.", "citations": []}],
        )

        status = await async_client.check_status(self._handle(), "bd-key-00000001")

        assert status.state == "done"
        assert status.response.text == "Acme."

    @pytest.mark.asyncio
    async def test_check_status_done_with_data_envelope(self, httpx_mock, async_client):
        httpx_mock.add_response(
            url="https://provider.test/snapshot/snap-1",
            json={"status": "ready", "data": {"text": "Acme."}},
        )

        status = await async_client.check_status(self._handle(), "bd-key-00000001")

        assert status.state == "done"
        assert status.response.text == "Acme."

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload,detail",
        [
            ([], "empty list"),
            ({"status": "ready", "data": {"citations": []}}, "missing 'text'"),
        ],
    )
    async def test_check_status_malformed_done_payload_is_job_failure(
        self, httpx_mock, async_client, payload, detail
    ):
        httpx_mock.add_response(url="https://provider.test/snapshot/snap-1", json=payload)

        status = await async_client.check_status(self._handle(), "bd-key-00000001")

        assert status.state == "failed"
        assert status.error.startswith("malformed result payload")
        assert detail in status.error

    @pytest.mark.asyncio
    async def test_check_status_timeout(self, httpx_mock, async_client):
        httpx_mock.add_exception(httpx.ReadTimeout("timed out"))

        with pytest.raises(ProviderTimeoutError, match="snap-1"):
            await async_client.check_status(self._handle(), "bd-key-00000001")


# ============================================================================
# Payload parsing and factory
# ============================================================================


class TestParseProviderPayload:
    """Test parse_provider_payload()."""

    def test_error_payload_becomes_failure_metadata(self):
        response = parse_provider_payload({"error": "blocked"}, "p1")
        assert response.text == ""
        assert response.metadata["error"] == "blocked"

    def test_missing_text(self):
        with pytest.raises(ProviderResponseError, match="missing 'text'"):
            parse_provider_payload({"citations": []}, "p1")

    def test_empty_list(self):
        with pytest.raises(ProviderResponseError, match="empty list"):
            parse_provider_payload([], "p1")

    def test_non_list_citations(self):
        with pytest.raises(ProviderResponseError, match="non-list"):
            parse_provider_payload({"text": "a", "citations": "x"}, "p1")


class TestBuildProviderClient:
    """Test build_provider_client() factory."""

    def test_sync_provider(self):
        provider = ProviderConfig(
            name="p1", service="serpapi", priority=1, endpoint=SYNC_URL, timeout_ms=2500
        )

        client = build_provider_client(provider)

        assert type(client) is HTTPProviderClient
        assert client.request_timeout == 2.5

    def test_async_provider(self):
        provider = ProviderConfig(
            name="p3",
            service="brightdata",
            priority=3,
            kind="async",
            endpoint=TRIGGER_URL,
            status_endpoint=STATUS_URL,
        )

        client = build_provider_client(provider, poll_timeout_seconds=7)

        assert isinstance(client, HTTPAsyncProviderClient)
        assert client.operation == "brightdata"
        assert client.poll_timeout == 7
