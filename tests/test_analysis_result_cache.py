"""
Tests for analysis module - consolidated analysis cache and HTTP backend.
"""

import asyncio
import json
import sqlite3

import pytest

from llm_answer_collector.analysis import (
    AnalysisCache,
    ConsolidatedAnalysis,
    HTTPConsolidatedAnalyzer,
)
from llm_answer_collector.exceptions import (
    AnalysisBackendError,
    ProviderHardError,
    ResultNotFoundError,
)
from llm_answer_collector.storage.db import (
    create_execution,
    init_db_if_needed,
    insert_result,
    lookup_cached_analysis,
    store_cached_analysis,
)

ANALYZER_URL = "https://analyzer.test/analyze"

PAYLOAD = {
    "entities": ["Acme", "Globex"],
    "citation_categories": {"https://acme.test": {"category": "vendor"}},
    "sentiment_by_entity": {"Acme": {"score": 0.8}},
}

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "collector.db")
    init_db_if_needed(path)
    return path


@pytest.fixture
def result_id(db_path):
    with sqlite3.connect(db_path) as conn:
        execution_id = create_execution(conn, "run-1", "q1", "brand-1", "chatgpt")
        return insert_result(
            conn,
            execution_id,
            "Acme leads, Globex follows.",
            citations=[{"url": "https://acme.test"}],
            urls=["https://acme.test"],
        )


class CountingAnalyzer:
    """Compute function that blocks until released and counts its calls."""

    def __init__(self, payload=None, error=None):
        self.payload = payload or PAYLOAD
        self.error = error
        self.calls = []
        self.release = asyncio.Event()
        self.release.set()

    async def __call__(self, result):
        self.calls.append(result["id"])
        await self.release.wait()
        if self.error is not None:
            raise self.error
        return self.payload


# ============================================================================
# Get-or-compute
# ============================================================================


class TestGetOrCompute:
    """Test AnalysisCache.get_or_compute()."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_computation(self, db_path, result_id):
        analyzer = CountingAnalyzer()
        analyzer.release.clear()
        cache = AnalysisCache(db_path, analyzer)

        callers = [asyncio.create_task(cache.get_or_compute(result_id)) for _ in range(5)]
        await asyncio.sleep(0.01)
        analyzer.release.set()
        analyses = await asyncio.gather(*callers)

        assert cache.compute_count == 1
        assert analyzer.calls == [result_id]
        assert all(a is analyses[0] for a in analyses)
        assert analyses[0].sentiment_by_entity["Acme"]["score"] == 0.8

    @pytest.mark.asyncio
    async def test_later_callers_use_memory(self, db_path, result_id):
        analyzer = CountingAnalyzer()
        cache = AnalysisCache(db_path, analyzer)

        first = await cache.get_or_compute(result_id)
        second = await cache.get_or_compute(result_id)

        assert first is second
        assert cache.compute_count == 1

    @pytest.mark.asyncio
    async def test_computation_is_stored(self, db_path, result_id):
        cache = AnalysisCache(db_path, CountingAnalyzer())

        await cache.get_or_compute(result_id)

        with sqlite3.connect(db_path) as conn:
            stored = lookup_cached_analysis(conn, result_id)
        assert stored["entities"] == ["Acme", "Globex"]

    @pytest.mark.asyncio
    async def test_stored_row_is_reused_by_new_process(self, db_path, result_id):
        """A fresh cache (new process) reads the stored row instead of recomputing."""
        with sqlite3.connect(db_path) as conn:
            store_cached_analysis(
                conn,
                result_id,
                entities=["Initech"],
                citation_categories={},
                sentiment_by_entity={},
            )
        analyzer = CountingAnalyzer()
        cache = AnalysisCache(db_path, analyzer)

        analysis = await cache.get_or_compute(result_id)

        assert analysis.entities == ["Initech"]
        assert analyzer.calls == []
        assert cache.compute_count == 0

    @pytest.mark.asyncio
    async def test_failure_is_not_cached(self, db_path, result_id):
        analyzer = CountingAnalyzer(error=RuntimeError("backend down"))
        cache = AnalysisCache(db_path, analyzer)

        with pytest.raises(AnalysisBackendError, match="backend down"):
            await cache.get_or_compute(result_id)

        analyzer.error = None
        analysis = await cache.get_or_compute(result_id)

        assert analysis.entities == ["Acme", "Globex"]
        assert cache.compute_count == 2

    @pytest.mark.asyncio
    async def test_malformed_payload_is_rejected(self, db_path, result_id):
        cache = AnalysisCache(db_path, CountingAnalyzer(payload={"entities": "Acme"}))

        with pytest.raises(AnalysisBackendError, match="must be a list"):
            await cache.get_or_compute(result_id)

        with sqlite3.connect(db_path) as conn:
            assert lookup_cached_analysis(conn, result_id) is None

    @pytest.mark.asyncio
    async def test_unknown_result(self, db_path):
        analyzer = CountingAnalyzer()
        cache = AnalysisCache(db_path, analyzer)

        with pytest.raises(ResultNotFoundError):
            await cache.get_or_compute("missing")
        assert analyzer.calls == []

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_shared_computation(
        self, db_path, result_id
    ):
        analyzer = CountingAnalyzer()
        analyzer.release.clear()
        cache = AnalysisCache(db_path, analyzer)

        impatient = asyncio.create_task(cache.get_or_compute(result_id))
        patient = asyncio.create_task(cache.get_or_compute(result_id))
        await asyncio.sleep(0.01)
        impatient.cancel()
        analyzer.release.set()

        analysis = await patient

        assert impatient.cancelled()
        assert analysis.result_id == result_id
        assert cache.compute_count == 1


class TestClear:
    """Test clear() and clear_all()."""

    @pytest.mark.asyncio
    async def test_clear_forces_recompute(self, db_path, result_id):
        cache = AnalysisCache(db_path, CountingAnalyzer())
        await cache.get_or_compute(result_id)

        cache.clear(result_id)
        await cache.get_or_compute(result_id)

        assert cache.compute_count == 2

    @pytest.mark.asyncio
    async def test_clear_all(self, db_path, result_id):
        cache = AnalysisCache(db_path, CountingAnalyzer())
        await cache.get_or_compute(result_id)

        assert cache.clear_all() == 1
        with sqlite3.connect(db_path) as conn:
            assert lookup_cached_analysis(conn, result_id) is None


class TestConsolidatedAnalysis:
    """Test ConsolidatedAnalysis.from_payload()."""

    def test_missing_sections_default_to_empty(self):
        analysis = ConsolidatedAnalysis.from_payload("r1", {"entities": ["Acme"]})
        assert analysis.citation_categories == {}
        assert analysis.sentiment_by_entity == {}

    def test_rejects_non_object(self):
        with pytest.raises(AnalysisBackendError, match="expected an object"):
            ConsolidatedAnalysis.from_payload("r1", ["Acme"])


# ============================================================================
# HTTP backend
# ============================================================================


class TestHTTPConsolidatedAnalyzer:
    """Test HTTPConsolidatedAnalyzer.analyze() via pytest-httpx."""

    def _result(self):
        return {
            "id": "r1",
            "text": "Acme leads.",
            "citations": [{"url": "https://acme.test"}],
            "urls": ["https://acme.test"],
        }

    @pytest.mark.asyncio
    async def test_posts_result_and_returns_payload(self, httpx_mock):
        httpx_mock.add_response(method="POST", url=ANALYZER_URL, json=PAYLOAD)
        analyzer = HTTPConsolidatedAnalyzer(
            ANALYZER_URL, "analyzer-key-0001", request_options={"locale": "en"}
        )

        data = await analyzer.analyze(self._result())

        assert data == PAYLOAD
        request = httpx_mock.get_request()
        assert request.headers["Authorization"] == "Bearer analyzer-key-0001"
        body = json.loads(request.content)
        assert body["result_id"] == "r1"
        assert body["urls"] == ["https://acme.test"]
        assert body["locale"] == "en"

    @pytest.mark.asyncio
    async def test_bad_request_is_not_retried(self, httpx_mock):
        httpx_mock.add_response(url=ANALYZER_URL, status_code=400, json={"error": "bad"})
        analyzer = HTTPConsolidatedAnalyzer(ANALYZER_URL, "analyzer-key-0001")

        with pytest.raises(ProviderHardError):
            await analyzer.analyze(self._result())

        assert len(httpx_mock.get_requests()) == 1

    @pytest.mark.asyncio
    async def test_non_object_response(self, httpx_mock):
        httpx_mock.add_response(url=ANALYZER_URL, json=["Acme"])
        analyzer = HTTPConsolidatedAnalyzer(ANALYZER_URL, "analyzer-key-0001")

        with pytest.raises(AnalysisBackendError, match="JSON object"):
            await analyzer.analyze(self._result())

    @pytest.mark.asyncio
    async def test_backend_error_through_cache_is_wrapped(self, httpx_mock, db_path, result_id):
        httpx_mock.add_response(url=ANALYZER_URL, status_code=400, json={"error": "bad"})
        cache = AnalysisCache(db_path, HTTPConsolidatedAnalyzer(ANALYZER_URL, "key-0001").analyze)

        with pytest.raises(AnalysisBackendError, match="failed"):
            await cache.get_or_compute(result_id)
