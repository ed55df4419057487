"""
Tests for collector.orchestrator module - the wiring facade.

Provider clients are mock overrides; storage is a temporary SQLite file.
"""

import asyncio
import sqlite3

import pytest

from llm_answer_collector.collector import orchestrator as orchestrator_module
from llm_answer_collector.collector.mock_client import (
    MockAsyncProviderClient,
    MockProviderClient,
)
from llm_answer_collector.collector.orchestrator import Orchestrator
from llm_answer_collector.config.schema import (
    BatchSettings,
    PollerSettings,
    ProviderConfig,
    Query,
    RuntimeConfig,
    RuntimeKeyPool,
    StoreSettings,
    SweepSettings,
)
from llm_answer_collector.exceptions import (
    ExecutionNotFoundError,
    OrchestratorClosedError,
    ProviderHardError,
)
from llm_answer_collector.storage.db import (
    create_execution,
    init_db_if_needed,
    list_executions,
    touch_execution,
    update_execution_status,
)
from llm_answer_collector.tracking.state import COMPLETED, FAILED, PENDING, RUNNING

# ============================================================================
# Helpers
# ============================================================================


def _provider(name, service="serpapi", **overrides):
    data = {
        "name": name,
        "service": service,
        "priority": 1,
        "endpoint": f"https://{name}.test/ask",
        "retry_count": 0,
        "retry_delay_seconds": 0,
    }
    data.update(overrides)
    return ProviderConfig(**data)


def _async_provider(name):
    return _provider(
        name,
        service="brightdata",
        kind="async",
        status_endpoint=f"https://{name}.test/status/{{job_id}}",
    )


def _config(db_path, collectors, sweep_enabled=False, batch_size=3):
    return RuntimeConfig(
        store=StoreSettings(sqlite_db_path=db_path),
        batch=BatchSettings(batch_size=batch_size, inter_batch_delay_seconds=0),
        poller=PollerSettings(interval_seconds=0.01, max_wait_seconds=1.0),
        sweep=SweepSettings(enabled=sweep_enabled),
        key_pools=[
            RuntimeKeyPool(operation="serpapi", keys=["serp-key-00000001"]),
            RuntimeKeyPool(operation="brightdata", keys=["bd-key-00000001"]),
        ],
        collectors=collectors,
    )


def _queries(count, collector_types=("chatgpt", "perplexity")):
    return [
        Query(
            query_id=f"q{n}",
            text=f"Question {n}",
            brand_id="brand-1",
            enabled_collector_types=list(collector_types),
        )
        for n in range(1, count + 1)
    ]


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "collector.db")


@pytest.fixture
def sync_config(db_path):
    return _config(
        db_path,
        {"chatgpt": [_provider("p1")], "perplexity": [_provider("p2")]},
    )


@pytest.fixture
def sync_clients():
    return {"p1": MockProviderClient(name="p1"), "p2": MockProviderClient(name="p2")}


# ============================================================================
# Submitting batches
# ============================================================================


class TestSubmitBatch:
    """Test Orchestrator.submit_batch()."""

    @pytest.mark.asyncio
    async def test_seven_queries_two_collectors(self, sync_config, sync_clients):
        async with Orchestrator(sync_config, clients=sync_clients) as orch:
            summary = await orch.submit_batch(_queries(7))

        assert summary.batch_sizes == [3, 3, 1]
        assert summary.succeeded_count == 14
        assert summary.failed_count == 0
        assert sync_clients["p1"].call_count == 7

    @pytest.mark.asyncio
    async def test_partial_failure_counts(self, db_path):
        config = _config(db_path, {"chatgpt": [_provider("p1")], "perplexity": [_provider("p2")]})
        clients = {
            "p1": MockProviderClient(name="p1"),
            "p2": MockProviderClient(name="p2", outcomes=[ProviderHardError("400")]),
        }

        async with Orchestrator(config, clients=clients) as orch:
            summary = await orch.submit_batch(_queries(1))

        assert summary.succeeded_count == 1
        assert summary.failed_count == 1

    @pytest.mark.asyncio
    async def test_explicit_run_id(self, sync_config, sync_clients):
        async with Orchestrator(sync_config, clients=sync_clients) as orch:
            summary = await orch.submit_batch(_queries(1), run_id="run-explicit")

        assert summary.run_id == "run-explicit"

    @pytest.mark.asyncio
    async def test_run_ids_are_unique_within_a_second(
        self, sync_config, sync_clients, monkeypatch
    ):
        monkeypatch.setattr(
            orchestrator_module, "run_id_from_timestamp", lambda: "2025-11-01T10-00-00Z"
        )

        async with Orchestrator(sync_config, clients=sync_clients) as orch:
            first = await orch.submit_batch(_queries(1))
            second = await orch.submit_batch(_queries(1))

        assert first.run_id == "2025-11-01T10-00-00Z"
        assert second.run_id == "2025-11-01T10-00-00Z-2"

    @pytest.mark.asyncio
    async def test_wait_for_deferred_settles_async_jobs(self, db_path):
        config = _config(db_path, {"chatgpt": [_async_provider("p3")]})
        clients = {"p3": MockAsyncProviderClient(name="p3", operation="brightdata")}

        async with Orchestrator(config, clients=clients) as orch:
            summary = await orch.submit_batch(_queries(2, ("chatgpt",)), wait_for_deferred=True)

        assert summary.deferred_count == 0
        assert summary.succeeded_count == 2

    @pytest.mark.asyncio
    async def test_without_waiting_async_jobs_are_deferred(self, db_path):
        config = _config(db_path, {"chatgpt": [_async_provider("p3")]})
        clients = {"p3": MockAsyncProviderClient(name="p3", operation="brightdata")}

        async with Orchestrator(config, clients=clients) as orch:
            summary = await orch.submit_batch(_queries(1, ("chatgpt",)))
            assert summary.deferred_count == 1
            execution_id = summary.outcomes[0].execution_id

        # shutdown drained the poller
        assert orch.get_execution_status(execution_id)["status"] == COMPLETED


# ============================================================================
# Status and lifecycle
# ============================================================================


class TestExecutionStatus:
    """Test Orchestrator.get_execution_status()."""

    @pytest.mark.asyncio
    async def test_completed_execution(self, sync_config, sync_clients):
        async with Orchestrator(sync_config, clients=sync_clients) as orch:
            summary = await orch.submit_batch(_queries(1, ("chatgpt",)))
            state = orch.get_execution_status(summary.outcomes[0].execution_id)

        assert state["status"] == COMPLETED
        assert state["result_id"] is not None
        assert state["error"] is None

    @pytest.mark.asyncio
    async def test_failed_execution_has_error(self, db_path):
        config = _config(db_path, {"chatgpt": [_provider("p1")]})
        clients = {"p1": MockProviderClient(name="p1", outcomes=[ProviderHardError("400")])}

        async with Orchestrator(config, clients=clients) as orch:
            summary = await orch.submit_batch(_queries(1, ("chatgpt",)))
            state = orch.get_execution_status(summary.outcomes[0].execution_id)

        assert state["status"] == FAILED
        assert state["result_id"] is None
        assert state["error"]["error_class"] == "ProviderHardError"

    @pytest.mark.asyncio
    async def test_unknown_execution(self, sync_config, sync_clients):
        async with Orchestrator(sync_config, clients=sync_clients) as orch:
            with pytest.raises(ExecutionNotFoundError):
                orch.get_execution_status("missing")


class TestLifecycle:
    """Test start(), shutdown() and resumption."""

    @pytest.mark.asyncio
    async def test_no_batches_after_shutdown(self, sync_config, sync_clients):
        orch = Orchestrator(sync_config, clients=sync_clients)
        await orch.start()
        await orch.shutdown()

        with pytest.raises(OrchestratorClosedError):
            await orch.submit_batch(_queries(1))

        # Idempotent
        await orch.shutdown()

    @pytest.mark.asyncio
    async def test_time_limited_shutdown_lets_batch_drain(self, sync_config):
        clients = {
            "p1": MockProviderClient(name="p1", delay_seconds=0.3),
            "p2": MockProviderClient(name="p2"),
        }
        orch = Orchestrator(sync_config, clients=clients)
        await orch.start()
        submit = asyncio.create_task(orch.submit_batch(_queries(1), run_id="run-drain"))
        await asyncio.sleep(0.05)

        with pytest.raises(TimeoutError):
            await asyncio.wait_for(orch.shutdown(), timeout=0.05)

        summary = await submit

        assert not submit.cancelled()
        assert summary.succeeded_count == 2
        with sqlite3.connect(sync_config.store.sqlite_db_path) as conn:
            rows = list_executions(conn, "run-drain")
        assert [row["status"] for row in rows] == [COMPLETED, COMPLETED]

        # A second call finishes the interrupted shutdown
        await orch.shutdown()
        with pytest.raises(OrchestratorClosedError):
            await orch.submit_batch(_queries(1))

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_batch(self, sync_config):
        clients = {
            "p1": MockProviderClient(name="p1", delay_seconds=0.2),
            "p2": MockProviderClient(name="p2"),
        }
        orch = Orchestrator(sync_config, clients=clients)
        await orch.start()
        submit = asyncio.create_task(orch.submit_batch(_queries(1), run_id="run-cancel"))
        await asyncio.sleep(0.05)

        submit.cancel()
        with pytest.raises(asyncio.CancelledError):
            await submit
        await orch.shutdown()

        with sqlite3.connect(sync_config.store.sqlite_db_path) as conn:
            rows = list_executions(conn, "run-cancel")
        assert [row["status"] for row in rows] == [COMPLETED, COMPLETED]
        assert clients["p1"].call_count == 1

    @pytest.mark.asyncio
    async def test_sweep_runs_when_enabled(self, db_path, sync_clients):
        config = _config(
            db_path,
            {"chatgpt": [_provider("p1")], "perplexity": [_provider("p2")]},
            sweep_enabled=True,
        )
        orch = Orchestrator(config, clients=sync_clients)

        await orch.start()
        assert orch.sweeper.is_started

        await orch.shutdown()
        assert not orch.sweeper.is_started

    @pytest.mark.asyncio
    async def test_resumes_deferred_jobs_from_previous_process(self, db_path):
        init_db_if_needed(db_path)
        with sqlite3.connect(db_path) as conn:
            execution_id = create_execution(conn, "run-old", "q1", "brand-1", "chatgpt")
            update_execution_status(conn, execution_id, PENDING, RUNNING, "dispatcher")
            touch_execution(conn, execution_id, job_id="p3-job-7", provider="p3")

        client = MockAsyncProviderClient(name="p3", operation="brightdata")
        config = _config(db_path, {"chatgpt": [_async_provider("p3")]})

        async with Orchestrator(config, clients={"p3": client}) as orch:
            assert orch.poller.pending_count == 1

        assert client.status_calls == ["p3-job-7"]
        assert orch.get_execution_status(execution_id)["status"] == COMPLETED

    @pytest.mark.asyncio
    async def test_jobs_of_unconfigured_providers_are_not_resumed(self, db_path, sync_clients):
        init_db_if_needed(db_path)
        with sqlite3.connect(db_path) as conn:
            execution_id = create_execution(conn, "run-old", "q1", "brand-1", "chatgpt")
            update_execution_status(conn, execution_id, PENDING, RUNNING, "dispatcher")
            touch_execution(conn, execution_id, job_id="gone-job-1", provider="retired")

        config = _config(db_path, {"chatgpt": [_provider("p1")], "perplexity": [_provider("p2")]})
        orch = Orchestrator(config, clients=sync_clients)
        await orch.start()

        assert orch.resume_deferred_jobs() == 0
        assert orch.get_execution_status(execution_id)["status"] == RUNNING
        await orch.shutdown()

    def test_key_pool_health(self, sync_config, sync_clients):
        health = Orchestrator(sync_config, clients=sync_clients).key_pool_health()

        assert {pool["operation"] for pool in health} == {"serpapi", "brightdata"}
