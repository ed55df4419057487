"""
Orchestrator facade wiring every collection component together.

The orchestrator owns one instance of each component for the lifetime of the
process:

    KeyPoolManager         credential pools (injected into chain and poller)
    ExecutionVerifier      immediate, batch and sweep reconciliation
    AsyncResultPoller      completion of deferred jobs
    ProviderFallbackChain  ordered providers per collector
    CollectorDispatcher    per-query fan-out
    QueryBatcher           sequential batches
    PeriodicSweeper        background stale sweep

Typical use:

    >>> async with Orchestrator(load_config("collector.config.yaml")) as orch:
    ...     summary = await orch.submit_batch(queries)
    ...     orch.get_execution_status(summary.outcomes[0].execution_id)
"""

import asyncio
import logging
import sqlite3
from collections.abc import Mapping, Sequence
from typing import Any

from llm_answer_collector.config.schema import Query, RuntimeConfig
from llm_answer_collector.exceptions import (
    ExecutionNotFoundError,
    OrchestratorClosedError,
)
from llm_answer_collector.storage.db import (
    get_execution,
    get_run_summary,
    init_db_if_needed,
    list_deferred_running,
)
from llm_answer_collector.tracking.verifier import ExecutionVerifier, PeriodicSweeper
from llm_answer_collector.utils.time import run_id_from_timestamp

from .batcher import BatchSummary, QueryBatcher
from .dispatcher import CollectorDispatcher
from .fallback import ProviderFallbackChain
from .key_pool import KeyPoolManager
from .models import DeferredHandle, ProviderClient, build_provider_client
from .poller import AsyncResultPoller

logger = logging.getLogger(__name__)


class Orchestrator:
    """
    Entry point for submitting queries and inspecting executions.

    Args:
        config: Resolved runtime configuration
        clients: Optional provider name -> client overrides; providers without
            an override get an HTTP client built from their config
    """

    def __init__(
        self,
        config: RuntimeConfig,
        clients: Mapping[str, ProviderClient] | None = None,
    ):
        self.config = config
        self.db_path = config.store.sqlite_db_path

        self.clients: dict[str, ProviderClient] = dict(clients or {})
        for provider in config.all_providers():
            if provider.name not in self.clients:
                self.clients[provider.name] = build_provider_client(
                    provider, poll_timeout_seconds=config.poller.request_timeout_seconds
                )

        self.key_pools = KeyPoolManager.from_runtime_config(config)
        self.verifier = ExecutionVerifier(self.db_path, config.sweep)
        self.poller = AsyncResultPoller(
            self.db_path, self.clients, self.key_pools, self.verifier, config.poller
        )
        self.chain = ProviderFallbackChain(
            self.db_path, self.key_pools, self.clients, poller=self.poller
        )
        self.dispatcher = CollectorDispatcher(config, self.chain, self.verifier)
        self.batcher = QueryBatcher(
            self.dispatcher,
            self.verifier,
            batch_size=config.batch.batch_size,
            inter_batch_delay_seconds=config.batch.inter_batch_delay_seconds,
        )
        self.sweeper = PeriodicSweeper(self.verifier, config.sweep.interval_seconds)

        self._started = False
        self._closed = False
        self._shut_down = False
        self._in_flight: set[asyncio.Task] = set()

    async def __aenter__(self) -> "Orchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def start(self) -> None:
        """Initialize storage, start the sweep and resume deferred jobs."""
        if self._started:
            return
        init_db_if_needed(self.db_path)
        if self.config.sweep.enabled:
            self.sweeper.start()
        self.resume_deferred_jobs()
        self._started = True

    def resume_deferred_jobs(self) -> int:
        """
        Re-track async jobs left running by a previous process.

        Returns:
            Number of jobs handed back to the poller
        """
        providers = {p.name: p for p in self.config.all_providers()}

        with sqlite3.connect(self.db_path) as conn:
            executions = list_deferred_running(conn)

        resumed = 0
        for execution in executions:
            provider = providers.get(execution["provider"])
            if provider is None:
                # Left for the stale sweep
                logger.warning(
                    f"Cannot resume job {execution['job_id']} of execution "
                    f"{execution['id']}: provider {execution['provider']} is not configured"
                )
                continue
            handle = DeferredHandle(
                job_id=execution["job_id"],
                provider=provider.name,
                operation=provider.service,
            )
            self.poller.track(handle, execution["id"])
            resumed += 1

        if resumed:
            logger.info(f"Resumed polling for {resumed} deferred jobs")
        return resumed

    async def submit_batch(
        self,
        queries: Sequence[Query],
        wait_for_deferred: bool = False,
        run_id: str | None = None,
    ) -> BatchSummary:
        """
        Submit queries for collection.

        Args:
            queries: Queries to dispatch
            wait_for_deferred: Also wait for every tracked async job to settle
            run_id: Explicit run identifier (defaults to a timestamp id)

        Returns:
            BatchSummary with per-Execution counts

        Raises:
            OrchestratorClosedError: After shutdown() was called
        """
        if self._closed:
            raise OrchestratorClosedError("Orchestrator is shut down; no new batches accepted")
        if not self._started:
            await self.start()

        run_id = run_id or self._new_run_id()

        # The orchestrator owns the batch task; a cancelled caller never
        # cancels dispatches mid-write
        task = asyncio.create_task(
            self.batcher.process(list(queries), run_id), name=f"batch-{run_id}"
        )
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        summary = await asyncio.shield(task)

        if wait_for_deferred and self.poller.pending_count:
            logger.info(f"Waiting for {self.poller.pending_count} deferred jobs")
            await self.poller.drain()
            summary = self._final_summary(summary)

        return summary

    def _new_run_id(self) -> str:
        base = run_id_from_timestamp()
        run_id = base
        suffix = 1
        with sqlite3.connect(self.db_path) as conn:
            while get_run_summary(conn, run_id)["total"] > 0:
                suffix += 1
                run_id = f"{base}-{suffix}"
        return run_id

    def _final_summary(self, summary: BatchSummary) -> BatchSummary:
        with sqlite3.connect(self.db_path) as conn:
            for outcome in summary.outcomes:
                if outcome.execution_id is None:
                    continue
                execution = get_execution(conn, outcome.execution_id)
                if execution is not None:
                    outcome.status = execution["status"]
        summary.recount()
        return summary

    def get_execution_status(self, execution_id: str) -> dict[str, Any]:
        """
        Report the stored state of an Execution.

        Returns:
            dict with status, result_id and error (None unless failed)

        Raises:
            ExecutionNotFoundError: If no Execution has this id
        """
        with sqlite3.connect(self.db_path) as conn:
            execution = get_execution(conn, execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution not found: {execution_id}")
        return {
            "status": execution["status"],
            "result_id": execution["result_id"],
            "error": execution["error"],
        }

    def key_pool_health(self) -> list[dict[str, Any]]:
        return self.key_pools.health_snapshot()

    async def shutdown(self) -> None:
        """
        Stop accepting batches and wait for in-flight work to finish.

        In-flight batches and tracked async jobs run to completion (or to the
        poller's max wait) before the sweep is stopped. Cancelling shutdown
        (e.g. under asyncio.wait_for) stops the wait, not the batches; calling
        shutdown again resumes waiting.
        """
        if self._shut_down:
            return
        self._closed = True
        logger.info("Shutting down orchestrator")

        pending = list(self._in_flight)
        if pending:
            logger.info(f"Waiting for {len(pending)} in-flight batches")
            await asyncio.shield(asyncio.gather(*pending, return_exceptions=True))

        await self.poller.drain()
        await self.sweeper.stop()
        self._shut_down = True
        logger.info("Orchestrator shut down")
