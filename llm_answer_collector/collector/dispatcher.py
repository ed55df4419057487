"""
Collector dispatcher: concurrent fan-out of one query across its collectors.

For each enabled collector the dispatcher:
1. Ensures a pending Execution row exists (so even total failure is observable)
2. Moves it pending -> running before the first provider attempt
3. Runs the collector's fallback chain
4. Records the outcome:
   succeeded -> write Result, running -> completed, immediate verification
   deferred  -> nothing (the poller owns completion)
   failed    -> running -> failed with the chain's structured error

Collectors run under asyncio.gather(return_exceptions=True): one collector's
failure never cancels or delays its siblings.
"""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any

from llm_answer_collector.config.schema import Query, RuntimeConfig
from llm_answer_collector.exceptions import PersistenceInconsistencyError
from llm_answer_collector.storage.db import (
    create_execution,
    get_execution,
    insert_result,
    update_execution_status,
)
from llm_answer_collector.tracking.state import (
    COMPLETED,
    FAILED,
    PENDING,
    RUNNING,
    StructuredError,
)
from llm_answer_collector.tracking.verifier import ExecutionVerifier
from llm_answer_collector.utils.logging import log_with_context

from .fallback import ChainOutcome, ProviderFallbackChain

logger = logging.getLogger(__name__)

SOURCE_DISPATCHER = "dispatcher"


@dataclass
class CollectorOutcome:
    """
    Outcome of one (query, collector) dispatch.

    Attributes:
        query_id: Query dispatched
        collector_type: Collector dispatched
        execution_id: Execution row (None only if it could not be created)
        status: completed, failed or running (deferred to the poller)
        provider: Provider that produced the outcome
        fallback_chain: Providers attempted in order
        error: Structured error when failed
    """

    query_id: str
    collector_type: str
    execution_id: str | None
    status: str
    provider: str | None = None
    fallback_chain: list[str] | None = None
    error: dict[str, Any] | None = None


class CollectorDispatcher:
    """
    Dispatches one query to all of its enabled collectors concurrently.

    Args:
        config: Runtime config holding the resolved provider chains
        chain: Fallback chain shared by every collector
        verifier: Runs immediate verification after Result writes
    """

    def __init__(
        self,
        config: RuntimeConfig,
        chain: ProviderFallbackChain,
        verifier: ExecutionVerifier,
    ):
        self.config = config
        self.db_path = config.store.sqlite_db_path
        self.chain = chain
        self.verifier = verifier

    async def dispatch(self, query: Query, run_id: str) -> list[CollectorOutcome]:
        """
        Dispatch a query to every enabled collector and wait for all to settle.

        Returns:
            One CollectorOutcome per enabled collector, in collector order
        """
        collector_types = list(query.enabled_collector_types)
        if not collector_types:
            logger.warning(f"Query {query.query_id} has no enabled collectors")
            return []

        results = await asyncio.gather(
            *(self._dispatch_collector(query, ct, run_id) for ct in collector_types),
            return_exceptions=True,
        )

        outcomes: list[CollectorOutcome] = []
        for collector_type, result in zip(collector_types, results, strict=True):
            if isinstance(result, BaseException):
                # The execution row (if created) is reconciled by batch verification
                logger.error(
                    f"Collector {collector_type} crashed for query {query.query_id}: {result}",
                    exc_info=result,
                )
                outcomes.append(
                    CollectorOutcome(
                        query_id=query.query_id,
                        collector_type=collector_type,
                        execution_id=None,
                        status=FAILED,
                        error=StructuredError.from_exception(result).to_dict(),
                    )
                )
            else:
                outcomes.append(result)

        return outcomes

    async def _dispatch_collector(
        self, query: Query, collector_type: str, run_id: str
    ) -> CollectorOutcome:
        with sqlite3.connect(self.db_path) as conn:
            execution_id = create_execution(
                conn,
                run_id=run_id,
                query_id=query.query_id,
                brand_id=query.brand_id,
                collector_type=collector_type,
            )
            started = update_execution_status(
                conn,
                execution_id,
                expected_status=PENDING,
                new_status=RUNNING,
                source=SOURCE_DISPATCHER,
                reason="dispatch started",
            )

        if not started:
            # Already dispatched in this run (re-submitted query)
            logger.warning(
                f"Execution {execution_id} for {query.query_id}/{collector_type} "
                f"is not pending, skipping dispatch"
            )
            return self._existing_outcome(query, collector_type, execution_id)

        with self.verifier.dispatch_in_progress(execution_id):
            try:
                outcome = await self.chain.execute(
                    collector_type,
                    self.config.providers_for(collector_type),
                    query.text,
                    execution_id,
                )
            except Exception as e:
                logger.error(
                    f"Fallback chain crashed for {collector_type} on {execution_id}: {e}",
                    exc_info=True,
                )
                outcome = ChainOutcome(
                    status="failed",
                    collector_type=collector_type,
                    error=StructuredError.from_exception(e, reason=f"collector crashed: {e}"),
                )

            if outcome.status == "succeeded":
                status = self._record_success(outcome, execution_id, run_id)
            elif outcome.status == "deferred":
                status = RUNNING
            else:
                status = self._record_failure(outcome, execution_id, run_id)

        return CollectorOutcome(
            query_id=query.query_id,
            collector_type=collector_type,
            execution_id=execution_id,
            status=status,
            provider=outcome.provider,
            fallback_chain=outcome.attempted,
            error=outcome.error.to_dict() if outcome.error else None,
        )

    def _existing_outcome(
        self, query: Query, collector_type: str, execution_id: str
    ) -> CollectorOutcome:
        """Report the stored state of an Execution another dispatch already owns."""
        with sqlite3.connect(self.db_path) as conn:
            execution = get_execution(conn, execution_id)

        if execution is None:
            return CollectorOutcome(
                query_id=query.query_id,
                collector_type=collector_type,
                execution_id=execution_id,
                status=RUNNING,
            )
        return CollectorOutcome(
            query_id=query.query_id,
            collector_type=collector_type,
            execution_id=execution_id,
            status=execution["status"],
            provider=execution["provider"],
            fallback_chain=execution["fallback_chain"],
            error=execution["error"],
        )

    def _record_success(self, outcome: ChainOutcome, execution_id: str, run_id: str) -> str:
        response = outcome.response

        # The Result must be durable before the status flips
        with sqlite3.connect(self.db_path) as conn:
            result_id = insert_result(
                conn,
                execution_id,
                text=response.text,
                citations=response.citations,
                urls=response.urls,
                metadata={
                    **response.metadata,
                    "provider": outcome.provider,
                    "fallback_chain": outcome.attempted,
                    "fallback_used": outcome.fallback_used,
                },
            )

        try:
            with sqlite3.connect(self.db_path) as conn:
                update_execution_status(
                    conn,
                    execution_id,
                    expected_status=RUNNING,
                    new_status=COMPLETED,
                    source=SOURCE_DISPATCHER,
                    reason=f"answered by {outcome.provider}",
                    result_id=result_id,
                    provider=outcome.provider,
                    fallback_chain=outcome.attempted,
                )
        except sqlite3.Error as e:
            inconsistency = PersistenceInconsistencyError(
                f"Result {result_id} stored but status write failed: {e}",
                execution_id=execution_id,
            )
            logger.error(str(inconsistency))

        corrected = self.verifier.verify_after_result_write(execution_id)

        log_with_context(
            logger,
            logging.INFO,
            f"{outcome.collector_type} completed via {outcome.provider}"
            + (f" (fallback after {len(outcome.attempted) - 1} failures)" if outcome.fallback_used else ""),
            context={
                "collector_type": outcome.collector_type,
                "provider": outcome.provider,
                "result_id": result_id,
            },
            run_id=run_id,
            execution_id=execution_id,
        )
        return corrected or COMPLETED

    def _record_failure(self, outcome: ChainOutcome, execution_id: str, run_id: str) -> str:
        error = outcome.error.to_dict() if outcome.error else None

        try:
            with sqlite3.connect(self.db_path) as conn:
                update_execution_status(
                    conn,
                    execution_id,
                    expected_status=RUNNING,
                    new_status=FAILED,
                    source=SOURCE_DISPATCHER,
                    reason=outcome.error.reason if outcome.error else "collector failed",
                    error=error,
                    provider=outcome.provider,
                    fallback_chain=outcome.attempted,
                )
        except sqlite3.Error as e:
            # Batch verification fails the still-running row
            logger.error(f"Failed to record failure of execution {execution_id}: {e}")

        log_with_context(
            logger,
            logging.WARNING,
            f"{outcome.collector_type} failed: "
            f"{outcome.error.reason if outcome.error else 'unknown error'}",
            context={
                "collector_type": outcome.collector_type,
                "fallback_chain": outcome.attempted,
            },
            run_id=run_id,
            execution_id=execution_id,
        )
        return FAILED
