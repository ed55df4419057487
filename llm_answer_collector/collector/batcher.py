"""
Query batcher: fixed-size batches processed one after another.

Batching caps the number of queries in flight against the providers. Within
a batch every query is dispatched concurrently (and each query fans out to
its collectors); the next batch starts only after every dispatch of the
current batch has settled and the batch has been verified.
"""

import asyncio
import logging
import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TypeVar

from llm_answer_collector.config.schema import Query
from llm_answer_collector.storage.db import list_executions
from llm_answer_collector.tracking.state import COMPLETED, FAILED, RUNNING
from llm_answer_collector.tracking.verifier import ExecutionVerifier
from llm_answer_collector.utils.logging import log_with_context

from .dispatcher import CollectorDispatcher, CollectorOutcome

logger = logging.getLogger(__name__)

T = TypeVar("T")


def make_batches(items: Sequence[T], batch_size: int) -> list[list[T]]:
    """
    Partition items into consecutive batches preserving input order.

    Produces ceil(N / batch_size) batches; every batch has batch_size items
    except possibly the last.

    Examples:
        >>> make_batches([1, 2, 3, 4, 5, 6, 7], 3)
        [[1, 2, 3], [4, 5, 6], [7]]
        >>> make_batches([], 3)
        []

    Raises:
        ValueError: If batch_size < 1
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    return [list(items[i : i + batch_size]) for i in range(0, len(items), batch_size)]


@dataclass
class BatchSummary:
    """
    Per-Execution counts for one submitted run.

    Attributes:
        run_id: Run the queries were submitted under
        succeeded_count: Executions that completed
        failed_count: Executions that failed
        deferred_count: Executions still running (async jobs with the poller)
        batch_sizes: Size of each processed batch, in order
        outcomes: Every collector outcome, in dispatch order
    """

    run_id: str
    succeeded_count: int = 0
    failed_count: int = 0
    deferred_count: int = 0
    batch_sizes: list[int] = field(default_factory=list)
    outcomes: list[CollectorOutcome] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.succeeded_count + self.failed_count + self.deferred_count

    def recount(self) -> None:
        """Count each Execution once, however many outcomes point at it."""
        statuses: dict[str, str] = {}
        for index, outcome in enumerate(self.outcomes):
            key = outcome.execution_id or f"unrecorded-{index}"
            statuses[key] = outcome.status
        self.succeeded_count = sum(1 for s in statuses.values() if s == COMPLETED)
        self.failed_count = sum(1 for s in statuses.values() if s == FAILED)
        self.deferred_count = sum(1 for s in statuses.values() if s == RUNNING)


class QueryBatcher:
    """
    Splits queries into batches and drives them through the dispatcher.

    Args:
        dispatcher: Fans each query out to its collectors
        verifier: Runs batch verification once a batch settles
        batch_size: Queries per batch (>= 1)
        inter_batch_delay_seconds: Pause between consecutive batches
    """

    def __init__(
        self,
        dispatcher: CollectorDispatcher,
        verifier: ExecutionVerifier,
        batch_size: int,
        inter_batch_delay_seconds: float = 0.0,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.dispatcher = dispatcher
        self.verifier = verifier
        self.batch_size = batch_size
        self.inter_batch_delay_seconds = inter_batch_delay_seconds

    async def process(self, queries: Sequence[Query], run_id: str) -> BatchSummary:
        """
        Process every query batch by batch.

        Args:
            queries: Queries to submit, in order
            run_id: Run identifier shared by all Executions

        Returns:
            BatchSummary with per-Execution counts
        """
        summary = BatchSummary(run_id=run_id)
        batches = make_batches(queries, self.batch_size)

        if not batches:
            logger.info(f"No queries to process for run {run_id}")
            return summary

        log_with_context(
            logger,
            logging.INFO,
            f"Processing {len(queries)} queries in {len(batches)} batches "
            f"(batch size {self.batch_size})",
            context={"queries": len(queries), "batches": len(batches)},
            run_id=run_id,
        )

        for index, batch in enumerate(batches, start=1):
            summary.batch_sizes.append(len(batch))
            logger.info(f"Batch {index}/{len(batches)}: dispatching {len(batch)} queries")

            results = await asyncio.gather(
                *(self.dispatcher.dispatch(query, run_id) for query in batch),
                return_exceptions=True,
            )

            for query, result in zip(batch, results, strict=True):
                if isinstance(result, BaseException):
                    # Verification below settles the rows the query left behind
                    logger.error(
                        f"Dispatch of query {query.query_id} crashed: {result}",
                        exc_info=result,
                    )
                    continue
                summary.outcomes.extend(result)

            self.verifier.verify_batch(run_id, [q.query_id for q in batch])
            self._refresh_statuses(summary, run_id, batch)

            if index < len(batches) and self.inter_batch_delay_seconds > 0:
                logger.debug(f"Waiting {self.inter_batch_delay_seconds}s before next batch")
                await asyncio.sleep(self.inter_batch_delay_seconds)

        self._log_summary(summary)
        return summary

    def _refresh_statuses(self, summary: BatchSummary, run_id: str, batch: list[Query]) -> None:
        """Recount the summary from the stored Executions once a batch is verified."""
        with sqlite3.connect(self.verifier.db_path) as conn:
            rows = list_executions(conn, run_id, [q.query_id for q in batch])
        by_key = {(row["query_id"], row["collector_type"]): row for row in rows}
        seen: set[tuple[str, str]] = set()

        # A query submitted twice yields several outcomes for the same row
        for outcome in summary.outcomes:
            key = (outcome.query_id, outcome.collector_type)
            row = by_key.get(key)
            if row is not None:
                outcome.execution_id = row["id"]
                outcome.status = row["status"]
                seen.add(key)

        # Rows of crashed dispatches have no outcome yet
        for key, row in by_key.items():
            if key in seen:
                continue
            summary.outcomes.append(
                CollectorOutcome(
                    query_id=row["query_id"],
                    collector_type=row["collector_type"],
                    execution_id=row["id"],
                    status=row["status"],
                    provider=row["provider"],
                    fallback_chain=row["fallback_chain"],
                    error=row["error"],
                )
            )

        summary.recount()

    def _log_summary(self, summary: BatchSummary) -> None:
        total = summary.total
        if total == 0:
            logger.info(f"Run {summary.run_id}: no executions dispatched")
            return

        success_pct = summary.succeeded_count / total * 100
        failed_pct = summary.failed_count / total * 100
        log_with_context(
            logger,
            logging.INFO,
            f"Run {summary.run_id} summary: {summary.succeeded_count}/{total} succeeded "
            f"({success_pct:.1f}%), {summary.failed_count} failed ({failed_pct:.1f}%), "
            f"{summary.deferred_count} deferred",
            context={
                "succeeded": summary.succeeded_count,
                "failed": summary.failed_count,
                "deferred": summary.deferred_count,
                "batches": len(summary.batch_sizes),
            },
            run_id=summary.run_id,
        )
