"""
Self-healing verification of Execution status against Result presence.

Independent writers (dispatcher, poller, a crash between the Result write
and the status write) can leave the two inconsistent. Three mechanisms
reconcile them:

- Immediate verification, right after a Result write
- Batch verification, after a dispatcher batch settles
- A periodic sweep of executions stuck running (PeriodicSweeper)

Reconciliation rules (every path):
    valid Result present                -> completed with that result_id
    Result encodes a captured failure   -> failed with the captured error
    completed but no Result             -> failed
Batch-only rules (nothing is in flight for the batch any more):
    still pending                       -> failed (dispatch never started)
    running without a job handle        -> failed (no terminal status written)
Sweep-only rule:
    running, untouched beyond fail_after, no Result
                                        -> failed, "timed out with no result"
    Executions a live dispatch in this process still owns are skipped; the
    fallback chain also refreshes updated_at before every provider attempt.

Every correction is a compare-and-swap on the observed status and version,
so a fresher write by a live dispatcher or poller is never clobbered. Each
correction is logged at WARNING with before/after status.
"""

import asyncio
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any

from llm_answer_collector.config.constants import STALE_FAILURE_REASON
from llm_answer_collector.config.schema import SweepSettings
from llm_answer_collector.storage.db import (
    find_stale_running,
    get_execution,
    get_result_for_execution,
    get_stuck_execution_stats,
    list_executions,
    update_execution_status,
)
from llm_answer_collector.utils.logging import log_with_context
from llm_answer_collector.utils.time import format_timestamp, parse_timestamp, utc_now

from .state import (
    COMPLETED,
    FAILED,
    PENDING,
    RUNNING,
    StructuredError,
    failure_marker,
    is_legal_transition,
)

logger = logging.getLogger(__name__)

# A CAS lost to a concurrent writer is re-read and re-evaluated this many times
MAX_RECONCILE_ATTEMPTS = 3

SOURCE_IMMEDIATE = "verifier.immediate"
SOURCE_BATCH = "verifier.batch"
SOURCE_SWEEP = "verifier.sweep"


class ExecutionVerifier:
    """
    Reconciles Executions with their Results.

    Args:
        db_path: Execution/Result store
        sweep: Staleness thresholds used by sweep_stale_executions
    """

    def __init__(self, db_path: str, sweep: SweepSettings | None = None):
        self.db_path = db_path
        self.sweep = sweep or SweepSettings()
        self._dispatching: set[str] = set()

    @contextmanager
    def dispatch_in_progress(self, execution_id: str) -> Iterator[None]:
        """
        Mark an execution as owned by a live dispatch in this process.

        The sweep leaves such executions alone however long the provider
        chain runs; the dispatcher writes their terminal status itself.
        """
        self._dispatching.add(execution_id)
        try:
            yield
        finally:
            self._dispatching.discard(execution_id)

    def is_dispatching(self, execution_id: str) -> bool:
        return execution_id in self._dispatching

    # ------------------------------------------------------------------
    # Shared reconciliation
    # ------------------------------------------------------------------

    def _force(
        self,
        conn: sqlite3.Connection,
        execution: dict[str, Any],
        to_status: str,
        source: str,
        reason: str,
        result_id: str | None = None,
        error: dict[str, Any] | None = None,
    ) -> bool:
        from_status = execution["status"]
        applied = update_execution_status(
            conn,
            execution["id"],
            expected_status=from_status,
            new_status=to_status,
            source=source,
            reason=reason,
            result_id=result_id,
            error=error,
            expected_version=execution["version"],
            forced=not is_legal_transition(from_status, to_status),
        )
        conn.commit()

        if applied:
            log_with_context(
                logger,
                logging.WARNING,
                f"Corrected execution {execution['id']}: {from_status} -> {to_status} "
                f"({source}: {reason})",
                context={
                    "before": from_status,
                    "after": to_status,
                    "source": source,
                    "reason": reason,
                    "collector_type": execution["collector_type"],
                },
                run_id=execution["run_id"],
                execution_id=execution["id"],
            )
        return applied

    def _reconcile_with_result(
        self,
        conn: sqlite3.Connection,
        execution: dict[str, Any],
        result: dict[str, Any],
        source: str,
    ) -> str | None:
        marker = failure_marker(result["text"], result["metadata"])

        if marker is None:
            if execution["status"] == COMPLETED and execution["result_id"] == result["id"]:
                return None
            applied = self._force(
                conn, execution, COMPLETED, source, "result present",
                result_id=result["id"],
            )
            return COMPLETED if applied else "conflict"

        if execution["status"] == FAILED:
            return None
        applied = self._force(
            conn, execution, FAILED, source, f"result encodes failure: {marker.reason}",
            error=marker.to_dict(),
        )
        return FAILED if applied else "conflict"

    def _reconcile(
        self,
        conn: sqlite3.Connection,
        execution: dict[str, Any],
        source: str,
        settled: bool = False,
    ) -> str | None:
        """
        Apply one reconciliation pass.

        Returns:
            The status written, None when nothing needed fixing, or "conflict"
            when a concurrent writer won the swap
        """
        result = get_result_for_execution(conn, execution["id"])
        if result is not None:
            return self._reconcile_with_result(conn, execution, result, source)

        status = execution["status"]
        error = None
        reason = None

        if status == COMPLETED:
            reason = "marked completed but no result exists"
        elif settled and status == PENDING:
            reason = "dispatch never started"
        elif settled and status == RUNNING and not execution["job_id"]:
            reason = "dispatch settled without a terminal status"

        if reason is None:
            return None

        error = StructuredError(
            provider=execution["provider"],
            error_class="PersistenceInconsistency",
            message=reason,
            reason=reason,
        ).to_dict()
        applied = self._force(conn, execution, FAILED, source, reason, error=error)
        return FAILED if applied else "conflict"

    def _reconcile_until_stable(self, execution_id: str, source: str, settled: bool) -> str | None:
        with sqlite3.connect(self.db_path) as conn:
            for _ in range(MAX_RECONCILE_ATTEMPTS):
                execution = get_execution(conn, execution_id)
                if execution is None:
                    logger.error(f"Cannot verify unknown execution {execution_id}")
                    return None

                outcome = self._reconcile(conn, execution, source, settled=settled)
                if outcome != "conflict":
                    return outcome

            logger.warning(
                f"Execution {execution_id} kept changing during verification; "
                f"leaving it to the next pass"
            )
            return None

    # ------------------------------------------------------------------
    # Immediate and batch verification
    # ------------------------------------------------------------------

    def verify_after_result_write(self, execution_id: str) -> str | None:
        """
        Re-read an Execution right after its Result was written and fix it.

        Returns:
            Status written by the correction, or None when already consistent
        """
        return self._reconcile_until_stable(execution_id, SOURCE_IMMEDIATE, settled=False)

    def verify_batch(self, run_id: str, query_ids: list[str]) -> dict[str, int]:
        """
        Reconcile every Execution of a settled batch.

        Returns:
            dict with checked and corrected counts
        """
        with sqlite3.connect(self.db_path) as conn:
            executions = list_executions(conn, run_id, query_ids)

        corrected = 0
        for execution in executions:
            if self._reconcile_until_stable(execution["id"], SOURCE_BATCH, settled=True):
                corrected += 1

        if corrected:
            logger.warning(
                f"Batch verification corrected {corrected}/{len(executions)} executions "
                f"in run {run_id}"
            )
        else:
            logger.debug(f"Batch verification: {len(executions)} executions consistent")

        return {"checked": len(executions), "corrected": corrected}

    # ------------------------------------------------------------------
    # Stale sweep
    # ------------------------------------------------------------------

    def sweep_stale_executions(self, now: datetime | None = None) -> dict[str, int]:
        """
        Resolve executions stuck running beyond the staleness threshold.

        Running rows untouched for stale_after_seconds are checked: a Result
        forces completed (or failed for a captured failure); with no Result,
        rows untouched for fail_after_seconds are failed with the synthetic
        "timed out with no result" reason. Rows in between are skipped.
        Running the sweep twice yields the same terminal states.

        Args:
            now: Reference time (defaults to utc_now())

        Returns:
            dict with checked, completed, failed, skipped and errors counts
        """
        now = now or utc_now()
        stale_cutoff = format_timestamp(now - timedelta(seconds=self.sweep.stale_after_seconds))
        stats = {"checked": 0, "completed": 0, "failed": 0, "skipped": 0, "errors": 0}

        with sqlite3.connect(self.db_path) as conn:
            stale = find_stale_running(conn, stale_cutoff)
            stats["checked"] = len(stale)

            for execution in stale:
                try:
                    outcome = self._sweep_one(conn, execution, now)
                except sqlite3.Error as e:
                    conn.rollback()
                    stats["errors"] += 1
                    logger.error(
                        f"Sweep failed to resolve execution {execution['id']}: {e}",
                        exc_info=True,
                    )
                    continue

                if outcome == COMPLETED:
                    stats["completed"] += 1
                elif outcome == FAILED:
                    stats["failed"] += 1
                else:
                    stats["skipped"] += 1

        if stats["checked"]:
            logger.info(
                f"Stale sweep: checked={stats['checked']} completed={stats['completed']} "
                f"failed={stats['failed']} skipped={stats['skipped']} errors={stats['errors']}"
            )
        return stats

    def _sweep_one(
        self, conn: sqlite3.Connection, execution: dict[str, Any], now: datetime
    ) -> str | None:
        if self.is_dispatching(execution["id"]):
            logger.debug(f"Execution {execution['id']} is still being dispatched, sweep skips it")
            return None

        result = get_result_for_execution(conn, execution["id"])
        if result is not None:
            outcome = self._reconcile_with_result(conn, execution, result, SOURCE_SWEEP)
            return None if outcome == "conflict" else outcome

        stuck_seconds = (now - parse_timestamp(execution["updated_at"])).total_seconds()
        if stuck_seconds < self.sweep.fail_after_seconds:
            return None

        stuck_minutes = round(stuck_seconds / 60, 1)
        error = StructuredError(
            provider=execution["provider"],
            error_class="StaleExecution",
            message=f"Execution running for {stuck_minutes} minutes with no result",
            reason=STALE_FAILURE_REASON,
        ).to_dict()
        error["stuck_duration_minutes"] = stuck_minutes
        error["cleaned_at"] = format_timestamp(now)

        applied = self._force(conn, execution, FAILED, SOURCE_SWEEP, STALE_FAILURE_REASON, error=error)
        return FAILED if applied else None

    def stuck_execution_stats(self, now: datetime | None = None) -> dict[str, Any]:
        """
        Summarize executions currently stale (without changing them).

        Returns:
            dict with total_stuck, by_collector_type and oldest_stuck
        """
        now = now or utc_now()
        cutoff = format_timestamp(now - timedelta(seconds=self.sweep.stale_after_seconds))
        with sqlite3.connect(self.db_path) as conn:
            return get_stuck_execution_stats(conn, cutoff)


class PeriodicSweeper:
    """
    Runs the stale sweep on a fixed interval until stopped.

    A pass never overlaps another pass; stop() cancels the loop only while
    it sleeps between passes, so a pass is never interrupted mid-write.

    Example:
        >>> sweeper = PeriodicSweeper(verifier, interval_seconds=300)
        >>> sweeper.start()
        >>> ...
        >>> await sweeper.stop()
    """

    def __init__(self, verifier: ExecutionVerifier, interval_seconds: float):
        self.verifier = verifier
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None
        self._is_running = False
        self.last_stats: dict[str, int] | None = None

    @property
    def is_started(self) -> bool:
        return self._task is not None and not self._task.done()

    def run_once(self, now: datetime | None = None) -> dict[str, int] | None:
        """
        Run one sweep pass unless one is already in progress.

        Returns:
            Sweep stats, or None when skipped because a pass is running
        """
        if self._is_running:
            logger.warning("Stale sweep already running, skipping this pass")
            return None

        self._is_running = True
        try:
            self.last_stats = self.verifier.sweep_stale_executions(now)
            return self.last_stats
        finally:
            self._is_running = False

    async def _loop(self) -> None:
        while True:
            try:
                self.run_once()
            except sqlite3.Error as e:
                logger.error(f"Stale sweep pass failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self.is_started:
            return
        logger.info(f"Starting stale sweep every {self.interval_seconds:.0f}s")
        self._task = asyncio.create_task(self._loop(), name="stale-execution-sweep")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Stopped stale sweep")
