"""
Async result poller.

Owns the completion path of deferred provider jobs. The fallback chain hands
over a DeferredHandle and returns immediately; the poller then checks the
job every interval_seconds until it reaches a terminal state or the
max_wait_seconds budget is spent:

    done     -> write Result (if absent), running -> completed (or failed
                when the payload encodes a captured failure), then
                immediate verification
    failed   -> running -> failed (AsyncJobFailedError)
    budget   -> running -> failed (AsyncJobAbandonedError)

Status-check errors (timeouts, 5xx, rate limits) do not fail the job; the
poller keeps polling until its budget runs out. Each tick also refreshes the
Execution's updated_at so the stale sweep leaves actively polled jobs alone.

Polling is idempotent: once the Execution is terminal, further polls are
no-ops.
"""

import asyncio
import logging
import sqlite3
from collections.abc import Mapping

from llm_answer_collector.config.schema import PollerSettings
from llm_answer_collector.exceptions import (
    AsyncJobAbandonedError,
    AsyncJobFailedError,
    PersistenceInconsistencyError,
    ProviderError,
    ProviderRateLimitedError,
)
from llm_answer_collector.storage.db import (
    get_execution,
    insert_result,
    touch_execution,
    update_execution_status,
)
from llm_answer_collector.tracking.state import (
    COMPLETED,
    FAILED,
    RUNNING,
    StructuredError,
    failure_marker,
    is_terminal,
)
from llm_answer_collector.tracking.verifier import ExecutionVerifier
from llm_answer_collector.utils.logging import log_with_context

from .key_pool import KeyPoolManager
from .models import AsyncProviderClient, DeferredHandle, JobStatus, ProviderClient

logger = logging.getLogger(__name__)

SOURCE_POLLER = "poller"


class AsyncResultPoller:
    """
    Tracks deferred jobs in background tasks until they settle.

    Args:
        db_path: Execution/Result store
        clients: Provider name -> backend client (async ones implement check_status)
        key_pools: Pools used for status-check keys
        verifier: Runs immediate verification after Result writes
        settings: Poll interval, max total wait and per-check timeout
    """

    def __init__(
        self,
        db_path: str,
        clients: Mapping[str, ProviderClient],
        key_pools: KeyPoolManager,
        verifier: ExecutionVerifier,
        settings: PollerSettings | None = None,
    ):
        self.db_path = db_path
        self.clients = clients
        self.key_pools = key_pools
        self.verifier = verifier
        self.settings = settings or PollerSettings()
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def pending_count(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    def track(self, handle: DeferredHandle, execution_id: str) -> asyncio.Task:
        """
        Start polling a job in the background.

        Tracking the same execution twice returns the existing task.
        """
        existing = self._tasks.get(execution_id)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.create_task(
            self.poll_until_terminal(handle, execution_id),
            name=f"poll-{handle.provider}-{handle.job_id}",
        )
        self._tasks[execution_id] = task
        task.add_done_callback(lambda t: self._forget(execution_id, t))
        return task

    def _forget(self, execution_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(execution_id) is task:
            del self._tasks[execution_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Polling task for execution {execution_id} crashed: {task.exception()}"
            )

    async def drain(self) -> None:
        """Wait for every tracked job to settle (cancelling the wait leaves jobs polling)."""
        while self._tasks:
            await asyncio.shield(
                asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
            )

    async def cancel_all(self) -> None:
        """Cancel every tracked job; executions stay running for a later resume."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _current_status(self, execution_id: str) -> str | None:
        with sqlite3.connect(self.db_path) as conn:
            execution = get_execution(conn, execution_id)
        return execution["status"] if execution else None

    async def poll_until_terminal(self, handle: DeferredHandle, execution_id: str) -> str | None:
        """
        Poll a job until the Execution is terminal or the budget is spent.

        Returns:
            Final Execution status (None if the Execution does not exist)
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        attempt = 0

        while True:
            await asyncio.sleep(self.settings.interval_seconds)
            attempt += 1

            status = await self.poll_once(handle, execution_id)
            if status is None or is_terminal(status):
                return status

            elapsed = loop.time() - started
            if elapsed + self.settings.interval_seconds > self.settings.max_wait_seconds:
                error = AsyncJobAbandonedError(
                    f"Job {handle.job_id} reached no terminal state after "
                    f"{attempt} polls ({elapsed:.0f}s)",
                    provider=handle.provider,
                    job_id=handle.job_id,
                )
                return self._fail(execution_id, handle, error)

    async def poll_once(self, handle: DeferredHandle, execution_id: str) -> str | None:
        """
        Check a job once and apply a terminal outcome.

        Returns:
            Execution status after this poll (None if it does not exist)
        """
        current = self._current_status(execution_id)
        if current is None or is_terminal(current):
            logger.debug(f"Execution {execution_id} already {current}, poll is a no-op")
            return current

        client = self.clients.get(handle.provider)
        if not isinstance(client, AsyncProviderClient):
            error = AsyncJobFailedError(
                f"Provider {handle.provider} cannot check job status",
                provider=handle.provider,
                job_id=handle.job_id,
            )
            return self._fail(execution_id, handle, error)

        try:
            lease = self.key_pools.acquire(handle.operation)
            job = await asyncio.wait_for(
                client.check_status(handle, lease.key),
                timeout=self.settings.request_timeout_seconds,
            )
        except TimeoutError:
            logger.warning(f"Status check of job {handle.job_id} timed out, will retry")
            return self._heartbeat(execution_id)
        except ProviderRateLimitedError as e:
            self.key_pools.report_rate_limited(handle.operation, lease.key, e.retry_after)
            logger.warning(f"Status check of job {handle.job_id} rate limited, will retry")
            return self._heartbeat(execution_id)
        except ProviderError as e:
            logger.warning(f"Status check of job {handle.job_id} failed, will retry: {e}")
            return self._heartbeat(execution_id)

        return self._apply(job, handle, execution_id)

    def _heartbeat(self, execution_id: str) -> str | None:
        with sqlite3.connect(self.db_path) as conn:
            touch_execution(conn, execution_id, expected_status=RUNNING)
        return self._current_status(execution_id)

    def _apply(self, job: JobStatus, handle: DeferredHandle, execution_id: str) -> str | None:
        if job.state == "running":
            return self._heartbeat(execution_id)

        if job.state == "failed":
            error = AsyncJobFailedError(
                f"Job {handle.job_id} failed: {job.error or 'no detail'}",
                provider=handle.provider,
                job_id=handle.job_id,
            )
            return self._fail(execution_id, handle, error)

        return self._complete(job, handle, execution_id)

    def _complete(self, job: JobStatus, handle: DeferredHandle, execution_id: str) -> str | None:
        response = job.response
        if response is None:
            error = AsyncJobFailedError(
                f"Job {handle.job_id} reported done without a payload",
                provider=handle.provider,
                job_id=handle.job_id,
            )
            return self._fail(execution_id, handle, error)

        # The Result must be durable before the status flips
        with sqlite3.connect(self.db_path) as conn:
            result_id = insert_result(
                conn,
                execution_id,
                text=response.text,
                citations=response.citations,
                urls=response.urls,
                metadata={**response.metadata, "job_id": handle.job_id},
            )

        marker = failure_marker(response.text, response.metadata)
        try:
            with sqlite3.connect(self.db_path) as conn:
                if marker is None:
                    update_execution_status(
                        conn,
                        execution_id,
                        expected_status=RUNNING,
                        new_status=COMPLETED,
                        source=SOURCE_POLLER,
                        reason=f"job {handle.job_id} done",
                        result_id=result_id,
                        provider=handle.provider,
                    )
                else:
                    update_execution_status(
                        conn,
                        execution_id,
                        expected_status=RUNNING,
                        new_status=FAILED,
                        source=SOURCE_POLLER,
                        reason=marker.reason,
                        error=marker.to_dict(),
                        provider=handle.provider,
                    )
        except sqlite3.Error as e:
            inconsistency = PersistenceInconsistencyError(
                f"Result {result_id} stored but status write failed: {e}",
                execution_id=execution_id,
            )
            logger.error(str(inconsistency))

        self.verifier.verify_after_result_write(execution_id)
        final_status = self._current_status(execution_id)

        log_with_context(
            logger,
            logging.INFO,
            f"Job {handle.job_id} from {handle.provider} settled as {final_status}",
            context={"provider": handle.provider, "job_id": handle.job_id, "result_id": result_id},
            execution_id=execution_id,
        )
        return final_status

    def _fail(self, execution_id: str, handle: DeferredHandle, error: Exception) -> str | None:
        structured = StructuredError.from_exception(error, provider=handle.provider)
        with sqlite3.connect(self.db_path) as conn:
            applied = update_execution_status(
                conn,
                execution_id,
                expected_status=RUNNING,
                new_status=FAILED,
                source=SOURCE_POLLER,
                reason=structured.reason,
                error=structured.to_dict(),
                provider=handle.provider,
            )

        if applied:
            log_with_context(
                logger,
                logging.WARNING,
                f"Job {handle.job_id} from {handle.provider} failed: {error}",
                context={"provider": handle.provider, "error_class": structured.error_class},
                execution_id=execution_id,
            )
        return self._current_status(execution_id)
