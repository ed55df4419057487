"""
Provider fallback chain for one collector.

Providers are attempted strictly sequentially in ascending priority. Each
provider gets its own local retry loop (tenacity, see retry_config); every
attempt acquires a key from the operation's pool and runs under the
provider's timeout. Before every attempt the running Execution's updated_at
is refreshed, so the stale sweep never mistakes a live chain for a stuck one.

    success                     -> return immediately, later providers untouched
    deferred handle (async)     -> record handle on the running Execution,
                                   hand it to the poller, return immediately
    failure, fallback enabled   -> next provider
    failure, fallback disabled  -> stop, collector failed
    every provider failed       -> collector failed ("All providers failed ...")

Provider errors never propagate out of the chain; they are folded into the
returned ChainOutcome as a StructuredError.
"""

import asyncio
import logging
import sqlite3
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

from llm_answer_collector.config.schema import ProviderConfig
from llm_answer_collector.exceptions import (
    FallbackExhaustedError,
    ProviderError,
    ProviderHardError,
    ProviderRateLimitedError,
    ProviderResponseError,
    ProviderTimeoutError,
)
from llm_answer_collector.storage.db import touch_execution
from llm_answer_collector.tracking.state import RUNNING, StructuredError, failure_marker
from llm_answer_collector.utils.logging import log_with_context

from .key_pool import KeyPoolManager
from .models import DeferredHandle, ProviderClient, ProviderResponse
from .retry_config import create_async_retrying

if TYPE_CHECKING:
    from .poller import AsyncResultPoller

logger = logging.getLogger(__name__)

ChainStatus = Literal["succeeded", "deferred", "failed"]


@dataclass
class ChainOutcome:
    """
    Result of running one collector's fallback chain.

    Attributes:
        status: succeeded (response set), deferred (handle set, poller owns
            completion) or failed (error set)
        collector_type: Collector the chain served
        attempted: Provider names in the order they were attempted
        provider: Provider that produced the response/handle/final error
        response: Final answer for sync success
        handle: Job handle for async success
        error: Structured error for failure
    """

    status: ChainStatus
    collector_type: str
    attempted: list[str] = field(default_factory=list)
    provider: str | None = None
    response: ProviderResponse | None = None
    handle: DeferredHandle | None = None
    error: StructuredError | None = None

    @property
    def fallback_used(self) -> bool:
        return len(self.attempted) > 1


class ProviderFallbackChain:
    """
    Runs the ordered provider chain of a collector.

    Args:
        db_path: Execution store, used to record deferred job handles
        key_pools: Credential pools injected by the orchestrator
        clients: Provider name -> backend client
        poller: Receives deferred handles (required when async providers exist)
    """

    def __init__(
        self,
        db_path: str,
        key_pools: KeyPoolManager,
        clients: Mapping[str, ProviderClient],
        poller: "AsyncResultPoller | None" = None,
    ):
        self.db_path = db_path
        self.key_pools = key_pools
        self.clients = clients
        self.poller = poller

    async def execute(
        self,
        collector_type: str,
        providers: list[ProviderConfig],
        prompt: str,
        execution_id: str,
    ) -> ChainOutcome:
        """
        Run the chain until one provider succeeds or the chain stops.

        Args:
            collector_type: Collector being served
            providers: Enabled providers in ascending priority
            prompt: Query text
            execution_id: Running Execution owning this attempt sequence

        Returns:
            ChainOutcome (never raises for provider failures)
        """
        attempted: list[str] = []
        last_error: StructuredError | None = None

        if not providers:
            return ChainOutcome(
                status="failed",
                collector_type=collector_type,
                error=StructuredError(
                    provider=None,
                    error_class="NoProvidersConfigured",
                    message=f"No enabled providers configured for {collector_type}",
                    reason=f"No enabled providers configured for {collector_type}",
                ),
            )

        for provider in providers:
            attempted.append(provider.name)
            log_with_context(
                logger,
                logging.INFO,
                f"Attempting {collector_type} via {provider.name} "
                f"(priority {provider.priority}, {len(attempted)}/{len(providers)})",
                context={"collector_type": collector_type, "provider": provider.name},
                execution_id=execution_id,
            )

            try:
                result = await self._attempt_with_retries(provider, prompt, execution_id)
            except ProviderError as e:
                last_error = StructuredError.from_exception(e, provider=provider.name)
                log_with_context(
                    logger,
                    logging.WARNING,
                    f"Provider {provider.name} failed for {collector_type}: "
                    f"{e.__class__.__name__}: {e}",
                    context={"collector_type": collector_type, "provider": provider.name},
                    execution_id=execution_id,
                )

                if not provider.fallback_on_failure:
                    message = f"Provider {provider.name} failed and fallback is disabled: {e}"
                    return ChainOutcome(
                        status="failed",
                        collector_type=collector_type,
                        attempted=attempted,
                        provider=provider.name,
                        error=StructuredError(
                            provider=provider.name,
                            error_class=last_error.error_class,
                            message=last_error.message,
                            reason=message,
                        ),
                    )
                continue

            if isinstance(result, DeferredHandle):
                await self._hand_off(result, provider, execution_id, attempted)
                return ChainOutcome(
                    status="deferred",
                    collector_type=collector_type,
                    attempted=attempted,
                    provider=provider.name,
                    handle=result,
                )

            if len(attempted) > 1:
                logger.info(
                    f"{collector_type} succeeded via fallback provider {provider.name} "
                    f"after trying: {', '.join(attempted[:-1])}"
                )
            return ChainOutcome(
                status="succeeded",
                collector_type=collector_type,
                attempted=attempted,
                provider=provider.name,
                response=result,
            )

        exhausted = FallbackExhaustedError(
            f"All providers failed for {collector_type}. Tried: {', '.join(attempted)}",
            collector_type=collector_type,
            attempted=attempted,
        )
        return ChainOutcome(
            status="failed",
            collector_type=collector_type,
            attempted=attempted,
            provider=attempted[-1],
            error=StructuredError(
                provider=attempted[-1],
                error_class=last_error.error_class if last_error else exhausted.__class__.__name__,
                message=last_error.message if last_error else str(exhausted),
                reason=str(exhausted),
            ),
        )

    async def _attempt_with_retries(
        self, provider: ProviderConfig, prompt: str, execution_id: str
    ) -> ProviderResponse | DeferredHandle:
        async for attempt in create_async_retrying(provider):
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                if attempt_number > 1:
                    logger.info(
                        f"Retrying {provider.name} "
                        f"(attempt {attempt_number}/{provider.retry_count + 1})"
                    )
                self._heartbeat(execution_id)
                return await self._attempt_once(provider, prompt)

        # AsyncRetrying with reraise=True either returns or raises above
        raise ProviderError(f"{provider.name} produced no attempt", provider=provider.name)

    def _heartbeat(self, execution_id: str) -> None:
        """Refresh updated_at so a sweep in another process sees the chain alive."""
        try:
            with sqlite3.connect(self.db_path) as conn:
                touch_execution(conn, execution_id, expected_status=RUNNING)
        except sqlite3.Error as e:
            logger.warning(f"Heartbeat of execution {execution_id} failed: {e}")

    async def _attempt_once(
        self, provider: ProviderConfig, prompt: str
    ) -> ProviderResponse | DeferredHandle:
        client = self.clients.get(provider.name)
        if client is None:
            raise ProviderHardError(
                f"No client registered for provider {provider.name}", provider=provider.name
            )

        lease = self.key_pools.acquire(provider.service)

        try:
            result = await asyncio.wait_for(
                client.submit(prompt, lease.key), timeout=provider.timeout_seconds
            )
        except TimeoutError as e:
            raise ProviderTimeoutError(
                f"{provider.name} timed out after {provider.timeout_seconds}s",
                provider=provider.name,
            ) from e
        except ProviderTimeoutError:
            raise
        except ProviderRateLimitedError as e:
            self.key_pools.report_rate_limited(
                provider.service, lease.key, retry_after=e.retry_after
            )
            raise
        except ProviderHardError as e:
            self.key_pools.report_error(
                provider.service, lease.key, credential_failure=e.credential_failure
            )
            raise
        except ProviderError:
            self.key_pools.report_error(provider.service, lease.key)
            raise

        self.key_pools.report_success(provider.service, lease.key)

        if isinstance(result, DeferredHandle) and self.poller is None:
            raise ProviderHardError(
                f"Provider {provider.name} returned job {result.job_id} "
                f"but no poller is configured",
                provider=provider.name,
            )

        if isinstance(result, ProviderResponse):
            marker = failure_marker(result.text, result.metadata)
            if marker is not None:
                raise ProviderResponseError(
                    f"{provider.name} returned no usable answer: {marker.message}",
                    provider=provider.name,
                )
        return result

    async def _hand_off(
        self,
        handle: DeferredHandle,
        provider: ProviderConfig,
        execution_id: str,
        attempted: list[str],
    ) -> None:
        try:
            with sqlite3.connect(self.db_path) as conn:
                recorded = touch_execution(
                    conn,
                    execution_id,
                    job_id=handle.job_id,
                    provider=provider.name,
                    fallback_chain=attempted,
                )
            if not recorded:
                logger.warning(
                    f"Execution {execution_id} left running before job {handle.job_id} "
                    f"was recorded"
                )
        except sqlite3.Error as e:
            # The poller still owns completion; the sweep covers a lost handle
            logger.error(f"Failed to record job {handle.job_id} on {execution_id}: {e}")

        self.poller.track(handle, execution_id)
        log_with_context(
            logger,
            logging.INFO,
            f"Handed job {handle.job_id} from {provider.name} to the poller",
            context={"provider": provider.name, "job_id": handle.job_id},
            execution_id=execution_id,
        )
