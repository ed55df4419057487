"""
Collection pipeline for LLM Answer Collector.

Components, from the outside in:
    Orchestrator           facade owning every component below
    QueryBatcher           fixed-size batches, processed sequentially
    CollectorDispatcher    concurrent fan-out of a query to its collectors
    ProviderFallbackChain  ordered providers with local retry per provider
    AsyncResultPoller      completion of deferred provider jobs
    KeyPoolManager         rotating API keys with cooldown and health tracking

Example:
    >>> from llm_answer_collector.collector import Orchestrator
    >>> async with Orchestrator(runtime_config) as orchestrator:
    ...     summary = await orchestrator.submit_batch(queries)
"""

from .batcher import BatchSummary, QueryBatcher, make_batches
from .dispatcher import CollectorDispatcher, CollectorOutcome
from .fallback import ChainOutcome, ProviderFallbackChain
from .key_pool import ApiKeyPool, KeyLease, KeyPoolManager
from .mock_client import MockAsyncProviderClient, MockProviderClient
from .models import (
    AsyncProviderClient,
    DeferredHandle,
    JobStatus,
    ProviderClient,
    ProviderResponse,
    build_provider_client,
)
from .orchestrator import Orchestrator
from .poller import AsyncResultPoller

__all__ = [
    # Protocols
    "AsyncProviderClient",
    "ProviderClient",
    # Data classes
    "BatchSummary",
    "ChainOutcome",
    "CollectorOutcome",
    "DeferredHandle",
    "JobStatus",
    "KeyLease",
    "ProviderResponse",
    # Components
    "ApiKeyPool",
    "AsyncResultPoller",
    "CollectorDispatcher",
    "KeyPoolManager",
    "Orchestrator",
    "ProviderFallbackChain",
    "QueryBatcher",
    # Clients
    "MockAsyncProviderClient",
    "MockProviderClient",
    # Functions
    "build_provider_client",
    "make_batches",
]
