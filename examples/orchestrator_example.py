#!/usr/bin/env python3
"""
Example usage of the Orchestrator with mock provider backends.

Runs entirely offline: every provider is a mock client, so no API keys or
network access are needed. ChatGPT's first provider times out to show the
fallback chain; Perplexity's provider is an async job completed by the
poller.

Usage:
    python examples/orchestrator_example.py
"""

import asyncio
import tempfile
from pathlib import Path

from llm_answer_collector.collector.mock_client import (
    MockAsyncProviderClient,
    MockProviderClient,
)
from llm_answer_collector.collector.orchestrator import Orchestrator
from llm_answer_collector.config.schema import (
    PollerSettings,
    ProviderConfig,
    Query,
    RuntimeConfig,
    RuntimeKeyPool,
    StoreSettings,
    SweepSettings,
)
from llm_answer_collector.exceptions import ProviderTimeoutError


def build_config(db_path: str) -> RuntimeConfig:
    return RuntimeConfig(
        store=StoreSettings(sqlite_db_path=db_path),
        poller=PollerSettings(interval_seconds=0.2, max_wait_seconds=10),
        sweep=SweepSettings(enabled=False),
        key_pools=[
            RuntimeKeyPool(operation="serpapi", keys=["demo-serp-key-1", "demo-serp-key-2"]),
            RuntimeKeyPool(operation="brightdata", keys=["demo-bd-key-1"]),
        ],
        collectors={
            "chatgpt": [
                ProviderConfig(
                    name="serpapi_chatgpt",
                    service="serpapi",
                    priority=1,
                    endpoint="https://serpapi.example.com/chatgpt",
                    retry_count=0,
                ),
                ProviderConfig(
                    name="backup_chatgpt",
                    service="serpapi",
                    priority=2,
                    endpoint="https://backup.example.com/chatgpt",
                ),
            ],
            "perplexity": [
                ProviderConfig(
                    name="brightdata_perplexity",
                    service="brightdata",
                    priority=1,
                    kind="async",
                    endpoint="https://brightdata.example.com/trigger",
                    status_endpoint="https://brightdata.example.com/snapshots/{job_id}",
                )
            ],
        },
    )


async def main():
    with tempfile.TemporaryDirectory() as tmp:
        config = build_config(str(Path(tmp) / "collector.db"))
        clients = {
            "serpapi_chatgpt": MockProviderClient(
                name="serpapi_chatgpt",
                outcomes=[ProviderTimeoutError("upstream slow", provider="serpapi_chatgpt")],
            ),
            "backup_chatgpt": MockProviderClient(
                name="backup_chatgpt",
                default_response="Acme CRM is a popular choice for small businesses.",
            ),
            "brightdata_perplexity": MockAsyncProviderClient(
                name="brightdata_perplexity",
                operation="brightdata",
                default_response="Perplexity lists Acme and Globex.",
            ),
        }
        queries = [
            Query(
                query_id="crm-smb-001",
                text="What is the best CRM for small businesses?",
                brand_id="acme",
                enabled_collector_types=["chatgpt", "perplexity"],
            )
        ]

        async with Orchestrator(config, clients=clients) as orchestrator:
            summary = await orchestrator.submit_batch(queries, wait_for_deferred=True)

            print(f"Run {summary.run_id}: {summary.succeeded_count}/{summary.total} completed")
            for outcome in summary.outcomes:
                state = orchestrator.get_execution_status(outcome.execution_id)
                chain = " -> ".join(outcome.fallback_chain or [])
                print(f"  {outcome.collector_type:<12} {state['status']:<10} {chain}")


if __name__ == "__main__":
    asyncio.run(main())
