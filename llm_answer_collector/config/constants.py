"""
Configuration constants for LLM Answer Collector.

Defaults shared by the config schema, the orchestrator components and the
CLI, kept here to avoid tight coupling between modules.
"""

# Query batching
DEFAULT_BATCH_SIZE = 3
DEFAULT_INTER_BATCH_DELAY_SECONDS = 1.0

# Provider attempts
DEFAULT_PROVIDER_TIMEOUT_MS = 60_000
DEFAULT_PROVIDER_RETRY_COUNT = 2
DEFAULT_RETRY_DELAY_SECONDS = 1.0
MAX_RETRY_DELAY_SECONDS = 60.0

# Async result polling
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_POLL_MAX_WAIT_SECONDS = 600.0
DEFAULT_POLL_REQUEST_TIMEOUT_SECONDS = 30.0

# Periodic stale-execution sweep
DEFAULT_SWEEP_INTERVAL_SECONDS = 300.0
DEFAULT_STALE_AFTER_SECONDS = 300.0
DEFAULT_FAIL_AFTER_SECONDS = 300.0
SWEEP_INTERVAL_ENV_VAR = "COLLECTOR_SWEEP_INTERVAL_SECONDS"

# API key pool
DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS = 300.0
DEFAULT_KEY_ERROR_THRESHOLD = 3

# Prevents runaway request sizes from malformed query sources
MAX_QUERY_LENGTH = 100_000

# Reason attached to executions failed by the stale sweep, distinct from
# provider failures
STALE_FAILURE_REASON = "timed out with no result"
