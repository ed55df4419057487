"""
Configuration schema models for LLM Answer Collector.

This module defines Pydantic models for validating and parsing the
collector.config.yaml file and the queries file.

Models:
    Query: One unit of work from the external query source
    ProviderConfig: One concrete backend able to service a collector
    CollectorConfig: A collector type and its providers
    KeyPoolConfig: Credential pool for one provider operation (env var names)
    StoreSettings / BatchSettings / PollerSettings / SweepSettings: Runtime knobs
    OrchestratorConfig: Root configuration model (validates entire YAML)
    RuntimeKeyPool: Key pool with resolved key values
    RuntimeConfig: Runtime configuration with resolved keys and ordered providers
"""

from typing import Literal, get_args

from pydantic import BaseModel, field_validator, model_validator

from .constants import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_FAIL_AFTER_SECONDS,
    DEFAULT_INTER_BATCH_DELAY_SECONDS,
    DEFAULT_KEY_ERROR_THRESHOLD,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_POLL_MAX_WAIT_SECONDS,
    DEFAULT_POLL_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_PROVIDER_RETRY_COUNT,
    DEFAULT_PROVIDER_TIMEOUT_MS,
    DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS,
    DEFAULT_RETRY_DELAY_SECONDS,
    DEFAULT_STALE_AFTER_SECONDS,
    DEFAULT_SWEEP_INTERVAL_SECONDS,
    MAX_QUERY_LENGTH,
    MAX_RETRY_DELAY_SECONDS,
)

CollectorType = Literal[
    "chatgpt",
    "google_aio",
    "perplexity",
    "claude",
    "bing_copilot",
    "gemini",
    "grok",
    "deepseek",
]
COLLECTOR_TYPES: tuple[str, ...] = get_args(CollectorType)

KeySelectionStrategy = Literal["round_robin", "lru", "health_weighted"]


def _require_non_empty(value: str, field_name: str) -> str:
    if not value or value.isspace():
        raise ValueError(f"{field_name} cannot be empty")
    return value


class Query(BaseModel):
    """
    One question to ask the enabled AI answer-engines.

    Created by an external source; read-only to the orchestrator.

    Attributes:
        query_id: Stable identifier from the query source
        text: Prompt text sent to every collector
        brand_id: Owning brand
        enabled_collector_types: Collectors to dispatch (duplicates removed,
            order preserved)
    """

    query_id: str
    text: str
    brand_id: str
    enabled_collector_types: list[CollectorType]

    @field_validator("query_id")
    @classmethod
    def validate_query_id(cls, v: str) -> str:
        """Validate query_id is non-empty."""
        return _require_non_empty(v, "query_id")

    @field_validator("brand_id")
    @classmethod
    def validate_brand_id(cls, v: str) -> str:
        """Validate brand_id is non-empty."""
        return _require_non_empty(v, "brand_id")

    @field_validator("text")
    @classmethod
    def validate_text(cls, v: str) -> str:
        """Validate text is non-empty and within the maximum query length."""
        _require_non_empty(v, "text")
        if len(v) > MAX_QUERY_LENGTH:
            raise ValueError(
                f"text exceeds maximum length of {MAX_QUERY_LENGTH:,} characters "
                f"(got {len(v):,})"
            )
        return v

    @field_validator("enabled_collector_types")
    @classmethod
    def dedupe_collector_types(cls, v: list[str]) -> list[str]:
        """Drop duplicate collector types while keeping their first position."""
        return list(dict.fromkeys(v))


class ProviderConfig(BaseModel):
    """
    One concrete backend for a collector, ranked by priority.

    Attributes:
        name: Unique provider name (e.g. "brightdata_chatgpt")
        service: Key-pool operation the provider draws credentials from
        priority: Lower values are attempted first
        enabled: Disabled providers are dropped when the chain is resolved
        kind: "sync" returns the answer directly, "async" returns a job handle
        endpoint: URL the request is POSTed to
        status_endpoint: Async only; status URL with a "{job_id}" placeholder
        timeout_ms: Deadline of a single attempt (reused by every retry)
        retry_count: Local retries after the first attempt
        retry_delay_seconds: Delay before a retry (base of the backoff)
        retry_backoff: "fixed" or "exponential" delay between retries
        fallback_on_failure: Advance to the next provider when this one fails
        request_options: Opaque provider-specific fields merged into the body
    """

    name: str
    service: str
    priority: int
    enabled: bool = True
    kind: Literal["sync", "async"] = "sync"
    endpoint: str
    status_endpoint: str | None = None
    timeout_ms: int = DEFAULT_PROVIDER_TIMEOUT_MS
    retry_count: int = DEFAULT_PROVIDER_RETRY_COUNT
    retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS
    retry_backoff: Literal["fixed", "exponential"] = "exponential"
    fallback_on_failure: bool = True
    request_options: dict = {}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate name is non-empty."""
        return _require_non_empty(v, "name")

    @field_validator("service")
    @classmethod
    def validate_service(cls, v: str) -> str:
        """Validate service is non-empty."""
        return _require_non_empty(v, "service")

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        """Validate endpoint is an http(s) URL."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"endpoint must be an http(s) URL, got: {v}")
        return v

    @field_validator("timeout_ms")
    @classmethod
    def validate_timeout_ms(cls, v: int) -> int:
        """Validate timeout_ms is positive."""
        if v <= 0:
            raise ValueError(f"timeout_ms must be positive, got: {v}")
        return v

    @field_validator("retry_count")
    @classmethod
    def validate_retry_count(cls, v: int) -> int:
        """Validate retry_count is between 0 and 10."""
        if v < 0 or v > 10:
            raise ValueError(f"retry_count must be between 0 and 10, got: {v}")
        return v

    @field_validator("retry_delay_seconds")
    @classmethod
    def validate_retry_delay(cls, v: float) -> float:
        """Validate retry_delay_seconds is not negative."""
        if v < 0:
            raise ValueError(f"retry_delay_seconds cannot be negative, got: {v}")
        return v

    @model_validator(mode="after")
    def validate_async_status_endpoint(self) -> "ProviderConfig":
        """Async providers need a status endpoint containing {job_id}."""
        if self.kind == "async":
            if not self.status_endpoint:
                raise ValueError(
                    f"Provider '{self.name}' is async and requires status_endpoint"
                )
            if "{job_id}" not in self.status_endpoint:
                raise ValueError(
                    f"Provider '{self.name}' status_endpoint must contain '{{job_id}}'"
                )
        return self

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    @property
    def longest_retry_wait_seconds(self) -> float:
        """Longest delay tenacity can insert before one retry."""
        if self.retry_count == 0:
            return 0.0
        if self.retry_backoff == "fixed":
            return min(self.retry_delay_seconds, MAX_RETRY_DELAY_SECONDS)
        return min(
            self.retry_delay_seconds * 2 ** (self.retry_count - 1), MAX_RETRY_DELAY_SECONDS
        )

    @property
    def attempt_budget_seconds(self) -> float:
        """Longest gap between two heartbeats of a chain running this provider."""
        return self.longest_retry_wait_seconds + self.timeout_seconds


def _validate_sweep_covers_attempts(
    sweep: "SweepSettings", providers: list[ProviderConfig]
) -> None:
    """
    A running chain refreshes its Execution before every attempt, so the
    sweep must allow at least one full attempt (plus its retry wait) before
    failing a row that has not been touched.
    """
    for provider in providers:
        budget = provider.attempt_budget_seconds
        if budget >= sweep.fail_after_seconds:
            raise ValueError(
                f"sweep.fail_after_seconds ({sweep.fail_after_seconds:g}) must exceed the "
                f"attempt budget of provider '{provider.name}' ({budget:g}s: "
                f"timeout plus longest retry wait)"
            )


class CollectorConfig(BaseModel):
    """
    Providers configured for one collector type.

    Attributes:
        collector_type: AI answer-engine integration
        providers: Candidate backends (any order; resolved by priority)
    """

    collector_type: CollectorType
    providers: list[ProviderConfig]

    @field_validator("providers")
    @classmethod
    def validate_providers(cls, v: list[ProviderConfig]) -> list[ProviderConfig]:
        """Validate providers are non-empty with unique names."""
        if not v:
            raise ValueError("At least one provider must be configured")

        names = [p.name for p in v]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate provider names: {', '.join(duplicates)}")
        return v


class KeyPoolConfig(BaseModel):
    """
    Credential pool for one provider operation.

    Attributes:
        operation: Operation name matched against ProviderConfig.service
        env_keys: Environment variable names holding the interchangeable keys
        env_fallback_key: Environment variable holding the designated fallback key
        strategy: Key selection strategy
        rate_limit_cooldown_seconds: How long a rate-limited key sits out
        error_threshold: Consecutive hard errors before a key is marked error
    """

    operation: str
    env_keys: list[str]
    env_fallback_key: str | None = None
    strategy: KeySelectionStrategy = "round_robin"
    rate_limit_cooldown_seconds: float = DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS
    error_threshold: int = DEFAULT_KEY_ERROR_THRESHOLD

    @field_validator("operation")
    @classmethod
    def validate_operation(cls, v: str) -> str:
        """Validate operation is non-empty."""
        return _require_non_empty(v, "operation")

    @field_validator("env_keys")
    @classmethod
    def validate_env_keys(cls, v: list[str]) -> list[str]:
        """Validate at least one non-empty env var name is listed."""
        if not v:
            raise ValueError("At least one env key must be configured")
        for name in v:
            _require_non_empty(name, "env_keys entry")
        return v

    @field_validator("rate_limit_cooldown_seconds")
    @classmethod
    def validate_cooldown(cls, v: float) -> float:
        """Validate cooldown is not negative."""
        if v < 0:
            raise ValueError(f"rate_limit_cooldown_seconds cannot be negative, got: {v}")
        return v

    @field_validator("error_threshold")
    @classmethod
    def validate_error_threshold(cls, v: int) -> int:
        """Validate error_threshold is at least 1."""
        if v < 1:
            raise ValueError(f"error_threshold must be at least 1, got: {v}")
        return v


class StoreSettings(BaseModel):
    """Execution/Result store location."""

    sqlite_db_path: str = "./output/collector.db"

    @field_validator("sqlite_db_path")
    @classmethod
    def validate_sqlite_db_path(cls, v: str) -> str:
        """Validate sqlite_db_path is non-empty."""
        return _require_non_empty(v, "sqlite_db_path")


class BatchSettings(BaseModel):
    """Query batching knobs."""

    batch_size: int = DEFAULT_BATCH_SIZE
    inter_batch_delay_seconds: float = DEFAULT_INTER_BATCH_DELAY_SECONDS

    @field_validator("batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        """Validate batch_size is between 1 and 50."""
        if v < 1 or v > 50:
            raise ValueError(f"batch_size must be between 1 and 50, got: {v}")
        return v

    @field_validator("inter_batch_delay_seconds")
    @classmethod
    def validate_delay(cls, v: float) -> float:
        """Validate inter_batch_delay_seconds is not negative."""
        if v < 0:
            raise ValueError(f"inter_batch_delay_seconds cannot be negative, got: {v}")
        return v


class PollerSettings(BaseModel):
    """
    Async result poller knobs.

    Attributes:
        interval_seconds: Delay between two status checks of one job
        max_wait_seconds: Total budget across all polls before abandoning
        request_timeout_seconds: Deadline of a single status check
    """

    interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    max_wait_seconds: float = DEFAULT_POLL_MAX_WAIT_SECONDS
    request_timeout_seconds: float = DEFAULT_POLL_REQUEST_TIMEOUT_SECONDS

    @field_validator("interval_seconds", "max_wait_seconds", "request_timeout_seconds")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Validate durations are positive."""
        if v <= 0:
            raise ValueError(f"Poller durations must be positive, got: {v}")
        return v

    @model_validator(mode="after")
    def validate_wait_covers_interval(self) -> "PollerSettings":
        """The total wait must allow at least one poll."""
        if self.max_wait_seconds < self.interval_seconds:
            raise ValueError(
                f"max_wait_seconds ({self.max_wait_seconds}) must be >= "
                f"interval_seconds ({self.interval_seconds})"
            )
        return self


class SweepSettings(BaseModel):
    """
    Periodic stale-execution sweep knobs.

    Attributes:
        enabled: Run the sweep in the background while the orchestrator runs
        interval_seconds: Time between two sweeps
        stale_after_seconds: A running execution untouched this long is checked
        fail_after_seconds: A stale execution without a Result is failed only
            once untouched this long
    """

    enabled: bool = True
    interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS
    stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS
    fail_after_seconds: float = DEFAULT_FAIL_AFTER_SECONDS

    @field_validator("interval_seconds", "stale_after_seconds", "fail_after_seconds")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Validate durations are positive."""
        if v <= 0:
            raise ValueError(f"Sweep durations must be positive, got: {v}")
        return v

    @model_validator(mode="after")
    def validate_fail_after_threshold(self) -> "SweepSettings":
        """Failing requires the execution to be stale first."""
        if self.fail_after_seconds < self.stale_after_seconds:
            raise ValueError(
                f"fail_after_seconds ({self.fail_after_seconds}) must be >= "
                f"stale_after_seconds ({self.stale_after_seconds})"
            )
        return self


class OrchestratorConfig(BaseModel):
    """
    Root configuration model for collector.config.yaml.

    Attributes:
        store: Store settings
        batch: Batching settings
        poller: Async poller settings
        sweep: Stale sweep settings
        key_pools: One pool per provider operation
        collectors: Provider chains per collector type
    """

    store: StoreSettings = StoreSettings()
    batch: BatchSettings = BatchSettings()
    poller: PollerSettings = PollerSettings()
    sweep: SweepSettings = SweepSettings()
    key_pools: list[KeyPoolConfig]
    collectors: list[CollectorConfig]

    @field_validator("key_pools")
    @classmethod
    def validate_key_pools_unique(cls, v: list[KeyPoolConfig]) -> list[KeyPoolConfig]:
        """Validate key pool operations are unique."""
        operations = [pool.operation for pool in v]
        duplicates = sorted({op for op in operations if operations.count(op) > 1})
        if duplicates:
            raise ValueError(f"Duplicate key pool operations: {', '.join(duplicates)}")
        return v

    @field_validator("collectors")
    @classmethod
    def validate_collectors(cls, v: list[CollectorConfig]) -> list[CollectorConfig]:
        """Validate collectors are non-empty, unique, with globally unique provider names."""
        if not v:
            raise ValueError("At least one collector must be configured")

        types = [c.collector_type for c in v]
        duplicates = sorted({t for t in types if types.count(t) > 1})
        if duplicates:
            raise ValueError(f"Duplicate collector types: {', '.join(duplicates)}")

        names = [p.name for c in v for p in c.providers]
        duplicate_names = sorted({n for n in names if names.count(n) > 1})
        if duplicate_names:
            raise ValueError(
                f"Provider names must be unique across collectors: "
                f"{', '.join(duplicate_names)}"
            )
        return v

    @model_validator(mode="after")
    def validate_services_have_pools(self) -> "OrchestratorConfig":
        """Every provider service must have a key pool."""
        operations = {pool.operation for pool in self.key_pools}
        for collector in self.collectors:
            for provider in collector.providers:
                if provider.service not in operations:
                    raise ValueError(
                        f"Provider '{provider.name}' uses service '{provider.service}' "
                        f"which has no key pool. Configured pools: "
                        f"{', '.join(sorted(operations)) or 'none'}"
                    )
        return self

    @model_validator(mode="after")
    def validate_sweep_covers_attempts(self) -> "OrchestratorConfig":
        """The sweep must not fail an Execution during a single provider attempt."""
        _validate_sweep_covers_attempts(
            self.sweep, [p for c in self.collectors for p in c.providers if p.enabled]
        )
        return self


class RuntimeKeyPool(BaseModel):
    """
    Key pool with key values resolved from the environment.

    Key values are held in memory only, never logged or persisted.
    """

    operation: str
    keys: list[str]
    fallback_key: str | None = None
    strategy: KeySelectionStrategy = "round_robin"
    rate_limit_cooldown_seconds: float = DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS
    error_threshold: int = DEFAULT_KEY_ERROR_THRESHOLD

    @field_validator("keys")
    @classmethod
    def validate_keys(cls, v: list[str]) -> list[str]:
        """Validate at least one non-empty key is present."""
        if not v:
            raise ValueError("At least one key is required")
        for key in v:
            _require_non_empty(key, "key")
        return v


class RuntimeConfig(BaseModel):
    """
    Runtime configuration with resolved keys and resolved provider chains.

    Provider chains are resolved once per run: disabled providers are dropped
    and the rest sorted by ascending priority (ties keep their config order).

    Attributes:
        store / batch / poller / sweep: Settings from OrchestratorConfig
        key_pools: Pools with resolved keys
        collectors: Ordered enabled providers keyed by collector type
    """

    store: StoreSettings = StoreSettings()
    batch: BatchSettings = BatchSettings()
    poller: PollerSettings = PollerSettings()
    sweep: SweepSettings = SweepSettings()
    key_pools: list[RuntimeKeyPool]
    collectors: dict[str, list[ProviderConfig]]

    @model_validator(mode="after")
    def validate_sweep_covers_attempts(self) -> "RuntimeConfig":
        """The sweep must not fail an Execution during a single provider attempt."""
        _validate_sweep_covers_attempts(self.sweep, self.all_providers())
        return self

    def providers_for(self, collector_type: str) -> list[ProviderConfig]:
        """Return the ordered provider chain for a collector (empty when unknown)."""
        return list(self.collectors.get(collector_type, []))

    def all_providers(self) -> list[ProviderConfig]:
        """Return every resolved provider across collectors."""
        return [p for providers in self.collectors.values() for p in providers]
