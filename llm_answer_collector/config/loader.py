"""
Configuration loader for LLM Answer Collector.

This module loads YAML configuration files, validates them with Pydantic models,
resolves API keys from environment variables and resolves each collector's
provider chain into a concrete ordered list.

The loader keeps file configuration (OrchestratorConfig from YAML,
holding only env var names) separate from runtime configuration
(RuntimeConfig with resolved keys), so secrets never get committed to
version control.

Functions:
    load_config: Main entrypoint to load and validate collector.config.yaml
    build_runtime_config: Resolve an already-validated OrchestratorConfig
    resolve_key_pools: Resolve env var names to key values
    resolve_provider_chains: Drop disabled providers and sort by priority
    load_queries: Load a queries YAML file
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ValidationError

from llm_answer_collector.exceptions import (
    APIKeyMissingError,
    ConfigFileNotFoundError,
    ConfigValidationError,
)

from .constants import SWEEP_INTERVAL_ENV_VAR
from .schema import (
    OrchestratorConfig,
    ProviderConfig,
    Query,
    RuntimeConfig,
    RuntimeKeyPool,
)

logger = logging.getLogger(__name__)


def _read_yaml(path: Path) -> Any:
    if not path.exists():
        raise ConfigFileNotFoundError(f"Configuration file not found: {path}")

    try:
        with path.open(encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigValidationError(f"Invalid YAML syntax in {path}: {e}") from e
    except OSError as e:
        raise ConfigValidationError(f"Failed to read configuration file {path}: {e}") from e

    if raw is None:
        raise ConfigValidationError(f"Configuration file is empty: {path}")

    return raw


def _format_validation_error(path: Path, error: ValidationError) -> str:
    error_messages = []
    for detail in error.errors():
        loc = ".".join(str(x) for x in detail["loc"])
        error_messages.append(f"  - {loc}: {detail['msg']}")

    return f"Configuration validation failed in {path}:\n" + "\n".join(error_messages)


def load_config(config_path: str | Path) -> RuntimeConfig:
    """
    Load collector.config.yaml and resolve keys and provider chains.

    This function:
    1. Loads YAML from the specified path
    2. Validates structure using the OrchestratorConfig Pydantic model
    3. Resolves key pool environment variables to actual keys
    4. Resolves each collector's enabled providers ordered by priority
    5. Applies the sweep interval environment override

    Args:
        config_path: Path to collector.config.yaml file (relative or absolute)

    Returns:
        RuntimeConfig ready to build an Orchestrator

    Raises:
        ConfigFileNotFoundError: If config file doesn't exist at the specified path
        ConfigValidationError: If YAML is invalid or config validation fails
        APIKeyMissingError: If required API keys are missing from environment

    Security:
        - API keys are loaded from environment variables only
        - API keys are NEVER logged or written to disk
        - Uses yaml.safe_load() to prevent code injection
    """
    config_path = Path(config_path)
    raw_config = _read_yaml(config_path)

    try:
        orchestrator_config = OrchestratorConfig.model_validate(raw_config)
    except ValidationError as e:
        raise ConfigValidationError(_format_validation_error(config_path, e)) from e

    runtime_config = build_runtime_config(orchestrator_config)

    logger.info(
        f"Loaded configuration from {config_path}: "
        f"{len(runtime_config.collectors)} collectors, "
        f"{len(runtime_config.all_providers())} enabled providers, "
        f"{len(runtime_config.key_pools)} key pools"
    )
    return runtime_config


def build_runtime_config(config: OrchestratorConfig) -> RuntimeConfig:
    """
    Resolve a validated OrchestratorConfig into a RuntimeConfig.

    Raises:
        APIKeyMissingError: If a key environment variable is missing
        ConfigValidationError: If the sweep interval override is invalid
    """
    sweep = config.sweep
    override = os.environ.get(SWEEP_INTERVAL_ENV_VAR)
    if override:
        try:
            sweep = sweep.model_copy(update={"interval_seconds": float(override)})
        except ValueError as e:
            raise ConfigValidationError(
                f"{SWEEP_INTERVAL_ENV_VAR} must be a number of seconds, got: {override}"
            ) from e
        if sweep.interval_seconds <= 0:
            raise ConfigValidationError(
                f"{SWEEP_INTERVAL_ENV_VAR} must be positive, got: {override}"
            )

    return RuntimeConfig(
        store=config.store,
        batch=config.batch,
        poller=config.poller,
        sweep=sweep,
        key_pools=resolve_key_pools(config),
        collectors=resolve_provider_chains(config),
    )


def resolve_key_pools(config: OrchestratorConfig) -> list[RuntimeKeyPool]:
    """
    Resolve key pool environment variables to key values.

    Every listed key variable must be set. The fallback key variable, when
    configured, must be set as well.

    Raises:
        APIKeyMissingError: If any required environment variable is not set

    Security:
        - NEVER logs key values (not even partial values)
    """
    pools: list[RuntimeKeyPool] = []

    for pool_config in config.key_pools:
        keys = []
        for env_var_name in pool_config.env_keys:
            key = os.environ.get(env_var_name)
            if not key:
                raise APIKeyMissingError(
                    f"Environment variable '{env_var_name}' not set for key pool "
                    f"'{pool_config.operation}'. "
                    f"Please set it with: export {env_var_name}=your-api-key"
                )
            keys.append(key)

        fallback_key = None
        if pool_config.env_fallback_key:
            fallback_key = os.environ.get(pool_config.env_fallback_key)
            if not fallback_key:
                raise APIKeyMissingError(
                    f"Environment variable '{pool_config.env_fallback_key}' not set "
                    f"for the fallback key of pool '{pool_config.operation}'"
                )

        pools.append(
            RuntimeKeyPool(
                operation=pool_config.operation,
                keys=keys,
                fallback_key=fallback_key,
                strategy=pool_config.strategy,
                rate_limit_cooldown_seconds=pool_config.rate_limit_cooldown_seconds,
                error_threshold=pool_config.error_threshold,
            )
        )

    return pools


def resolve_provider_chains(config: OrchestratorConfig) -> dict[str, list[ProviderConfig]]:
    """
    Resolve each collector's provider chain.

    Disabled providers are dropped and the rest sorted by ascending priority.
    A collector whose providers are all disabled resolves to an empty chain
    and is reported as a failed Execution at dispatch time.

    Returns:
        Dict mapping collector type to its ordered providers
    """
    chains: dict[str, list[ProviderConfig]] = {}

    for collector in config.collectors:
        enabled = [p for p in collector.providers if p.enabled]
        # sorted() is stable, so equal priorities keep config order
        chains[collector.collector_type] = sorted(enabled, key=lambda p: p.priority)

        if not enabled:
            logger.warning(
                f"Collector '{collector.collector_type}' has no enabled providers"
            )

    return chains


class QueriesFile(BaseModel):
    """Shape of the queries YAML file."""

    queries: list[Query]


def load_queries(queries_path: str | Path) -> list[Query]:
    """
    Load queries from a YAML file with a top-level 'queries' list.

    Raises:
        ConfigFileNotFoundError: If the file doesn't exist
        ConfigValidationError: If YAML or query validation fails, or query ids repeat
    """
    queries_path = Path(queries_path)
    raw = _read_yaml(queries_path)

    try:
        queries = QueriesFile.model_validate(raw).queries
    except ValidationError as e:
        raise ConfigValidationError(_format_validation_error(queries_path, e)) from e

    ids = [q.query_id for q in queries]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise ConfigValidationError(
            f"Duplicate query ids in {queries_path}: {', '.join(duplicates)}"
        )

    return queries
